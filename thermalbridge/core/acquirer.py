"""Interface acquisition: endpoint discovery, soft reset and claim strategies.

Kernel drivers (usblp on Linux, the vendor driver on Android-like hosts) often
hold the printer interface. The strategies below escalate from a plain forced
claim to interface-level control requests before giving up.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, Sequence, Tuple
import logging
import time

from ..usb.host import (
    USB_DIR_OUT,
    USB_RECIP_DEVICE,
    USB_RECIP_INTERFACE,
    USB_REQUEST_CLEAR_FEATURE,
    USB_REQUEST_SET_CONFIGURATION,
    USB_REQUEST_SET_INTERFACE,
    USB_TYPE_STANDARD,
    UsbHost,
)
from .errors import ClaimFailed, NoEndpointFound
from .models import (
    AcquisitionReport,
    ClaimedInterface,
    DeviceDescriptor,
    UsbEndpointInfo,
    UsbInterfaceInfo,
    USB_CLASS_PER_INTERFACE,
    USB_CLASS_PRINTER,
    USB_CLASS_VENDOR_SPEC,
)

logger = logging.getLogger(__name__)


PREFERRED_INTERFACE_CLASSES = (USB_CLASS_PRINTER, USB_CLASS_VENDOR_SPEC, USB_CLASS_PER_INTERFACE)

CONTROL_TIMEOUT_MS = 1000
INIT_TIMEOUT_MS = 3000
INIT_COMMAND = b"\x1b\x40"


@dataclass
class ClaimContext:
    host: UsbHost
    handle: Any
    interface: int
    report: AcquisitionReport
    sleep: Callable[[float], None] = time.sleep
    set_interface_delay: float = 0.05
    clear_feature_delay: float = 0.1


ClaimStrategy = Callable[[ClaimContext], bool]


def find_endpoints(device: DeviceDescriptor) -> Tuple[UsbInterfaceInfo, UsbEndpointInfo, Optional[UsbEndpointInfo]]:
    """Return (interface, bulk OUT, bulk IN or None) for the printer pipe."""
    for intf in device.interfaces:
        if intf.interface_class not in PREFERRED_INTERFACE_CLASSES:
            continue
        out_ep = None
        in_ep = None
        for ep in intf.endpoints:
            if ep.is_bulk_out:
                out_ep = ep
            elif ep.is_bulk_in:
                in_ep = ep
        if out_ep is not None:
            logger.debug(f"Printer interface {intf.number} class={intf.interface_class} OUT=0x{out_ep.address:02x}")
            return intf, out_ep, in_ep

    # Any class will do as long as it can take bulk data
    for intf in device.interfaces:
        out_ep = next((ep for ep in intf.endpoints if ep.is_bulk_out), None)
        if out_ep is not None:
            in_ep = next((ep for ep in intf.endpoints if ep.is_bulk_in), None)
            logger.debug(f"Fallback interface {intf.number} class={intf.interface_class}")
            return intf, out_ep, in_ep

    raise NoEndpointFound()


def force_claim(ctx: ClaimContext) -> bool:
    return bool(ctx.host.claim_interface(ctx.handle, ctx.interface, True))


def set_interface_then_claim(ctx: ClaimContext) -> bool:
    result = ctx.host.control_transfer(
        ctx.handle,
        USB_DIR_OUT | USB_TYPE_STANDARD | USB_RECIP_INTERFACE,
        USB_REQUEST_SET_INTERFACE,
        0,
        ctx.interface,
        None,
        0,
        CONTROL_TIMEOUT_MS,
    )
    ctx.report.control_results["set-interface"] = result
    logger.debug(f"Set Interface result: {result}")
    ctx.sleep(ctx.set_interface_delay)
    return force_claim(ctx)


def clear_feature_then_claim(ctx: ClaimContext) -> bool:
    result = ctx.host.control_transfer(
        ctx.handle,
        USB_DIR_OUT | USB_TYPE_STANDARD | USB_RECIP_INTERFACE,
        USB_REQUEST_CLEAR_FEATURE,
        0,
        ctx.interface,
        None,
        0,
        CONTROL_TIMEOUT_MS,
    )
    ctx.report.control_results["clear-feature"] = result
    logger.debug(f"Clear Feature result: {result}")
    ctx.sleep(ctx.clear_feature_delay)
    return force_claim(ctx)


CLAIM_STRATEGIES: Sequence[Tuple[str, ClaimStrategy]] = (
    ("force-claim", force_claim),
    ("set-interface", set_interface_then_claim),
    ("clear-feature", clear_feature_then_claim),
)


def first_success(strategies: Iterable[Tuple[str, ClaimStrategy]], ctx: ClaimContext) -> Optional[str]:
    """Run strategies in order; name of the first that succeeds, else None."""
    for name, strategy in strategies:
        ctx.report.strategies_tried.append(name)
        logger.debug(f"Trying claim strategy {name}")
        if strategy(ctx):
            return name
        logger.info(f"Claim strategy {name} failed")
    return None


class InterfaceAcquirer:
    def __init__(
        self,
        host: UsbHost,
        sleep: Callable[[float], None] = time.sleep,
        settle_delay: float = 0.1,
        set_interface_delay: float = 0.05,
        clear_feature_delay: float = 0.1,
        strategies: Sequence[Tuple[str, ClaimStrategy]] = CLAIM_STRATEGIES,
    ):
        self.host = host
        self.sleep = sleep
        self.settle_delay = settle_delay
        self.set_interface_delay = set_interface_delay
        self.clear_feature_delay = clear_feature_delay
        self.strategies = tuple(strategies)
        self.last_report: Optional[AcquisitionReport] = None

    def soft_reset(self, handle: Any) -> int:
        """SET_CONFIGURATION(1) and a short settle; the result never gates claiming."""
        result = self.host.control_transfer(
            handle,
            USB_DIR_OUT | USB_TYPE_STANDARD | USB_RECIP_DEVICE,
            USB_REQUEST_SET_CONFIGURATION,
            1,
            0,
            None,
            0,
            CONTROL_TIMEOUT_MS,
        )
        logger.debug(f"Set Configuration result: {result}")
        self.sleep(self.settle_delay)
        return result

    def claim(self, device: DeviceDescriptor, handle: Any) -> ClaimedInterface:
        report = AcquisitionReport()
        self.last_report = report

        intf, out_ep, in_ep = find_endpoints(device)
        report.reset_result = self.soft_reset(handle)

        ctx = ClaimContext(
            host=self.host,
            handle=handle,
            interface=intf.number,
            report=report,
            sleep=self.sleep,
            set_interface_delay=self.set_interface_delay,
            clear_feature_delay=self.clear_feature_delay,
        )
        strategy = first_success(self.strategies, ctx)
        if strategy is None:
            raise ClaimFailed()
        logger.info(f"Interface {intf.number} claimed via {strategy}")

        # Some printers swallow the first packet while waking up, so a failed
        # init write does not undo a successful claim
        sent = self.host.bulk_transfer(handle, out_ep.address, INIT_COMMAND, len(INIT_COMMAND), INIT_TIMEOUT_MS)
        if sent < 0:
            logger.warning(f"Init command failed after claim: {sent}")
        else:
            logger.debug(f"Init command sent: {sent} bytes")

        return ClaimedInterface(
            interface=intf,
            endpoint_out=out_ep,
            endpoint_in=in_ep,
            strategy=strategy,
            init_result=sent,
        )
