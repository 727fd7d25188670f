from __future__ import annotations

from typing import Any, Dict, List, Optional, Set
import logging
import os
import threading

try:
    # PyUSB over libusb
    import usb.core  # type: ignore
    import usb.util  # type: ignore
except Exception as import_error:  # pragma: no cover
    raise SystemExit(
        "pyusb is required for USB access. Install with 'pip install pyusb'\n"
        f"Import error: {import_error}"
    )

from ..core.models import DeviceDescriptor, UsbEndpointInfo, UsbInterfaceInfo
from .host import (
    ERROR_IO,
    ERROR_TIMEOUT,
    HostEvent,
    HostEventKind,
    USB_RECIP_DEVICE,
    USB_RECIP_INTERFACE,
    USB_REQUEST_SET_CONFIGURATION,
    USB_REQUEST_SET_INTERFACE,
    UsbHost,
)

logger = logging.getLogger(__name__)


def _get_string_safely(device, index: int) -> str:
    if not index:
        return ""
    try:
        return usb.util.get_string(device, index) or ""
    except Exception:
        return ""


def _device_path(dev) -> str:
    return f"/dev/bus/usb/{int(dev.bus):03d}/{int(dev.address):03d}"


def _usb_error_code(exc: Exception) -> int:
    code = getattr(exc, "backend_error_code", None)
    if isinstance(code, int) and code < 0:
        return code
    if isinstance(exc, usb.core.USBTimeoutError):
        return ERROR_TIMEOUT
    return ERROR_IO


def describe_device(dev, read_strings: bool = True) -> DeviceDescriptor:
    interfaces: Dict[int, UsbInterfaceInfo] = {}
    try:
        for cfg in dev:
            for intf in cfg:
                number = int(intf.bInterfaceNumber)
                # alternate settings share a number; keep the first one seen
                if number in interfaces:
                    continue
                endpoints = tuple(
                    UsbEndpointInfo(
                        address=int(ep.bEndpointAddress),
                        transfer_type=usb.util.endpoint_type(ep.bmAttributes),
                        max_packet_size=int(getattr(ep, "wMaxPacketSize", 64)),
                    )
                    for ep in intf
                )
                interfaces[number] = UsbInterfaceInfo(
                    number=number,
                    interface_class=int(intf.bInterfaceClass),
                    interface_subclass=int(intf.bInterfaceSubClass),
                    endpoints=endpoints,
                )
    except usb.core.USBError as exc:
        logger.debug(f"Could not read descriptors of {_device_path(dev)}: {exc}")

    serial = manufacturer = product = ""
    if read_strings:
        serial = _get_string_safely(dev, getattr(dev, "iSerialNumber", 0))
        manufacturer = _get_string_safely(dev, getattr(dev, "iManufacturer", 0))
        product = _get_string_safely(dev, getattr(dev, "iProduct", 0))

    return DeviceDescriptor(
        vendor_id=int(dev.idVendor),
        product_id=int(dev.idProduct),
        device_name=_device_path(dev),
        serial_number=serial or None,
        manufacturer=manufacturer,
        product=product,
        interfaces=tuple(interfaces[n] for n in sorted(interfaces)),
    )


class PyUsbHandle:
    def __init__(self, dev, descriptor: DeviceDescriptor):
        self.dev = dev
        self.descriptor = descriptor
        self.detached: Set[int] = set()
        self.closed = False


class PyUsbHost(UsbHost):
    """libusb-backed host; hotplug is emulated by polling enumeration."""

    def __init__(self, hotplug_interval: float = 2.0, read_strings: bool = True):
        super().__init__()
        self._read_strings = read_strings
        self._monitor: Optional[HotplugMonitor] = None
        if hotplug_interval and hotplug_interval > 0:
            self._monitor = HotplugMonitor(self, hotplug_interval)
            self._monitor.start()

    def _find_raw(self, descriptor: DeviceDescriptor):
        for dev in usb.core.find(find_all=True):  # type: ignore[attr-defined]
            if _device_path(dev) == descriptor.device_name:
                return dev
        return None

    def enumerate_raw(self) -> Dict[str, Any]:
        found: Dict[str, Any] = {}
        try:
            for dev in usb.core.find(find_all=True):  # type: ignore[attr-defined]
                found[_device_path(dev)] = dev
        except usb.core.NoBackendError as exc:
            logger.error(f"No libusb backend available: {exc}")
        return found

    def list_devices(self) -> List[DeviceDescriptor]:
        return [
            describe_device(dev, read_strings=self._read_strings)
            for dev in self.enumerate_raw().values()
        ]

    def has_permission(self, device: DeviceDescriptor) -> bool:
        path = device.device_name
        if os.name == "nt" or not path or not os.path.exists(path):
            # No device node to check (Windows, macOS); libusb decides at open time
            return True
        return os.access(path, os.R_OK | os.W_OK)

    def request_permission(self, device: DeviceDescriptor) -> None:
        # Desktop hosts have no consent dialog: answer from the node's access bits
        def _answer() -> None:
            granted = self.has_permission(device)
            kind = HostEventKind.PERMISSION_GRANTED if granted else HostEventKind.PERMISSION_DENIED
            self.emit(HostEvent(kind, device))

        threading.Thread(target=_answer, name="tb-usb-permission", daemon=True).start()

    def open(self, device: DeviceDescriptor) -> Optional[PyUsbHandle]:
        if not self.has_permission(device):
            logger.warning(f"No access to {device.device_name}; check udev rules")
            return None
        try:
            dev = self._find_raw(device)
        except (usb.core.USBError, usb.core.NoBackendError) as exc:
            logger.warning(f"Enumeration failed while opening {device.device_name}: {exc}")
            return None
        if dev is None:
            return None
        return PyUsbHandle(dev, device)

    def close(self, handle: PyUsbHandle) -> None:
        if handle is None or handle.closed:
            return
        handle.closed = True
        try:
            usb.util.dispose_resources(handle.dev)
        except usb.core.USBError as exc:
            logger.debug(f"dispose_resources failed: {exc}")

    def control_transfer(self, handle: PyUsbHandle, request_type: int, request: int, value: int,
                         index: int, data: Optional[bytes] = None, length: int = 0,
                         timeout_ms: int = 1000) -> int:
        dev = handle.dev
        try:
            # pyusb tracks configuration and alternate settings itself, so route
            # the standard requests through its API instead of raw transfers
            if request_type == USB_RECIP_DEVICE and request == USB_REQUEST_SET_CONFIGURATION:
                dev.set_configuration(value)
                return 0
            if request_type == USB_RECIP_INTERFACE and request == USB_REQUEST_SET_INTERFACE:
                dev.set_interface_altsetting(interface=index, alternate_setting=value)
                return 0
            payload = data[:length] if data is not None else None
            result = dev.ctrl_transfer(request_type, request, value, index, payload, timeout_ms)
            return result if isinstance(result, int) else len(result)
        except (usb.core.USBError, NotImplementedError, ValueError) as exc:
            logger.debug(f"Control transfer 0x{request_type:02x}/0x{request:02x} failed: {exc}")
            return _usb_error_code(exc) if isinstance(exc, usb.core.USBError) else ERROR_IO

    def bulk_transfer(self, handle: PyUsbHandle, endpoint: int, data: bytes, length: Optional[int] = None,
                      timeout_ms: int = 1000) -> int:
        payload = data if length is None else data[:length]
        try:
            return int(handle.dev.write(endpoint, payload, timeout=timeout_ms))
        except usb.core.USBError as exc:
            logger.debug(f"Bulk transfer to 0x{endpoint:02x} failed: {exc}")
            return _usb_error_code(exc)

    def claim_interface(self, handle: PyUsbHandle, interface: int, force: bool = True) -> bool:
        dev = handle.dev
        if force:
            try:
                if dev.is_kernel_driver_active(interface):
                    dev.detach_kernel_driver(interface)
                    handle.detached.add(interface)
                    logger.info(f"Detached kernel driver from interface {interface}")
            except NotImplementedError:
                # Windows/macOS backends do not expose kernel driver control
                pass
            except usb.core.USBError as exc:
                logger.debug(f"detach_kernel_driver({interface}) failed: {exc}")
        try:
            usb.util.claim_interface(dev, interface)
            return True
        except usb.core.USBError as exc:
            logger.debug(f"claim_interface({interface}) failed: {exc}")
            return False

    def release_interface(self, handle: PyUsbHandle, interface: int) -> bool:
        dev = handle.dev
        released = True
        try:
            usb.util.release_interface(dev, interface)
        except usb.core.USBError as exc:
            logger.debug(f"release_interface({interface}) failed: {exc}")
            released = False
        if interface in handle.detached:
            handle.detached.discard(interface)
            try:
                dev.attach_kernel_driver(interface)
            except (NotImplementedError, usb.core.USBError) as exc:
                logger.debug(f"attach_kernel_driver({interface}) failed: {exc}")
        return released

    def shutdown(self) -> None:
        if self._monitor is not None:
            self._monitor.stop()
            self._monitor = None


class HotplugMonitor(threading.Thread):
    """Polls the bus and reports devices that appeared or vanished."""

    def __init__(self, host: PyUsbHost, interval: float):
        super().__init__(name="tb-usb-hotplug", daemon=True)
        self._host = host
        self._interval = interval
        self._stop_event = threading.Event()
        self._known: Dict[str, DeviceDescriptor] = {}
        self._primed = False

    def stop(self) -> None:
        self._stop_event.set()

    def poll_once(self) -> None:
        current = self._host.enumerate_raw()
        for path in [p for p in self._known if p not in current]:
            descriptor = self._known.pop(path)
            logger.info(f"USB device detached: {path}")
            self._host.emit(HostEvent(HostEventKind.DEVICE_DETACHED, descriptor))
        for path, dev in current.items():
            if path in self._known:
                continue
            descriptor = describe_device(dev, read_strings=False)
            self._known[path] = descriptor
            # the first scan only records what is already plugged in
            if self._primed:
                logger.info(f"USB device attached: {path}")
                self._host.emit(HostEvent(HostEventKind.DEVICE_ATTACHED, descriptor))
        self._primed = True

    def run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.poll_once()
            except Exception:
                logger.exception("Hotplug poll failed")
            self._stop_event.wait(self._interval)
