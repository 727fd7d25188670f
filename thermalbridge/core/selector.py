from typing import Dict, Iterable, List, Optional
import logging

from .models import DeviceDescriptor, USB_CLASS_PRINTER

logger = logging.getLogger(__name__)


# Known printer brands plus USB-serial bridge chips some printers enumerate as
KNOWN_PRINTER_VENDORS: Dict[int, str] = {
    0x0B1B: "Bematech",
    0x04B8: "Epson",
    0x0519: "Star Micronics",
    0x0DD4: "Custom",
    0x154F: "Daruma",
    0x0FE6: "Kontec",
    0x1A86: "QinHeng/CH340",
    0x067B: "Prolific/PL2303",
    0x10C4: "Silicon Labs",
    0x0403: "FTDI",
    0x0483: "Elgin",
    0x20D1: "Generic POS",
}


def vendor_name(vendor_id: int) -> str:
    name = KNOWN_PRINTER_VENDORS.get(vendor_id)
    if name:
        return name
    return f"Printer VID:0x{vendor_id:04x}"


def _by_known_vendor(devices: List[DeviceDescriptor]) -> Optional[DeviceDescriptor]:
    for device in devices:
        if device.vendor_id in KNOWN_PRINTER_VENDORS:
            return device
    return None


def _by_printer_class(devices: List[DeviceDescriptor]) -> Optional[DeviceDescriptor]:
    for device in devices:
        if device.has_interface_class(USB_CLASS_PRINTER):
            return device
    return None


def _first_device(devices: List[DeviceDescriptor]) -> Optional[DeviceDescriptor]:
    return devices[0] if devices else None


SELECTION_POLICY = (
    ("known vendor", _by_known_vendor),
    ("printer class", _by_printer_class),
    ("first device", _first_device),
)


def select_printer(devices: Iterable[DeviceDescriptor]) -> Optional[DeviceDescriptor]:
    """Pick the most likely printer; None only when nothing is enumerated.

    A "wrong" pick is not an error here. Many printer firmwares misreport their
    class codes, so the last rule tries the first device anyway and a bad guess
    shows up later as a transfer failure.
    """
    candidates = list(devices)
    for rule, pick in SELECTION_POLICY:
        device = pick(candidates)
        if device is not None:
            logger.debug(
                f"Selected VID=0x{device.vendor_id:04x} PID=0x{device.product_id:04x} by {rule}"
            )
            return device
    return None


def find_device(devices: Iterable[DeviceDescriptor], vendor_id: int,
                product_id: int = 0) -> Optional[DeviceDescriptor]:
    """Exact lookup for connect-by-id; product_id 0 matches any product."""
    for device in devices:
        if device.vendor_id != vendor_id:
            continue
        if product_id == 0 or device.product_id == product_id:
            return device
    return None
