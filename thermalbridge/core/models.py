from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


# USB class codes
USB_CLASS_PER_INTERFACE = 0x00
USB_CLASS_PRINTER = 0x07
USB_CLASS_VENDOR_SPEC = 0xFF

# Endpoint direction bit and transfer types (bmAttributes & 0x03)
ENDPOINT_OUT = 0x00
ENDPOINT_IN = 0x80
TRANSFER_CONTROL = 0
TRANSFER_ISOCHRONOUS = 1
TRANSFER_BULK = 2
TRANSFER_INTERRUPT = 3


class SessionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass(frozen=True)
class UsbEndpointInfo:
    address: int
    transfer_type: int = TRANSFER_BULK
    max_packet_size: int = 64

    @property
    def direction(self) -> int:
        return self.address & ENDPOINT_IN

    @property
    def is_bulk_out(self) -> bool:
        return self.transfer_type == TRANSFER_BULK and self.direction == ENDPOINT_OUT

    @property
    def is_bulk_in(self) -> bool:
        return self.transfer_type == TRANSFER_BULK and self.direction == ENDPOINT_IN


@dataclass(frozen=True)
class UsbInterfaceInfo:
    number: int
    interface_class: int = USB_CLASS_PRINTER
    interface_subclass: int = 0
    endpoints: Tuple[UsbEndpointInfo, ...] = ()


@dataclass(frozen=True)
class DeviceDescriptor:
    """Immutable snapshot of one enumerated USB device."""

    vendor_id: int
    product_id: int
    device_name: str = ""
    serial_number: Optional[str] = None
    manufacturer: str = ""
    product: str = ""
    interfaces: Tuple[UsbInterfaceInfo, ...] = ()

    @property
    def key(self) -> str:
        return self.device_name or f"{self.vendor_id:04x}:{self.product_id:04x}"

    def has_interface_class(self, interface_class: int) -> bool:
        return any(intf.interface_class == interface_class for intf in self.interfaces)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vendor_id": self.vendor_id,
            "product_id": self.product_id,
            "device_name": self.device_name,
            "serial_number": self.serial_number,
            "manufacturer": self.manufacturer,
            "product": self.product,
            "interfaces": [
                {
                    "number": intf.number,
                    "class": intf.interface_class,
                    "subclass": intf.interface_subclass,
                    "endpoints": [
                        {"address": ep.address, "type": ep.transfer_type}
                        for ep in intf.endpoints
                    ],
                }
                for intf in self.interfaces
            ],
        }


@dataclass
class ClaimedInterface:
    interface: UsbInterfaceInfo
    endpoint_out: UsbEndpointInfo
    endpoint_in: Optional[UsbEndpointInfo] = None
    strategy: str = ""
    init_result: Optional[int] = None


@dataclass
class AcquisitionReport:
    """Observed results of the fire-and-forget steps of one claim sequence."""

    reset_result: Optional[int] = None
    control_results: Dict[str, int] = field(default_factory=dict)
    strategies_tried: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class PrintCommand:
    data: bytes
    timeout_ms: int = 1000
    label: str = ""

    def __len__(self) -> int:
        return len(self.data)
