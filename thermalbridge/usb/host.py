"""Host USB capability consumed by the acquisition core.

Platform adapters (``PyUsbHost``, the in-memory host used by the tests)
implement ``UsbHost``. The core only ever talks to this interface.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional
import logging
import threading

from ..core.models import DeviceDescriptor

logger = logging.getLogger(__name__)


# bmRequestType pieces
USB_DIR_OUT = 0x00
USB_DIR_IN = 0x80
USB_TYPE_STANDARD = 0x00
USB_TYPE_CLASS = 0x20
USB_TYPE_VENDOR = 0x40
USB_RECIP_DEVICE = 0x00
USB_RECIP_INTERFACE = 0x01

# Standard requests
USB_REQUEST_CLEAR_FEATURE = 0x01
USB_REQUEST_SET_CONFIGURATION = 0x09
USB_REQUEST_SET_INTERFACE = 0x0B

# libusb error codes returned (negated) by control/bulk transfers
ERROR_IO = -1
ERROR_ACCESS = -3
ERROR_NO_DEVICE = -4
ERROR_BUSY = -6
ERROR_TIMEOUT = -7
ERROR_PIPE = -9


class HostEventKind(Enum):
    PERMISSION_GRANTED = "permission-granted"
    PERMISSION_DENIED = "permission-denied"
    DEVICE_ATTACHED = "device-attached"
    DEVICE_DETACHED = "device-detached"


@dataclass(frozen=True)
class HostEvent:
    kind: HostEventKind
    device: Optional[DeviceDescriptor] = None


HostListener = Callable[[HostEvent], None]


class UsbHost:
    """Capability interface over the platform USB stack.

    ``open`` returns an opaque handle or None. Transfers return the byte count
    on success and a negative libusb error code on failure; they never raise.
    Permission answers and hotplug changes arrive asynchronously through the
    registered listeners.
    """

    def __init__(self) -> None:
        self._listeners: List[HostListener] = []
        self._listeners_lock = threading.Lock()

    def list_devices(self) -> List[DeviceDescriptor]:
        raise NotImplementedError

    def has_permission(self, device: DeviceDescriptor) -> bool:
        raise NotImplementedError

    def request_permission(self, device: DeviceDescriptor) -> None:
        raise NotImplementedError

    def open(self, device: DeviceDescriptor) -> Optional[Any]:
        raise NotImplementedError

    def close(self, handle: Any) -> None:
        raise NotImplementedError

    def control_transfer(self, handle: Any, request_type: int, request: int, value: int,
                         index: int, data: Optional[bytes] = None, length: int = 0,
                         timeout_ms: int = 1000) -> int:
        raise NotImplementedError

    def bulk_transfer(self, handle: Any, endpoint: int, data: bytes, length: Optional[int] = None,
                      timeout_ms: int = 1000) -> int:
        raise NotImplementedError

    def claim_interface(self, handle: Any, interface: int, force: bool = True) -> bool:
        raise NotImplementedError

    def release_interface(self, handle: Any, interface: int) -> bool:
        raise NotImplementedError

    def add_listener(self, listener: HostListener) -> None:
        with self._listeners_lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def remove_listener(self, listener: HostListener) -> None:
        with self._listeners_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def emit(self, event: HostEvent) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception(f"Host listener failed on {event.kind.value}")

    def shutdown(self) -> None:
        """Stop any background notification delivery."""
