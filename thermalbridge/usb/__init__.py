"""Host USB capability and its pyusb adapter."""

from .host import HostEvent, HostEventKind, UsbHost

__all__ = ["HostEvent", "HostEventKind", "UsbHost"]
