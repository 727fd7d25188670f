"""Device selection, interface acquisition and the connection session."""

from .models import DeviceDescriptor, ClaimedInterface, PrintCommand, SessionState
from .errors import PrinterError

__all__ = ["DeviceDescriptor", "ClaimedInterface", "PrintCommand", "SessionState", "PrinterError"]
