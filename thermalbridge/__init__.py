"""thermalbridge - claim a USB receipt printer and drive it with ESC/POS."""

__version__ = "1.0.0"
__author__ = "thermalbridge Team"

from .core.models import DeviceDescriptor, SessionState
from .core.errors import PrinterError
from .app.service import PrinterService

__all__ = ["DeviceDescriptor", "SessionState", "PrinterError", "PrinterService"]
