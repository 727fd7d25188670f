"""ESC/POS command encoding."""

from . import commands
from .commands import compose_formatted, barcode_code128, qr_code

__all__ = ["commands", "compose_formatted", "barcode_code128", "qr_code"]
