"""Failure taxonomy for printer acquisition and transfers.

Core layers raise these; ``PrinterService`` turns them into result values.
"""

from typing import Optional


class PrinterError(Exception):
    """Base class for every failure reported by the bridge."""


class NoDevicesFound(PrinterError):
    def __init__(self, device_count: int = 0, message: Optional[str] = None):
        self.device_count = device_count
        super().__init__(
            message or f"No printer found. {device_count} USB devices detected."
        )


class DeviceOpenFailed(PrinterError):
    def __init__(self, message: str = "Failed to open USB device"):
        super().__init__(message)


class NoEndpointFound(PrinterError):
    def __init__(self, message: str = "Printer interface with a bulk OUT endpoint not found"):
        super().__init__(message)


class ClaimFailed(PrinterError):
    def __init__(self, message: str = "Claiming the interface failed. Unplug and reconnect the printer."):
        super().__init__(message)


class PermissionDenied(PrinterError):
    def __init__(self, message: str = "USB permission denied"):
        super().__init__(message)


class NotConnected(PrinterError):
    def __init__(self, message: str = "Printer not connected"):
        super().__init__(message)


class TransferFailed(PrinterError):
    def __init__(self, code: int, message: Optional[str] = None):
        self.code = code
        super().__init__(message or f"bulkTransfer failed: {code}")


class DeviceDetached(PrinterError):
    def __init__(self, message: str = "Printer was detached"):
        super().__init__(message)


class ConnectError(PrinterError):
    def __init__(self, attempts: int, last_error: str):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Failed after {attempts} attempts. Last error: {last_error}")
