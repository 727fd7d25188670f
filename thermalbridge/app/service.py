"""Outward printer operations.

Every public method returns ``{"success": bool, "error"?: str, ...}`` and never
raises; failures are values so the bridge layer can hand them straight to its
caller.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Sequence
import functools
import logging
import threading
import time

from ..core.errors import NoDevicesFound, NotConnected, PermissionDenied, PrinterError
from ..core.models import DeviceDescriptor, PrintCommand, SessionState
from ..core.retry import connect_with_retry
from ..core.selector import find_device, select_printer, vendor_name
from ..core.session import ConnectionSession
from ..printing import commands
from ..usb.host import HostEvent, HostEventKind, UsbHost
from .config import BridgeSettings

logger = logging.getLogger(__name__)


EVENT_PRINTER_CONNECTED = "printerConnected"
EVENT_PRINTER_DISCONNECTED = "printerDisconnected"
EVENTS = (EVENT_PRINTER_CONNECTED, EVENT_PRINTER_DISCONNECTED)

EventCallback = Callable[[Dict[str, Any]], None]


def _failure(error: Any) -> Dict[str, Any]:
    message = str(error) or error.__class__.__name__
    return {"success": False, "error": message}


def _reported(method):
    """Turn raised errors into failure results."""
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except PrinterError as exc:
            return _failure(exc)
        except Exception as exc:
            logger.exception(f"{method.__name__} failed unexpectedly")
            return _failure(exc)
    return wrapper


class _PermissionRequest:
    def __init__(self, device: DeviceDescriptor):
        self.device = device
        self.answered = threading.Event()
        self.granted = False


class PrinterService:
    def __init__(self, host: UsbHost, settings: Optional[BridgeSettings] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.host = host
        self.settings = settings or BridgeSettings()
        self.session = ConnectionSession(host)
        self._sleep = sleep
        self._pending: Optional[_PermissionRequest] = None
        self._pending_lock = threading.Lock()
        self._listeners: Dict[str, List[EventCallback]] = {name: [] for name in EVENTS}
        self._listeners_lock = threading.Lock()
        self.session.add_listener(self._on_session_state)
        self.host.add_listener(self._on_host_event)

    # events

    def add_listener(self, event: str, callback: EventCallback) -> None:
        if event not in self._listeners:
            raise ValueError(f"Unknown event: {event}")
        with self._listeners_lock:
            self._listeners[event].append(callback)

    def remove_listener(self, event: str, callback: EventCallback) -> None:
        with self._listeners_lock:
            if callback in self._listeners.get(event, []):
                self._listeners[event].remove(callback)

    def _emit(self, event: str, payload: Dict[str, Any]) -> None:
        with self._listeners_lock:
            callbacks = list(self._listeners.get(event, []))
        for callback in callbacks:
            try:
                callback(dict(payload))
            except Exception:
                logger.exception(f"Listener for {event} failed")

    def _on_session_state(self, state: SessionState, reason: str) -> None:
        if state is SessionState.CONNECTED:
            self._emit(EVENT_PRINTER_CONNECTED, {"message": reason, "printer_info": self._printer_info()})
        elif state is SessionState.DISCONNECTED:
            self._emit(EVENT_PRINTER_DISCONNECTED, {"message": reason})

    def _on_host_event(self, event: HostEvent) -> None:
        kind = event.kind
        if kind in (HostEventKind.PERMISSION_GRANTED, HostEventKind.PERMISSION_DENIED):
            with self._pending_lock:
                request = self._pending
            if request is None:
                logger.debug(f"Unsolicited {kind.value} event")
                return
            if event.device is not None and event.device.key != request.device.key:
                return
            request.granted = kind is HostEventKind.PERMISSION_GRANTED
            logger.info(f"USB permission {'granted' if request.granted else 'denied'}")
            request.answered.set()
        elif kind is HostEventKind.DEVICE_ATTACHED:
            logger.info("USB device attached")
            self._emit(EVENT_PRINTER_CONNECTED, {"message": "Device attached"})
        elif kind is HostEventKind.DEVICE_DETACHED:
            logger.info("USB device detached")
            self.session.handle_detach(event.device)

    # connection

    def _locate_printer(self) -> DeviceDescriptor:
        devices = self.host.list_devices()
        device = select_printer(devices)
        if device is None:
            raise NoDevicesFound(len(devices))
        return device

    def _locator_for(self, vendor_id: int, product_id: int = 0) -> Callable[[], DeviceDescriptor]:
        def _locate() -> DeviceDescriptor:
            device = find_device(self.host.list_devices(), vendor_id, product_id)
            if device is None:
                raise NoDevicesFound(message=f"Device VID:0x{vendor_id:04x} not found")
            return device
        return _locate

    def _await_permission(self, device: DeviceDescriptor) -> None:
        request = _PermissionRequest(device)
        with self._pending_lock:
            self._pending = request
        try:
            logger.info("Requesting USB permission")
            self.host.request_permission(device)
            if not request.answered.wait(self.settings.permission_timeout):
                raise PermissionDenied("USB permission request timed out")
            if not request.granted:
                raise PermissionDenied()
        finally:
            with self._pending_lock:
                if self._pending is request:
                    self._pending = None

    def _connect(self, locate: Callable[[], DeviceDescriptor]) -> Dict[str, Any]:
        if not self.session.begin_connect():
            return _failure("Connection already in progress")
        try:
            try:
                device = locate()
            except NoDevicesFound as exc:
                # still go through the retry loop; the printer may show up late
                logger.info(f"{exc}")
                device = None
            if device is not None and not self.host.has_permission(device):
                self._await_permission(device)
            result = connect_with_retry(
                self.session,
                locate,
                max_attempts=self.settings.max_attempts,
                base_delay=self.settings.retry_base_delay,
                sleep=self._sleep,
            )
        except PrinterError as exc:
            self.session.abort_connect()
            logger.warning(f"Connect failed: {exc}")
            return _failure(exc)
        except Exception as exc:
            self.session.abort_connect()
            logger.exception("Connect failed unexpectedly")
            return _failure(exc)
        return {
            "success": True,
            "attempts": result.attempts,
            "printer_info": self._printer_info(),
        }

    def connect(self) -> Dict[str, Any]:
        logger.info("Connecting to the most likely printer")
        return self._connect(self._locate_printer)

    def connect_usb(self, vendor_id: int, product_id: int = 0) -> Dict[str, Any]:
        logger.info(f"Connecting to VID=0x{vendor_id:04x} PID=0x{product_id:04x}")
        return self._connect(self._locator_for(vendor_id, product_id))

    @_reported
    def disconnect(self) -> Dict[str, Any]:
        self.session.disconnect()
        return {"success": True}

    def is_connected(self) -> Dict[str, Any]:
        return {"success": True, "connected": self.session.is_connected()}

    def _printer_info(self) -> Dict[str, Any]:
        device = self.session.device
        claimed = self.session.claimed
        if not self.session.is_connected() or device is None or claimed is None:
            return {"connected": False, "model": "Disconnected"}
        return {
            "connected": True,
            "model": vendor_name(device.vendor_id),
            "vendor_id": device.vendor_id,
            "product_id": device.product_id,
            "device_name": device.device_name,
            "serial_number": device.serial_number,
            "interface": claimed.interface.number,
            "claim_strategy": claimed.strategy,
        }

    def get_printer_info(self) -> Dict[str, Any]:
        info = self._printer_info()
        info["success"] = True
        return info

    @_reported
    def list_devices(self) -> Dict[str, Any]:
        devices = self.host.list_devices()
        selected = select_printer(devices)
        listing = []
        for device in devices:
            entry = device.to_dict()
            entry["model"] = vendor_name(device.vendor_id)
            entry["selected"] = selected is not None and device.key == selected.key
            listing.append(entry)
        return {"success": True, "devices": listing}

    # printing

    def _send(self, data: bytes, timeout_ms: int) -> Dict[str, Any]:
        sent = self.session.send(data, timeout_ms)
        return {"success": True, "bytes_transferred": sent}

    def _send_frames(self, frames: Sequence[PrintCommand], report_label: Optional[str] = None) -> Dict[str, Any]:
        """Send frames as separate transfers and report one of them.

        Frames are not retried. Only the frame named by ``report_label`` (the
        last one by default) decides success; other failed frames are listed
        under ``failed_commands``.
        """
        if not self.session.is_connected():
            raise NotConnected()
        report_label = report_label or frames[-1].label
        reported: Dict[str, Any] = _failure("Nothing sent")
        failed: List[str] = []
        for frame in frames:
            try:
                sent = self.session.send(frame.data, frame.timeout_ms)
            except PrinterError as exc:
                logger.warning(f"Frame {frame.label} failed: {exc}")
                failed.append(frame.label)
                if frame.label == report_label:
                    reported = _failure(exc)
                continue
            if frame.label == report_label:
                reported = {"success": True, "bytes_transferred": sent}
        if failed:
            reported["failed_commands"] = failed
        return reported

    @_reported
    def send_raw_command(self, command) -> Dict[str, Any]:
        data = commands.raw(command)
        logger.debug(f"Sending {len(data)} raw bytes")
        return self._send(data, commands.TIMEOUT_RAW)

    @_reported
    def print_text(self, text: str) -> Dict[str, Any]:
        return self._send(commands.text(text), commands.TIMEOUT_TEXT)

    @_reported
    def print_formatted(self, text: str, bold: bool = False, align: str = "left",
                        size: str = "normal") -> Dict[str, Any]:
        frames = commands.compose_formatted(text, alignment=align, text_size=size, emphasized=bold)
        return self._send_frames(frames, report_label="text")

    @_reported
    def feed(self, lines: int = 3) -> Dict[str, Any]:
        return self._send(commands.feed(lines), commands.TIMEOUT_CONTROL)

    @_reported
    def cut(self, partial: bool = False) -> Dict[str, Any]:
        return self._send(commands.cut(partial), commands.TIMEOUT_CONTROL)

    @_reported
    def open_drawer(self) -> Dict[str, Any]:
        return self._send(commands.open_drawer(), commands.TIMEOUT_CONTROL)

    @_reported
    def print_barcode(self, data: str, height: int = 80) -> Dict[str, Any]:
        return self._send_frames(commands.barcode_code128(data, height))

    @_reported
    def print_qr(self, data: str, size: int = 6) -> Dict[str, Any]:
        if not self.session.is_connected():
            raise NotConnected()
        try:
            frames = commands.qr_code(data, size)
        except ValueError as exc:
            return _failure(exc)
        return self._send_frames(frames)

    @_reported
    def test_print(self) -> Dict[str, Any]:
        info = self._printer_info()
        if not info.get("connected"):
            raise NotConnected()
        lines = [
            f"Printer: {info['model']}",
            f"VID: 0x{info['vendor_id']:04x}",
            f"PID: 0x{info['product_id']:04x}",
            f"Interface: {info['interface']} ({info['claim_strategy']})",
            "Status: CONNECTED",
        ]
        return self._send_frames(commands.self_test_page(lines))

    def close(self) -> None:
        self.host.remove_listener(self._on_host_event)
        self.session.disconnect()
        self.host.shutdown()
