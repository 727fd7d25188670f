from __future__ import annotations

from typing import Any, Callable, List, Optional
import logging
import threading

from ..usb.host import ERROR_NO_DEVICE, UsbHost
from .errors import DeviceDetached, DeviceOpenFailed, NotConnected, PrinterError, TransferFailed
from .models import ClaimedInterface, DeviceDescriptor, SessionState

logger = logging.getLogger(__name__)


SessionListener = Callable[[SessionState, str], None]


class ConnectionSession:
    """The single live printer connection.

    All state lives behind one re-entrant lock so host callbacks (detach,
    permission answers) and foreground calls never interleave. The state field
    doubles as the connect gate: only one connect sequence may be CONNECTING.
    """

    def __init__(self, host: UsbHost):
        self.host = host
        self._lock = threading.RLock()
        self._state = SessionState.DISCONNECTED
        self._device: Optional[DeviceDescriptor] = None
        self._handle: Any = None
        self._claimed: Optional[ClaimedInterface] = None
        # fails the current attempt only; cleared by release()
        self._interrupted: Optional[PrinterError] = None
        # set by disconnect() during CONNECTING; holds until the connect ends
        self._cancelled: Optional[PrinterError] = None
        self._listeners: List[SessionListener] = []

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    @property
    def device(self) -> Optional[DeviceDescriptor]:
        with self._lock:
            return self._device

    @property
    def claimed(self) -> Optional[ClaimedInterface]:
        with self._lock:
            return self._claimed

    def is_connected(self) -> bool:
        with self._lock:
            return (
                self._state is SessionState.CONNECTED
                and self._handle is not None
                and self._claimed is not None
            )

    def add_listener(self, listener: SessionListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def _notify(self, state: SessionState, reason: str) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(state, reason)
            except Exception:
                logger.exception(f"Session listener failed on {state.value}")

    def _teardown_locked(self) -> None:
        handle, claimed = self._handle, self._claimed
        self._handle = None
        self._claimed = None
        self._device = None
        if handle is None:
            return
        if claimed is not None:
            try:
                self.host.release_interface(handle, claimed.interface.number)
            except Exception as exc:
                logger.warning(f"Cleanup error releasing interface: {exc}")
        try:
            self.host.close(handle)
        except Exception as exc:
            logger.warning(f"Cleanup error closing device: {exc}")

    def begin_connect(self) -> bool:
        """Enter CONNECTING; False when another connect already holds the gate."""
        with self._lock:
            if self._state is SessionState.CONNECTING:
                return False
            self._teardown_locked()
            self._state = SessionState.CONNECTING
            self._interrupted = None
            self._cancelled = None
            return True

    def abort_connect(self) -> None:
        with self._lock:
            self._teardown_locked()
            if self._state is SessionState.CONNECTING:
                self._state = SessionState.DISCONNECTED
            self._interrupted = None
            self._cancelled = None

    def release(self) -> None:
        """Drop any partially acquired handle or claim; safe to call repeatedly.

        Also ends the current attempt, so a detach seen during it does not
        carry over to the next one.
        """
        with self._lock:
            self._teardown_locked()
            self._interrupted = None

    def open(self, device: DeviceDescriptor) -> Any:
        with self._lock:
            self._teardown_locked()
            if self._cancelled is not None:
                raise self._cancelled
            handle = self.host.open(device)
            if handle is None:
                raise DeviceOpenFailed()
            self._handle = handle
            self._device = device
            return handle

    def attach(self, device: DeviceDescriptor, handle: Any, claimed: ClaimedInterface) -> None:
        with self._lock:
            if self._cancelled is not None or self._interrupted is not None or self._handle is not handle:
                error = self._cancelled or self._interrupted or DeviceDetached()
                self._teardown_locked()
                raise error
            self._device = device
            self._claimed = claimed
            self._state = SessionState.CONNECTED
        self._notify(SessionState.CONNECTED, "Connected")

    def send(self, data: bytes, timeout_ms: int) -> int:
        with self._lock:
            if (self._state is not SessionState.CONNECTED
                    or self._claimed is None or self._handle is None):
                raise NotConnected()
            endpoint = self._claimed.endpoint_out.address
            # The lock is held for the whole transfer, at most timeout_ms
            # (10 s for raw commands); detach handling waits that long.
            sent = self.host.bulk_transfer(self._handle, endpoint, data, len(data), timeout_ms)
            if sent >= 0:
                return sent
            lost = sent == ERROR_NO_DEVICE
            if lost:
                logger.error("Printer vanished during transfer; closing session")
                self._teardown_locked()
                self._state = SessionState.DISCONNECTED
        if lost:
            self._notify(SessionState.DISCONNECTED, "Transfer failed: device gone")
        raise TransferFailed(sent)

    def disconnect(self) -> bool:
        """Release and close; a no-op when nothing is held."""
        with self._lock:
            was_connected = self._state is SessionState.CONNECTED
            if self._state is SessionState.CONNECTING:
                self._cancelled = NotConnected("Connection cancelled")
            else:
                self._state = SessionState.DISCONNECTED
            self._teardown_locked()
        if was_connected:
            self._notify(SessionState.DISCONNECTED, "Disconnected")
        return was_connected

    def handle_detach(self, device: Optional[DeviceDescriptor]) -> bool:
        """React to a host detach notice; True when the live session was dropped."""
        with self._lock:
            current = self._device
            if current is not None and device is not None and current.key != device.key:
                return False
            if self._state is SessionState.CONNECTING:
                # only the device this attempt holds can interrupt it
                if current is None:
                    return False
                logger.info("Device detached during connect, failing this attempt")
                self._interrupted = DeviceDetached()
                self._teardown_locked()
                return False
            if self._state is not SessionState.CONNECTED:
                return False
            logger.info("Device detached, cleaning up")
            self._teardown_locked()
            self._state = SessionState.DISCONNECTED
        self._notify(SessionState.DISCONNECTED, "Printer disconnected")
        return True
