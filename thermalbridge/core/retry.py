from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional
import logging
import time

from .acquirer import InterfaceAcquirer
from .errors import ConnectError, PrinterError
from .models import ClaimedInterface, DeviceDescriptor
from .session import ConnectionSession

logger = logging.getLogger(__name__)


DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 0.5  # seconds; attempt n waits n * base


@dataclass
class ConnectResult:
    device: DeviceDescriptor
    claimed: ClaimedInterface
    attempts: int


def connect_with_retry(
    session: ConnectionSession,
    locate: Callable[[], DeviceDescriptor],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY,
    acquirer: Optional[InterfaceAcquirer] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> ConnectResult:
    """Locate, open and claim the printer, retrying with linear backoff.

    ``locate`` runs on every attempt so a printer that shows up late is still
    picked up. Each attempt starts from a clean session. Raises ``ConnectError``
    carrying the attempt count and the last failure reason.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    if acquirer is None:
        acquirer = InterfaceAcquirer(session.host, sleep=sleep)

    last_error = "Unknown error"
    for attempt in range(1, max_attempts + 1):
        logger.info(f"Connection attempt {attempt}/{max_attempts}")
        session.release()
        try:
            device = locate()
            handle = session.open(device)
            claimed = acquirer.claim(device, handle)
            session.attach(device, handle, claimed)
            logger.info(
                f"Connected to VID=0x{device.vendor_id:04x} PID=0x{device.product_id:04x} on attempt {attempt}"
            )
            return ConnectResult(device=device, claimed=claimed, attempts=attempt)
        except PrinterError as exc:
            last_error = str(exc)
            logger.warning(f"Attempt {attempt} failed: {last_error}")
        except Exception as exc:
            last_error = str(exc) or exc.__class__.__name__
            logger.exception(f"Attempt {attempt} raised: {last_error}")
        session.release()
        if attempt < max_attempts:
            sleep(attempt * base_delay)

    raise ConnectError(max_attempts, last_error)
