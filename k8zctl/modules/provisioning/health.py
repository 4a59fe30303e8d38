"""Bounded polling of boolean health probes."""
import logging
import threading
import time
from typing import Callable, Optional

from .errors import CancellationError, GateTimeoutError

logger = logging.getLogger("k8zctl.provisioning.health")


class HealthGate:
    """Turns a single-shot boolean probe into a wait with timeout.

    The probe is called at least once. Exceptions raised by the probe are
    propagated unchanged; the gate never retries a failing probe. Sleeps
    between polls wait on ``cancel`` so a cancelled run returns promptly.
    """

    def __init__(self, cancel: Optional[threading.Event] = None):
        self.cancel = cancel or threading.Event()

    def wait(self, probe: Callable[[], bool], timeout: float, interval: float,
             description: str = "condition") -> None:
        """Poll ``probe`` every ``interval`` seconds until it returns True.

        Raises:
            GateTimeoutError: If ``timeout`` elapses before the probe passes
            CancellationError: If the cancel event is set while waiting
        """
        deadline = time.monotonic() + timeout
        attempt = 0
        while True:
            if self.cancel.is_set():
                raise CancellationError(f"cancelled while waiting for {description}")

            attempt += 1
            if probe():
                logger.debug("%s passed after %d probe(s)", description, attempt)
                return

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise GateTimeoutError(description, timeout)

            logger.debug("Waiting for %s (attempt %d, %.1fs left)", description, attempt, remaining)
            if self.cancel.wait(min(interval, remaining)):
                raise CancellationError(f"cancelled while waiting for {description}")
