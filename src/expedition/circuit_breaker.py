"""
Circuit Breaker for the rewards ledger.

Stops the engine from calling a ledger that keeps failing. While OPEN,
deliveries are skipped and left pending for the retry job instead.
"""

import logging
import time
from typing import Any, Callable

logger = logging.getLogger(__name__)


class CircuitOpenError(RuntimeError):
    """Raised by ``protect`` when the breaker refuses the call."""
    def __init__(self, name: str):
        super().__init__(f"Circuit '{name}' is open")
        self.name = name


class CircuitBreaker:
    """
    Simple circuit breaker state machine.
    States: CLOSED (Normal), OPEN (Disabled), HALF-OPEN (Testing).
    """

    def __init__(
        self,
        name: str = "rewards-ledger",
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
        clock: Callable[[], float] = time.time,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock

        self.failures = 0
        self.last_failure_time = 0.0
        self.state = "CLOSED"

    def allow_request(self) -> bool:
        if self.state == "OPEN":
            if self._clock() - self.last_failure_time > self.recovery_timeout:
                self.state = "HALF-OPEN"
                return True
            return False
        return True

    def record_success(self):
        if self.state == "HALF-OPEN":
            logger.info("Circuit '%s' closed after successful probe", self.name)
            self.state = "CLOSED"
        self.failures = 0

    def record_failure(self):
        self.failures += 1
        self.last_failure_time = self._clock()

        if self.state == "HALF-OPEN" or self.failures >= self.failure_threshold:
            if self.state != "OPEN":
                logger.error("Circuit '%s' OPENED after %d failures", self.name, self.failures)
                self.state = "OPEN"

    def protect(self, func: Callable, *args, **kwargs) -> Any:
        """Execute ``func`` through the breaker; raises CircuitOpenError when open."""
        if not self.allow_request():
            raise CircuitOpenError(self.name)

        try:
            result = func(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result
