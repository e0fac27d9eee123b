"""Circuit breaker for the SMS provider.

Skips sends for a cooldown period after repeated consecutive failures so a
provider outage fails fast instead of holding every escalation on timeouts.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class CircuitBreaker:
    """closed -> open (after N failures) -> half-open (after cooldown)."""

    failure_threshold: int = 5
    cooldown_seconds: float = 30.0
    label: str = "sms"
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    _consecutive_failures: int = field(default=0, init=False, repr=False)
    _opened_at: Optional[float] = field(default=None, init=False, repr=False)

    @property
    def state(self) -> str:
        if self._consecutive_failures < self.failure_threshold:
            return "closed"
        if self._opened_at is not None and (self.clock() - self._opened_at) >= self.cooldown_seconds:
            return "half_open"
        return "open"

    def should_try(self) -> bool:
        return self.state != "open"

    def record_success(self) -> None:
        if self._opened_at is not None:
            logger.info("Circuit breaker CLOSED for %s", self.label)
        self._consecutive_failures = 0
        self._opened_at = None

    def record_failure(self) -> None:
        self._consecutive_failures += 1
        if self._consecutive_failures < self.failure_threshold:
            return
        if self._opened_at is None:
            logger.warning(
                "Circuit breaker OPENED for %s after %d consecutive failures, "
                "skipping for %.0fs",
                self.label,
                self._consecutive_failures,
                self.cooldown_seconds,
            )
        # A failed half-open trial call restarts the cooldown
        self._opened_at = self.clock()
