"""
Circuit Breaker Pattern Implementation

Stops hammering the exchange once it keeps failing.
States: CLOSED (normal) -> OPEN (failing) -> HALF_OPEN (testing recovery)

Each exchange adapter owns its breaker; there is no process-wide registry.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from fleet_trader.errors import CircuitBreakerOpen

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreaker:
    """
    Circuit breaker for a single upstream service.

    Tracks failures and opens the circuit when threshold is exceeded.
    After cooldown, allows test requests through (half-open state); two
    successes close it again.
    """

    service: str
    fail_threshold: int = 5
    cooldown_sec: float = 30.0

    state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    failure_count: int = field(default=0, init=False)
    last_failure_time: float = field(default=0.0, init=False)
    success_count_in_half_open: int = field(default=0, init=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False)

    @property
    def is_open(self) -> bool:
        """Check if circuit is open (blocking requests)."""
        return self.state == CircuitState.OPEN and not self._cooldown_elapsed()

    @property
    def time_until_retry(self) -> float:
        """Seconds until circuit can be tested again."""
        if self.state != CircuitState.OPEN:
            return 0.0
        remaining = self.cooldown_sec - (time.time() - self.last_failure_time)
        return max(0.0, remaining)

    def _cooldown_elapsed(self) -> bool:
        return (time.time() - self.last_failure_time) >= self.cooldown_sec

    async def acquire(self) -> bool:
        """
        Attempt to acquire permission to make a request.

        Returns True if request is allowed, raises CircuitBreakerOpen if not.
        """
        async with self._lock:
            if self.state == CircuitState.OPEN:
                if not self._cooldown_elapsed():
                    raise CircuitBreakerOpen(self.service, self.time_until_retry)
                logger.info(f"Circuit '{self.service}' transitioning to HALF_OPEN")
                self.state = CircuitState.HALF_OPEN
                self.success_count_in_half_open = 0
        return True

    async def record_success(self) -> None:
        async with self._lock:
            if self.state == CircuitState.HALF_OPEN:
                self.success_count_in_half_open += 1
                if self.success_count_in_half_open >= 2:
                    logger.info(f"Circuit '{self.service}' recovered, transitioning to CLOSED")
                    self.state = CircuitState.CLOSED
                    self.failure_count = 0
            elif self.failure_count > 0:
                self.failure_count -= 1

    async def record_failure(self, error: Optional[Exception] = None) -> None:
        async with self._lock:
            self.failure_count += 1
            self.last_failure_time = time.time()

            if self.state == CircuitState.HALF_OPEN:
                logger.warning(
                    f"Circuit '{self.service}' failed in HALF_OPEN, reopening. Error: {error}"
                )
                self.state = CircuitState.OPEN
                self.success_count_in_half_open = 0
            elif self.state == CircuitState.CLOSED and self.failure_count >= self.fail_threshold:
                logger.warning(
                    f"Circuit '{self.service}' opening after {self.failure_count} failures. "
                    f"Cooldown: {self.cooldown_sec}s"
                )
                self.state = CircuitState.OPEN

    def get_state_info(self) -> Dict[str, Any]:
        """Get current state information for health reporting."""
        return {
            "service": self.service,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "time_until_retry": self.time_until_retry,
        }

    async def reset(self) -> None:
        async with self._lock:
            self.state = CircuitState.CLOSED
            self.failure_count = 0
            self.last_failure_time = 0.0
            self.success_count_in_half_open = 0
            logger.info(f"Circuit '{self.service}' manually reset to CLOSED")
