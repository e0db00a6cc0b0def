"""
Retry with Jittered Exponential Backoff

Only transient exchange failures are retried. Business rejections and
every other exception propagate on the first attempt.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Set, TypeVar

from fleet_trader.config import FleetSettings
from fleet_trader.errors import TransientExchangeError
from fleet_trader.resilience.circuit_breaker import CircuitBreaker

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    base_delay_sec: float = 0.5
    max_delay_sec: float = 8.0
    jitter_factor: float = 0.5

    retryable_exceptions: tuple = (TransientExchangeError,)


def retry_config_from_settings(settings: FleetSettings) -> RetryConfig:
    return RetryConfig(
        max_attempts=settings.retry_max_attempts,
        base_delay_sec=settings.retry_base_delay_sec,
        max_delay_sec=settings.retry_max_delay_sec,
        jitter_factor=settings.retry_jitter_factor,
    )


def jittered_backoff(
    attempt: int,
    base_delay: float = 0.5,
    max_delay: float = 8.0,
    jitter_factor: float = 0.5,
) -> float:
    """
    Calculate delay with exponential backoff and jitter.

    Args:
        attempt: Current attempt number (0-indexed)
        base_delay: Base delay in seconds
        max_delay: Maximum delay cap
        jitter_factor: Amount of random variation (0-1)

    Returns:
        Delay in seconds
    """
    capped_delay = min(base_delay * (2 ** attempt), max_delay)
    jitter_range = capped_delay * jitter_factor
    jitter = random.uniform(-jitter_range, jitter_range)
    return min(max(0.0, capped_delay + jitter), max_delay)


async def with_retry(
    func: Callable[[], Awaitable[T]],
    circuit: Optional[CircuitBreaker] = None,
    config: Optional[RetryConfig] = None,
    label: Optional[str] = None,
) -> T:
    """
    Execute an async function with retry and an optional circuit breaker.

    The function is called with no arguments on every attempt, so callers
    that sign payloads must sign once outside it and resend the same bytes.

    Raises:
        CircuitBreakerOpen: If circuit is open
        Exception: Final exception after all retries exhausted
    """
    config = config or RetryConfig()
    name = label or (circuit.service if circuit else "function")

    if circuit:
        await circuit.acquire()

    for attempt in range(config.max_attempts):
        try:
            result = await func()
            if circuit:
                await circuit.record_success()
            return result

        except config.retryable_exceptions as e:
            if attempt < config.max_attempts - 1:
                delay = jittered_backoff(
                    attempt,
                    config.base_delay_sec,
                    config.max_delay_sec,
                    config.jitter_factor,
                )
                logger.warning(
                    f"Retry {attempt + 1}/{config.max_attempts} for {name} "
                    f"after {delay:.2f}s. Error: {e}"
                )
                await asyncio.sleep(delay)
            else:
                logger.error(
                    f"All {config.max_attempts} attempts failed for {name}. Final error: {e}"
                )
                if circuit:
                    await circuit.record_failure(e)
                raise

    raise RuntimeError("Unexpected: no result and no exception")


class RetryableHTTPCodes:
    """HTTP status codes that should trigger retry."""

    RETRYABLE: Set[int] = {
        408,  # Request Timeout
        429,  # Too Many Requests
        500,  # Internal Server Error
        502,  # Bad Gateway
        503,  # Service Unavailable
        504,  # Gateway Timeout
    }

    @classmethod
    def is_retryable(cls, status_code: int) -> bool:
        return status_code in cls.RETRYABLE
