"""
Resilience patterns for exchange and signer calls.

Provides circuit breaker and retry with backoff.
"""

from fleet_trader.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitState,
)
from fleet_trader.resilience.retry import (
    RetryConfig,
    RetryableHTTPCodes,
    jittered_backoff,
    retry_config_from_settings,
    with_retry,
)

__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "RetryConfig",
    "RetryableHTTPCodes",
    "jittered_backoff",
    "retry_config_from_settings",
    "with_retry",
]
