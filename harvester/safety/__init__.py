"""Safety module - rate limiting, retries and circuit breaking."""

from .circuit_breaker import CircuitBreaker, CircuitState, CircuitStatus
from .rate_limiter import SlidingWindowRateLimiter
from .retry import (
    ErrorType,
    RetryHandler,
    RetryPolicy,
    RetryResult,
    calculate_delay,
    classify_error,
    is_retryable,
    with_timeout,
)

__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "CircuitStatus",
    "ErrorType",
    "RetryHandler",
    "RetryPolicy",
    "RetryResult",
    "SlidingWindowRateLimiter",
    "calculate_delay",
    "classify_error",
    "is_retryable",
    "with_timeout",
]
