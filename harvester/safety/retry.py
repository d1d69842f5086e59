"""
Retry Module

Failure classification and exponential backoff for page operations.
Errors are classified into an ErrorType; transient classes are retried with
jittered exponential delays, permanent ones stop the loop immediately.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from harvester.config import config
from harvester.errors import ErrorType, HarvesterError, ScrapeTimeoutError

logger = logging.getLogger(__name__)


DEFAULT_RETRYABLE_PATTERNS: Tuple[str, ...] = (
    "net::ERR_NETWORK_CHANGED",
    "net::ERR_CONNECTION_RESET",
    "net::ERR_CONNECTION_REFUSED",
    "net::ERR_TIMED_OUT",
    "TimeoutError",
    "ProtocolError",
)

RETRYABLE_TYPES = {
    ErrorType.NETWORK,
    ErrorType.TIMEOUT,
    ErrorType.RATE_LIMITED,
    ErrorType.UNKNOWN,
}

# Checked in order; the first matching rule wins.
_MESSAGE_RULES: List[Tuple[ErrorType, Tuple[str, ...]]] = [
    (ErrorType.TIMEOUT, ("timeout", "timed out")),
    (ErrorType.NETWORK, ("network", "connection", "net::err")),
    (ErrorType.CAPTCHA, ("captcha", "recaptcha")),
    (ErrorType.RATE_LIMITED, ("rate limit", "too many requests", "429")),
    (ErrorType.BLOCKED, ("blocked", "access denied", "403")),
    (ErrorType.PARSING, ("parse", "extract", "selector")),
]


def classify_error(exc: BaseException) -> ErrorType:
    """
    Map an exception to a failure class.

    Harvester errors carry their class; anything else is classified from
    its type and message text.

    Args:
        exc: The exception raised by the operation

    Returns:
        The ErrorType for the exception
    """
    if isinstance(exc, HarvesterError):
        return exc.error_type
    if isinstance(exc, asyncio.TimeoutError):
        return ErrorType.TIMEOUT
    if isinstance(exc, ConnectionError):
        return ErrorType.NETWORK

    message = str(exc).lower()
    for error_type, needles in _MESSAGE_RULES:
        if any(needle in message for needle in needles):
            return error_type
    return ErrorType.UNKNOWN


@dataclass
class RetryPolicy:
    """Backoff parameters for one retry loop."""

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    retryable_patterns: Tuple[str, ...] = DEFAULT_RETRYABLE_PATTERNS

    @classmethod
    def from_config(cls) -> "RetryPolicy":
        return cls(
            max_retries=config.retry.max_retries,
            base_delay=config.retry.base_delay,
            max_delay=config.retry.max_delay,
            backoff_multiplier=config.retry.backoff_multiplier,
        )


def is_retryable(error_type: ErrorType, exc: BaseException, policy: RetryPolicy) -> bool:
    """Whether another attempt is worth making for this failure."""
    message = str(exc)
    if any(pattern in message for pattern in policy.retryable_patterns):
        return True
    return error_type in RETRYABLE_TYPES


def calculate_delay(attempt: int, policy: RetryPolicy, jitter: bool = True) -> float:
    """
    Backoff delay before the next attempt.

    Args:
        attempt: Zero-based index of the failed attempt
        policy: Backoff parameters
        jitter: Add up to 10% random jitter

    Returns:
        Delay in seconds, capped at policy.max_delay
    """
    exponential = policy.base_delay * (policy.backoff_multiplier ** attempt)
    if jitter:
        exponential += random.uniform(0, 0.1) * exponential
    return min(exponential, policy.max_delay)


@dataclass
class RetryResult:
    """Outcome of a retried operation."""

    success: bool
    data: Any = None
    error: Optional[BaseException] = None
    error_type: Optional[ErrorType] = None
    attempts: int = 0
    total_time: float = 0.0
    delays: List[float] = field(default_factory=list)


class RetryHandler:
    """
    Runs async operations with classification-aware retries.

    Features:
    - Exponential backoff with jitter, capped at max_delay
    - Stops at the first non-retryable failure (captcha, blocked, parsing)
    - Never raises the operation's error; it is returned in the result
    - on_retry / on_final_failure hooks

    Example:
        handler = RetryHandler()
        result = await handler.execute_with_retry(lambda: loader.load(session, url))
        if not result.success:
            print(result.error_type, result.attempts)
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ):
        """
        Args:
            policy: Default policy (default from config)
            sleep: Awaitable used between attempts (default asyncio.sleep)
        """
        self.policy = policy or RetryPolicy.from_config()
        self._sleep = sleep or asyncio.sleep

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[Any]],
        policy: RetryPolicy | None = None,
        on_retry: Callable[[int, BaseException], None] | None = None,
        on_final_failure: Callable[[BaseException, int], None] | None = None,
    ) -> RetryResult:
        """
        Run an operation until it succeeds or retries are exhausted.

        Args:
            operation: Zero-argument coroutine factory
            policy: Override for this call
            on_retry: Called with (attempt, error) before each backoff sleep
            on_final_failure: Called with (error, attempts) when giving up

        Returns:
            RetryResult with the data or the last error
        """
        policy = policy or self.policy
        started = time.monotonic()
        delays: List[float] = []
        last_error: Optional[BaseException] = None
        last_type: Optional[ErrorType] = None
        attempt = 0

        for attempt in range(1, policy.max_retries + 2):
            try:
                data = await operation()
                return RetryResult(
                    success=True,
                    data=data,
                    attempts=attempt,
                    total_time=time.monotonic() - started,
                    delays=delays,
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                last_error = e
                last_type = classify_error(e)

                if attempt > policy.max_retries:
                    break

                if not is_retryable(last_type, e, policy):
                    logger.warning(f"Non-retryable {last_type.value} error on attempt {attempt}: {e}")
                    break

                delay = calculate_delay(attempt - 1, policy)
                delays.append(delay)
                logger.warning(
                    f"Retrying in {delay:.2f}s (attempt {attempt}/{policy.max_retries + 1}): {e}"
                )
                if on_retry:
                    on_retry(attempt, e)
                await self._sleep(delay)

        if on_final_failure and last_error is not None:
            on_final_failure(last_error, attempt)

        return RetryResult(
            success=False,
            error=last_error,
            error_type=last_type,
            attempts=attempt,
            total_time=time.monotonic() - started,
            delays=delays,
        )


async def with_timeout(
    operation: Awaitable[Any],
    seconds: float,
    message: str = "Operation timed out",
) -> Any:
    """
    Await an operation with a hard timeout.

    Raises:
        ScrapeTimeoutError: If the operation does not finish in time
    """
    try:
        return await asyncio.wait_for(operation, timeout=seconds)
    except asyncio.TimeoutError as e:
        raise ScrapeTimeoutError(f"{message} after {seconds}s") from e
