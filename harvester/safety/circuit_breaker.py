"""
Circuit Breaker Module

Stops hammering a target that keeps failing. States: CLOSED (normal),
OPEN (reject every call), HALF_OPEN (allow one trial call).
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from harvester.config import config
from harvester.errors import CircuitOpenError

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitStatus:
    """Snapshot of breaker state for monitoring."""

    name: str
    state: CircuitState
    failures: int
    last_failure_time: Optional[float]
    opened_at: Optional[float]
    total_opened: int
    total_rejected: int

    def to_dict(self) -> dict:
        data = asdict(self)
        data["state"] = self.state.value
        return data


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    Features:
    - Opens after failure_threshold consecutive failures
    - Rejects calls with CircuitOpenError while open
    - After reset_timeout, admits exactly one trial call (HALF_OPEN)
    - Trial success closes the circuit; trial failure reopens it

    Example:
        breaker = CircuitBreaker(failure_threshold=5, reset_timeout=60)
        html = await breaker.call(lambda: loader.load(session, url))
    """

    def __init__(
        self,
        failure_threshold: int | None = None,
        reset_timeout: float | None = None,
        name: str = "default",
        clock: Callable[[], float] | None = None,
    ):
        """
        Args:
            failure_threshold: Consecutive failures before opening (default from config)
            reset_timeout: Seconds before a trial call is allowed (default from config)
            name: Label used in logs and status
            clock: Monotonic time source
        """
        self.failure_threshold = failure_threshold or config.breaker.failure_threshold
        self.reset_timeout = reset_timeout if reset_timeout is not None else config.breaker.reset_timeout
        self.name = name
        self._clock = clock or time.monotonic

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_failure_time: Optional[float] = None
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False
        self._total_opened = 0
        self._total_rejected = 0
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    async def _before_call(self) -> None:
        async with self._lock:
            if self._state == CircuitState.OPEN:
                if self._clock() - (self._opened_at or 0) < self.reset_timeout:
                    self._total_rejected += 1
                    raise CircuitOpenError(
                        f"Circuit '{self.name}' is open",
                        context={"failures": self._failures},
                    )
                self._state = CircuitState.HALF_OPEN
                logger.info(f"Circuit '{self.name}' half-open, allowing trial call")

            if self._state == CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    self._total_rejected += 1
                    raise CircuitOpenError(f"Circuit '{self.name}' trial call in progress")
                self._trial_in_flight = True

    async def call(self, operation: Callable[[], Awaitable[Any]]) -> Any:
        """
        Run an operation through the breaker.

        Args:
            operation: Zero-argument coroutine factory

        Returns:
            The operation's result

        Raises:
            CircuitOpenError: If the circuit rejects the call
        """
        await self._before_call()
        try:
            result = await operation()
        except asyncio.CancelledError:
            async with self._lock:
                self._trial_in_flight = False
            raise
        except Exception:
            await self.record_failure()
            raise
        await self.record_success()
        return result

    async def record_success(self) -> None:
        async with self._lock:
            if self._state != CircuitState.CLOSED:
                logger.info(f"Circuit '{self.name}' closed")
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._opened_at = None
            self._trial_in_flight = False

    async def record_failure(self) -> None:
        async with self._lock:
            self._failures += 1
            self._last_failure_time = self._clock()
            was_trial = self._state == CircuitState.HALF_OPEN
            self._trial_in_flight = False

            if was_trial or self._failures >= self.failure_threshold:
                if self._state != CircuitState.OPEN:
                    self._total_opened += 1
                self._state = CircuitState.OPEN
                self._opened_at = self._clock()
                logger.warning(
                    f"Circuit '{self.name}' opened after {self._failures} failures "
                    f"(reset in {self.reset_timeout}s)"
                )

    def get_status(self) -> CircuitStatus:
        return CircuitStatus(
            name=self.name,
            state=self._state,
            failures=self._failures,
            last_failure_time=self._last_failure_time,
            opened_at=self._opened_at,
            total_opened=self._total_opened,
            total_rejected=self._total_rejected,
        )

    async def reset(self) -> None:
        """Force the circuit closed and clear counters."""
        async with self._lock:
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._opened_at = None
            self._last_failure_time = None
            self._trial_in_flight = False
        logger.info(f"Circuit '{self.name}' reset")
