"""
Sliding Window Rate Limiter Module

Implements the "Politeness" rate limiter to prevent overwhelming the target.
At most max_requests requests are admitted in any trailing window, with a
random human-like delay between pages and a "Red Light Law" halt for
rate-limit and captcha responses.
"""

import asyncio
import logging
import random
import time
from collections import deque
from typing import Awaitable, Callable, Deque

from harvester.config import config

logger = logging.getLogger(__name__)


class SlidingWindowRateLimiter:
    """
    Process-wide sliding window rate limiter.

    Features:
    - Sliding window of request timestamps
    - Random jitter delays between page actions
    - "Red Light Law" halt support for 429/captcha
    - Serialized admission (one waiter at a time)

    Example:
        limiter = SlidingWindowRateLimiter(max_requests=10, window_seconds=60)
        await limiter.wait()
        # Now safe to make request
        await limiter.random_delay()
    """

    def __init__(
        self,
        max_requests: int | None = None,
        window_seconds: float | None = None,
        min_delay: float | None = None,
        max_delay: float | None = None,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ):
        """
        Initialize the rate limiter.

        Args:
            max_requests: Requests allowed per window (default from config)
            window_seconds: Window length in seconds (default from config)
            min_delay: Minimum random delay (default from config)
            max_delay: Maximum random delay (default from config)
            clock: Monotonic time source
            sleep: Awaitable sleep function
        """
        self._max_requests = max_requests or config.rate_limit.max_requests
        self._window = window_seconds or config.rate_limit.window_seconds
        self._min_delay = min_delay if min_delay is not None else config.rate_limit.min_delay
        self._max_delay = max_delay if max_delay is not None else config.rate_limit.max_delay
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep

        self._requests: Deque[float] = deque()
        self._halted_until = 0.0
        self._halt_reason = ""
        self._total_requests = 0
        self._total_waited = 0.0
        self._lock = asyncio.Lock()

    def _prune(self, now: float) -> None:
        while self._requests and now - self._requests[0] >= self._window:
            self._requests.popleft()

    async def wait(self) -> None:
        """
        Block until a request may be made, then record it.
        """
        async with self._lock:
            # Red Light Law
            now = self._clock()
            if self._halted_until > now:
                pause = self._halted_until - now
                logger.info(f"Rate limiter halted ({self._halt_reason}), waiting {pause:.1f}s")
                self._total_waited += pause
                await self._sleep(pause)

            now = self._clock()
            self._prune(now)
            if len(self._requests) >= self._max_requests:
                wait_time = self._window - (now - self._requests[0])
                if wait_time > 0:
                    logger.debug(f"Window full, waiting {wait_time:.2f}s")
                    self._total_waited += wait_time
                    await self._sleep(wait_time)
                now = self._clock()
                self._prune(now)

            self._requests.append(now)
            self._total_requests += 1

    async def random_delay(self, min_delay: float | None = None, max_delay: float | None = None) -> float:
        """
        Sleep for a uniform random time.

        Args:
            min_delay: Lower bound in seconds (default from limiter)
            max_delay: Upper bound in seconds (default from limiter)

        Returns:
            The delay slept
        """
        low = self._min_delay if min_delay is None else min_delay
        high = self._max_delay if max_delay is None else max_delay
        delay = random.uniform(low, high)
        await self._sleep(delay)
        return delay

    def remaining_requests(self) -> int:
        self._prune(self._clock())
        return max(0, self._max_requests - len(self._requests))

    def halt(self, duration: float | None = None, reason: str = "unknown") -> None:
        """
        Halt all requests (Red Light Law).

        Args:
            duration: Halt duration in seconds (default based on reason)
            reason: Reason for halt ("429", "captcha")
        """
        if duration is None:
            duration_map = {
                "429": config.halt_on_429,
                "rate_limited": config.halt_on_429,
                "captcha": config.halt_on_captcha,
            }
            duration = duration_map.get(reason, 60)

        until = self._clock() + duration
        if until > self._halted_until:
            self._halted_until = until
            self._halt_reason = reason
        logger.warning(f"Rate limiter halted for {duration}s (reason: {reason})")

    @property
    def halted_until(self) -> float:
        return self._halted_until

    @property
    def is_halted(self) -> bool:
        return self._halted_until > self._clock()

    def get_stats(self) -> dict:
        return {
            "max_requests": self._max_requests,
            "window_seconds": self._window,
            "in_window": len(self._requests),
            "remaining": self.remaining_requests(),
            "total_requests": self._total_requests,
            "total_waited": self._total_waited,
            "is_halted": self.is_halted,
            "halt_reason": self._halt_reason if self.is_halted else None,
        }
