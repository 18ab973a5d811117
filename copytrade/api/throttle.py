"""Rate limiting and in-place retry for exchange API calls."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, TypeVar

from copytrade.config import API_BASE_BACKOFF, API_MAX_ATTEMPTS, API_MAX_BACKOFF
from copytrade.errors import is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RateLimiter:
    """Token bucket shared by every client of one API family.

    Holds up to ``capacity`` tokens and refills ``rate`` tokens per second.
    ``acquire()`` waits cooperatively until a token is available.
    """

    def __init__(self, rate: float, capacity: Optional[float] = None, name: str = "") -> None:
        if rate <= 0:
            raise ValueError("rate must be positive")
        self.name = name
        self.rate = rate
        self.capacity = capacity if capacity is not None else rate
        self.tokens = self.capacity
        self._last_update = time.monotonic()
        self._lock = asyncio.Lock()
        self.requests_made = 0
        self.requests_delayed = 0

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self._last_update
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
        self._last_update = now

    def time_until_token(self) -> float:
        self._refill()
        if self.tokens >= 1:
            return 0.0
        return (1 - self.tokens) / self.rate

    async def acquire(self) -> None:
        async with self._lock:
            wait = self.time_until_token()
            if wait > 0:
                self.requests_delayed += 1
                await asyncio.sleep(wait)
                self._refill()
            self.tokens -= 1
            self.requests_made += 1


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    name: str,
    attempts: int = API_MAX_ATTEMPTS,
    base_delay: float = API_BASE_BACKOFF,
    max_delay: float = API_MAX_BACKOFF,
) -> T:
    """Await ``fn()``, retrying retryable errors with exponential backoff.

    Non-retryable errors and the last failure are re-raised.
    """
    delay = base_delay
    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except Exception as exc:
            if attempt == attempts or not is_retryable(exc):
                raise
            logger.warning(
                "api_call_retry",
                extra={"call": name, "attempt": attempt, "backoff": delay, "error": str(exc)},
            )
            await asyncio.sleep(delay)
            delay = min(delay * 2, max_delay)
    raise RuntimeError("unreachable")
