# tinvest_trader/middleware/rate_limiter.py
import asyncio
import time
from functools import wraps
from typing import Awaitable, Callable, Optional


class RateLimiter:
    """Fixed-interval gate shared by every caller issuing bursts of broker calls.

    Consecutive passes through ``wait()`` are spaced at least ``interval``
    seconds apart. Concurrent waiters queue on one lock, so a fan-out over
    many instruments still consumes a single shared token.
    """

    def __init__(
        self,
        interval: float = 0.6,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        if interval < 0:
            raise ValueError(f"interval must be non-negative, got {interval}")
        self.interval = interval
        self._clock = clock
        self._sleep = sleep
        self._last_call: Optional[float] = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_quota(cls, requests_per_minute: int, **kwargs) -> 'RateLimiter':
        """Limiter whose spacing keeps callers within ``requests_per_minute``"""
        if requests_per_minute <= 0:
            raise ValueError(f"requests_per_minute must be positive, got {requests_per_minute}")
        return cls(interval=60.0 / requests_per_minute, **kwargs)

    @property
    def max_per_minute(self) -> float:
        return float('inf') if self.interval == 0 else 60.0 / self.interval

    async def wait(self) -> None:
        """Suspend until the interval since the previous pass has elapsed"""
        async with self._lock:
            if self._last_call is not None:
                remaining = self.interval - (self._clock() - self._last_call)
                if remaining > 0:
                    await self._sleep(remaining)
            self._last_call = self._clock()

    def throttled(self, func):
        """
        Decorator for coroutine functions that must pass the limiter first
        """
        @wraps(func)
        async def wrapped(*args, **kwargs):
            await self.wait()
            return await func(*args, **kwargs)

        return wrapped
