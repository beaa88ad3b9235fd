"""Sliding window rate limiting for provider bound job handlers."""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
import time
from typing import Deque

__all__ = ["SlidingWindowRateLimiter"]


class SlidingWindowRateLimiter:
    """Allow at most ``max_calls`` acquisitions in any rolling ``window_seconds``.

    One instance is shared by every concurrent slot of a worker; ``acquire``
    reserves the slot under a lock so concurrent callers cannot overshoot.
    """

    def __init__(
        self,
        *,
        max_calls: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_calls <= 0:
            raise ValueError("max_calls must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self._max_calls = int(max_calls)
        self._window_seconds = float(window_seconds)
        self._clock = clock
        self._sleep = sleep
        self._timestamps: Deque[float] = deque()
        self._lock = asyncio.Lock()

    @property
    def max_calls(self) -> int:
        return self._max_calls

    @property
    def window_seconds(self) -> float:
        return self._window_seconds

    def try_acquire(self) -> tuple[bool, float | None]:
        """Reserve a slot if one is free, else return the seconds until one is."""

        now = self._clock()
        self._evict_expired(now)
        if len(self._timestamps) >= self._max_calls:
            retry_after = self._window_seconds - (now - self._timestamps[0])
            return False, max(0.0, retry_after)
        self._timestamps.append(now)
        return True, None

    async def acquire(self) -> None:
        """Block until a slot is available and reserve it."""

        async with self._lock:
            while True:
                acquired, retry_after = self.try_acquire()
                if acquired:
                    return
                await self._sleep(retry_after or 0.0)

    def in_window(self) -> int:
        self._evict_expired(self._clock())
        return len(self._timestamps)

    def _evict_expired(self, now: float) -> None:
        cutoff = now - self._window_seconds
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()
