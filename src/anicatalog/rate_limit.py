from __future__ import annotations

import asyncio
import time
from collections import deque


class AsyncRateLimiter:
    """Sliding-window limiter shared by every request a client makes.

    AniList allows 90 requests per rolling minute per IP; ``acquire`` returns how
    long the caller was held back so the client can report throttling.
    """

    def __init__(self, max_calls: int, period_seconds: float = 60.0) -> None:
        if max_calls <= 0:
            raise ValueError("max_calls must be positive")
        if period_seconds <= 0:
            raise ValueError("period_seconds must be positive")
        self.max_calls = max_calls
        self.period_seconds = period_seconds
        self._stamps: deque[float] = deque()
        self._guard = asyncio.Lock()

    def _evict(self, now: float) -> None:
        cutoff = now - self.period_seconds
        while self._stamps and self._stamps[0] <= cutoff:
            self._stamps.popleft()

    @property
    def in_window(self) -> int:
        self._evict(time.monotonic())
        return len(self._stamps)

    async def acquire(self) -> float:
        waited = 0.0
        while True:
            async with self._guard:
                now = time.monotonic()
                self._evict(now)
                if len(self._stamps) < self.max_calls:
                    self._stamps.append(now)
                    return waited
                delay = self._stamps[0] + self.period_seconds - now
            delay = max(delay, 0.0)
            waited += delay
            await asyncio.sleep(delay)
