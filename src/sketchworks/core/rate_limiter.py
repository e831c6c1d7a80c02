"""Global rolling-window limiter for provider-bound calls.

The limiting resource is the upstream provider API, not local CPU, so a single
limiter instance is shared by every worker and consulted immediately before
each provider call.  The default budget is 5 calls per 60 second window.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


class SlidingWindowRateLimiter:
    """Allow at most ``max_calls`` acquisitions in any rolling ``window_s``.

    Args:
        max_calls: Calls permitted per window.
        window_s: Window length in seconds.
        clock: Monotonic time source (injectable for tests).
        sleep: Coroutine used to wait for capacity (injectable for tests).
    """

    def __init__(
        self,
        max_calls: int,
        window_s: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_calls < 1:
            raise ValueError(f"max_calls must be >= 1, got {max_calls}")
        if window_s <= 0:
            raise ValueError(f"window_s must be > 0, got {window_s}")
        self.max_calls = max_calls
        self.window_s = window_s
        self._clock = clock
        self._sleep = sleep
        self._calls: deque[float] = deque()
        self._lock = asyncio.Lock()

    def _prune(self, now: float) -> None:
        while self._calls and now - self._calls[0] >= self.window_s:
            self._calls.popleft()

    async def try_acquire(self) -> bool:
        """Take a slot if one is free right now."""
        async with self._lock:
            now = self._clock()
            self._prune(now)
            if len(self._calls) < self.max_calls:
                self._calls.append(now)
                return True
            return False

    async def acquire(self) -> None:
        """Wait until a slot is free, then take it."""
        while True:
            async with self._lock:
                now = self._clock()
                self._prune(now)
                if len(self._calls) < self.max_calls:
                    self._calls.append(now)
                    return
                wait_s = self._calls[0] + self.window_s - now
            logger.debug(f"Rate limit reached; waiting {wait_s:.2f}s for a provider slot")
            await self._sleep(max(wait_s, 0.0))

    def in_window(self) -> int:
        """Number of calls counted in the current window."""
        self._prune(self._clock())
        return len(self._calls)
