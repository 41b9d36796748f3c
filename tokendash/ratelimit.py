from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class RateLimiter:
    """Grants are at least min_interval_seconds apart, one at a time."""

    def __init__(
        self,
        min_interval_seconds: float = 1.2,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.min_interval_seconds = max(0.0, float(min_interval_seconds))
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_grant: float | None = None
        self.grants = 0

    @property
    def last_grant(self) -> float | None:
        return self._last_grant

    async def acquire(self) -> float:
        async with self._lock:
            now = self._clock()
            if self._last_grant is not None:
                earliest = self._last_grant + self.min_interval_seconds
                wait = earliest - now
                if wait > 0:
                    logger.debug("rate limit: waiting %.3fs", wait)
                    await self._sleep(wait)
                    # Sleep may wake marginally early on a real clock.
                    now = max(self._clock(), earliest)
            self._last_grant = now
            self.grants += 1
            return now
