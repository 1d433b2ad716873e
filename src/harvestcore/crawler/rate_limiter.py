"""
Global request spacing for one crawl source.

Callers are serialized through a single lock so the minimum interval applies
to the aggregate request stream rather than to each caller independently.
"""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Optional

import structlog

logger = structlog.get_logger(__name__)


class RateLimiter:
    """
    Enforces a minimum spacing between consecutive ``wait_turn()`` returns.

    The first caller is admitted immediately. Every later caller waits until
    ``min_interval`` seconds have elapsed since the previous caller was
    admitted.
    """

    def __init__(
        self,
        min_interval: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        if min_interval < 0:
            raise ValueError("min_interval must be non-negative")
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep or asyncio.sleep
        self._lock = asyncio.Lock()
        self._last_return: Optional[float] = None
        self.total_wait = 0.0
        self.admitted = 0

    async def wait_turn(self) -> float:
        """
        Suspend until this caller may issue its request.

        Returns:
            The delay applied in seconds
        """
        async with self._lock:
            delay = 0.0
            if self._last_return is not None:
                delay = self.min_interval - (self._clock() - self._last_return)
            if delay > 0:
                logger.debug("Rate limit wait", delay=round(delay, 3))
                await self._sleep(delay)
                self.total_wait += delay
            else:
                delay = 0.0
            self._last_return = self._clock()
            self.admitted += 1
            return delay

    def reset(self) -> None:
        self._last_return = None
