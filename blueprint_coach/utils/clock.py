"""
Injected clock and scheduler.

Everything time-dependent (debounce windows, retry backoff, confirmation
timeouts, generation timeouts) reads time and sleeps through a Clock so
tests can drive elapsed time by hand.

- SystemClock: wall time and asyncio.sleep
- ManualClock: virtual time; sleepers wake only when advance() passes
  their deadline
"""

import asyncio
import heapq
import itertools
import time
from typing import List, Tuple


class Clock:
    """Clock interface."""

    def now(self) -> float:
        raise NotImplementedError

    async def sleep(self, seconds: float) -> None:
        raise NotImplementedError


class SystemClock(Clock):
    """Wall-clock time (epoch seconds)."""

    def now(self) -> float:
        return time.time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(seconds, 0))


class ManualClock(Clock):
    """
    Virtual clock for deterministic tests.

    Sleepers are kept in a heap by deadline. advance() moves time forward,
    waking each due sleeper in deadline order and letting the event loop
    run after each wake, so a woken task that sleeps again within the
    same window is woken too.
    """

    def __init__(self, start: float = 1_700_000_000.0, settle_rounds: int = 25):
        self._now = start
        self._sleepers: List[Tuple[float, int, asyncio.Future]] = []
        self._counter = itertools.count()
        self.settle_rounds = settle_rounds

    def now(self) -> float:
        return self._now

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        future = asyncio.get_running_loop().create_future()
        heapq.heappush(self._sleepers, (self._now + seconds, next(self._counter), future))
        await future

    @property
    def sleeper_count(self) -> int:
        return sum(1 for _, _, future in self._sleepers if not future.done())

    async def advance(self, seconds: float) -> None:
        """
        Move virtual time forward by ``seconds``.

        Args:
            seconds: Amount of virtual time to elapse
        """
        target = self._now + seconds
        await self.settle()
        while self._sleepers and self._sleepers[0][0] <= target:
            deadline, _, future = heapq.heappop(self._sleepers)
            self._now = max(self._now, deadline)
            if not future.done():
                future.set_result(None)
            await self.settle()
        self._now = target
        await self.settle()

    async def settle(self) -> None:
        """Yield to the event loop until ready callbacks have run."""
        for _ in range(self.settle_rounds):
            await asyncio.sleep(0)
