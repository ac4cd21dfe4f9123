"""
Tickers - the only source of time-based callbacks in the store.

PersistenceManager never starts timers of its own. It is handed a ticker:

- AsyncioTicker schedules on the running event loop (production)
- ManualTicker keeps a virtual clock that tests advance explicitly

Callbacks are plain synchronous callables. A callback that needs to do I/O
schedules a task on the loop itself.
"""

import asyncio
import heapq
import itertools
import logging
from typing import Callable, List, Optional, Tuple

logger = logging.getLogger("scheduling")


class ScheduledCall:
    """Handle for one pending callback."""

    def __init__(self, due: float, callback: Callable[[], None]):
        self.due = due
        self.callback = callback
        self.cancelled = False
        self._loop_handle: Optional[asyncio.TimerHandle] = None

    def cancel(self) -> None:
        self.cancelled = True
        if self._loop_handle is not None:
            self._loop_handle.cancel()


class Ticker:
    """Interface shared by all tickers."""

    def now(self) -> float:
        raise NotImplementedError

    def call_later(self, delay: float, callback: Callable[[], None]) -> ScheduledCall:
        raise NotImplementedError


class AsyncioTicker(Ticker):
    """Schedules callbacks with loop.call_later on the running loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        return self._loop or asyncio.get_running_loop()

    def now(self) -> float:
        return self._get_loop().time()

    def call_later(self, delay: float, callback: Callable[[], None]) -> ScheduledCall:
        loop = self._get_loop()
        call = ScheduledCall(loop.time() + delay, callback)
        call._loop_handle = loop.call_later(delay, self._run, call)
        return call

    @staticmethod
    def _run(call: ScheduledCall) -> None:
        if not call.cancelled:
            call.callback()


class ManualTicker(Ticker):
    """
    Virtual-time ticker.

    Nothing fires until advance() is called. Callbacks scheduled while
    advancing run in the same advance() if they fall due within it.
    """

    def __init__(self, start: float = 0.0):
        self._now = start
        self._counter = itertools.count()
        self._queue: List[Tuple[float, int, ScheduledCall]] = []

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> ScheduledCall:
        call = ScheduledCall(self._now + max(delay, 0.0), callback)
        heapq.heappush(self._queue, (call.due, next(self._counter), call))
        return call

    @property
    def pending(self) -> int:
        return sum(1 for _, _, call in self._queue if not call.cancelled)

    def advance(self, seconds: float) -> int:
        """Move the clock forward and run every callback that falls due. Returns calls run."""
        target = self._now + seconds
        fired = 0
        while self._queue and self._queue[0][0] <= target:
            due, _, call = heapq.heappop(self._queue)
            self._now = max(self._now, due)
            if call.cancelled:
                continue
            call.callback()
            fired += 1
        self._now = target
        return fired
