"""
panel-agent Scheduler
Single-threaded timers for the retry and flush loops.

LoopScheduler runs on an asyncio event loop. VirtualScheduler keeps its own
clock and only moves when told to, so reconnect timing can be checked
without sleeping.
"""

import asyncio
import heapq
import itertools
from typing import Callable, List, Optional


class Timer:
    """Handle for a scheduled callback."""

    def __init__(self):
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class LoopScheduler:
    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self.loop = loop or asyncio.get_running_loop()

    def time(self) -> float:
        return self.loop.time()

    def call_later(self, delay: float, callback: Callable[[], None]) -> Timer:
        timer = _LoopTimer()
        timer.handle = self.loop.call_later(delay, callback)
        return timer

    def call_every(self, interval: float, callback: Callable[[], None]) -> Timer:
        timer = _LoopTimer()

        def tick():
            if timer.cancelled:
                return
            timer.handle = self.loop.call_later(interval, tick)
            callback()

        timer.handle = self.loop.call_later(interval, tick)
        return timer


class _LoopTimer(Timer):
    handle: Optional[asyncio.TimerHandle] = None

    def cancel(self) -> None:
        super().cancel()
        if self.handle is not None:
            self.handle.cancel()


class VirtualScheduler:
    """Deterministic scheduler driven by advance()."""

    def __init__(self):
        self.now = 0.0
        self._queue: List = []
        self._seq = itertools.count()

    def time(self) -> float:
        return self.now

    def call_later(self, delay: float, callback: Callable[[], None]) -> Timer:
        timer = Timer()
        heapq.heappush(self._queue, (self.now + delay, next(self._seq), timer, callback, None))
        return timer

    def call_every(self, interval: float, callback: Callable[[], None]) -> Timer:
        timer = Timer()
        heapq.heappush(self._queue, (self.now + interval, next(self._seq), timer, callback, interval))
        return timer

    @property
    def pending(self) -> int:
        return sum(1 for entry in self._queue if not entry[2].cancelled)

    def advance(self, seconds: float) -> None:
        """Move the clock forward, running every timer that falls due, in order."""
        deadline = self.now + seconds
        while self._queue and self._queue[0][0] <= deadline:
            when, _, timer, callback, interval = heapq.heappop(self._queue)
            if timer.cancelled:
                continue
            self.now = when
            if interval is not None:
                heapq.heappush(self._queue, (when + interval, next(self._seq), timer, callback, interval))
            callback()
        self.now = deadline
