"""Clock and timer scheduling for the client-side session timer.

Timers are set at absolute deadlines, not relative delays, so a backgrounded
or jittery event loop cannot stretch the effective idle timeout. Two
implementations share one small interface:

- ``AsyncioScheduler`` for real use on an asyncio event loop (wall clock)
- ``VirtualScheduler`` for deterministic tests (manual clock)
"""

import asyncio
import heapq
import itertools
import logging
import time
from collections.abc import Callable
from typing import Protocol

logger = logging.getLogger(__name__)


class TimerHandle:
    """A scheduled callback. Once cancelled it never runs."""

    def __init__(self, deadline: float, callback: Callable[[], None]):
        self.deadline = deadline
        self._callback = callback
        self._cancelled = False
        self._done = False
        self._loop_handle: asyncio.TimerHandle | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def done(self) -> bool:
        return self._done

    @property
    def pending(self) -> bool:
        return not (self._cancelled or self._done)

    def cancel(self) -> None:
        self._cancelled = True
        if self._loop_handle is not None:
            self._loop_handle.cancel()
            self._loop_handle = None

    def _fire(self) -> None:
        if not self.pending:
            return
        self._done = True
        self._loop_handle = None
        self._callback()


class Scheduler(Protocol):
    """Clock plus absolute-deadline timers."""

    def now(self) -> float: ...

    def call_at(self, deadline: float, callback: Callable[[], None]) -> TimerHandle: ...


class AsyncioScheduler:
    """Wall-clock deadlines on an asyncio event loop."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._loop = loop
        self._clock = clock

    def now(self) -> float:
        return self._clock()

    def call_at(self, deadline: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle(deadline, callback)
        self._arm(handle)
        return handle

    def _arm(self, handle: TimerHandle) -> None:
        loop = self._loop or asyncio.get_running_loop()
        delay = max(0.0, handle.deadline - self.now())
        handle._loop_handle = loop.call_later(delay, self._deliver, handle)

    def _deliver(self, handle: TimerHandle) -> None:
        if not handle.pending:
            return
        # The loop's monotonic clock and the wall clock can disagree
        if self.now() < handle.deadline:
            logger.debug(f"Timer delivered early, re-arming for {handle.deadline}")
            self._arm(handle)
            return
        handle._fire()


class VirtualScheduler:
    """Manually advanced clock; timers run in deadline order during ``advance``."""

    def __init__(self, start: float = 0.0):
        self._now = start
        self._queue: list[tuple[float, int, TimerHandle]] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    def call_at(self, deadline: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle(deadline, callback)
        heapq.heappush(self._queue, (deadline, next(self._seq), handle))
        return handle

    @property
    def pending(self) -> int:
        """Number of timers that will still run."""
        return sum(1 for _, _, handle in self._queue if handle.pending)

    def advance(self, seconds: float) -> None:
        if seconds < 0:
            raise ValueError("Cannot move the clock backwards")
        self.advance_to(self._now + seconds)

    def advance_to(self, target: float) -> None:
        """Run every timer due up to ``target``, including ones scheduled meanwhile."""
        while self._queue and self._queue[0][0] <= target:
            deadline, _, handle = heapq.heappop(self._queue)
            if not handle.pending:
                continue
            self._now = max(self._now, deadline)
            handle._fire()
        self._now = max(self._now, target)
