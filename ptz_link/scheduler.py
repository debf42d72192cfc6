"""Timer source shared by every polling, timeout and flush loop.

All components receive a Scheduler instead of calling asyncio or time
directly. In production the AsyncioScheduler maps timers onto the running
event loop; in tests the ManualScheduler advances a simulated clock so polling
and timeout behavior can be checked deterministically.

Times are milliseconds. ``now()`` is the local clock of this process.
"""

import asyncio
import heapq
import itertools
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, List, Optional, Tuple


class TimerHandle:
    """Cancellable handle returned by call_later() and call_every()."""

    def __init__(self) -> None:
        self._cancelled = False
        self._inner: Any = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True
        if self._inner is not None:
            self._inner.cancel()
            self._inner = None


class Scheduler(ABC):
    """Abstract tick source."""

    @abstractmethod
    def now(self) -> float:
        """Return the current local time in milliseconds."""

    @abstractmethod
    def _schedule(self, delay_ms: float, fn: Callable[[], None]) -> Any:
        """Arrange for fn() after delay_ms; return an object with cancel()."""

    def call_later(self, delay_ms: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        """Run callback(*args) once after delay_ms."""
        handle = TimerHandle()

        def fire() -> None:
            if handle.cancelled:
                return
            handle._inner = None
            callback(*args)

        handle._inner = self._schedule(max(0.0, delay_ms), fire)
        return handle

    def call_every(self, interval_ms: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        """Run callback(*args) every interval_ms until the handle is cancelled.

        The next tick is armed before the callback runs, so a callback that
        cancels its own handle stops the loop cleanly.
        """
        if interval_ms <= 0:
            raise ValueError(f"interval_ms must be positive, got {interval_ms}")
        handle = TimerHandle()

        def tick() -> None:
            if handle.cancelled:
                return
            handle._inner = self._schedule(interval_ms, tick)
            callback(*args)

        handle._inner = self._schedule(interval_ms, tick)
        return handle


class AsyncioScheduler(Scheduler):
    """Scheduler backed by an asyncio event loop.

    ``now()`` returns wall-clock epoch milliseconds so that externally supplied
    timestamps (IMU samples, peer clocks) share its domain.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now(self) -> float:
        return time.time() * 1000.0

    def _schedule(self, delay_ms: float, fn: Callable[[], None]) -> asyncio.TimerHandle:
        return self.loop.call_later(delay_ms / 1000.0, fn)


class _ManualTimer:
    __slots__ = ("cancelled",)

    def __init__(self) -> None:
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler(Scheduler):
    """Simulated clock for tests and offline simulation.

    Timers fire only inside advance(), in due-time order; timers with equal
    due times fire in the order they were scheduled.
    """

    def __init__(self, start_ms: float = 0.0) -> None:
        self._now = float(start_ms)
        self._queue: List[Tuple[float, int, _ManualTimer, Callable[[], None]]] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    def _schedule(self, delay_ms: float, fn: Callable[[], None]) -> _ManualTimer:
        timer = _ManualTimer()
        heapq.heappush(self._queue, (self._now + delay_ms, next(self._seq), timer, fn))
        return timer

    @property
    def pending(self) -> int:
        """Number of armed, non-cancelled timers."""
        return sum(1 for _, _, timer, _ in self._queue if not timer.cancelled)

    def advance(self, ms: float) -> None:
        """Move the clock forward by ms, firing every timer that falls due."""
        self.advance_to(self._now + ms)

    def advance_to(self, target_ms: float) -> None:
        while self._queue and self._queue[0][0] <= target_ms:
            due, _, timer, fn = heapq.heappop(self._queue)
            if timer.cancelled:
                continue
            self._now = max(self._now, due)
            fn()
        self._now = max(self._now, target_ms)

    def run_until_idle(self, limit_ms: float = 60_000.0) -> None:
        """Fire timers until none remain or limit_ms of simulated time passes."""
        deadline = self._now + limit_ms
        while self.pending and self._queue[0][0] <= deadline:
            self.advance_to(self._queue[0][0])
