"""Clock offset estimation between the operator and the actuator node.

The two peers run on independent clocks. Latency measurements that combine a
local start time with a remote completion time need the offset between them.
The estimator runs a burst of ping/pong round trips and assumes symmetric
transit delay:

    rtt    = t3 - t1
    offset = t2 - (t1 + rtt / 2)

where t1 is the local send time, t2 the remote receive time and t3 the local
receive time of the pong. The result is the mean over all collected samples.

Timestamps that cross the channel are wrapped in Stamp so that values from
different clock domains cannot be subtracted by accident.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Set

from .channel import Channel
from .config import (
    CLOCK_SYNC_PING_INTERVAL_MS,
    CLOCK_SYNC_SAMPLES,
    CLOCK_SYNC_WINDOW_MS,
    TERM_BLUE,
    TERM_RESET,
)
from .errors import ChannelClosedError, ClockDomainError
from .messages import Message, Ping, Pong
from .scheduler import Scheduler, TimerHandle

log = logging.getLogger(__name__)


class ClockDomain(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


@dataclass(frozen=True)
class Stamp:
    """A millisecond timestamp tagged with the clock that produced it."""

    ms: float
    domain: ClockDomain = ClockDomain.LOCAL

    @classmethod
    def local(cls, ms: float) -> "Stamp":
        return cls(ms, ClockDomain.LOCAL)

    @classmethod
    def remote(cls, ms: float) -> "Stamp":
        return cls(ms, ClockDomain.REMOTE)

    def __sub__(self, other: "Stamp") -> float:
        if not isinstance(other, Stamp):
            return NotImplemented
        if self.domain != other.domain:
            raise ClockDomainError(
                f"Cannot subtract {other.domain.value} stamp from {self.domain.value} stamp"
            )
        return self.ms - other.ms


@dataclass(frozen=True)
class ClockOffset:
    """Estimated (remote clock - local clock) in milliseconds.

    Attributes:
        offset_ms: Mean offset over all samples (0 when degraded).
        samples: Number of round trips that contributed.
        degraded: True when no samples arrived and the offset is assumed 0.
    """

    offset_ms: float
    samples: int
    degraded: bool = False

    def to_local(self, stamp: Stamp) -> Stamp:
        """Express a stamp in the local clock domain."""
        if stamp.domain is ClockDomain.LOCAL:
            return stamp
        return Stamp.local(stamp.ms - self.offset_ms)


def answer_ping(ping: Ping, now_ms: float) -> Pong:
    """Responder side of a round trip: echo t1 with the local receive time."""
    return Pong(t1=ping.t1, t2=now_ms)


class ClockOffsetEstimator:
    """Runs ping/pong bursts over a channel and keeps the latest offset.

    The estimator is reusable: call start() again after a reconnect. The
    current offset is dropped by invalidate(), which owners call when the
    channel closes.
    """

    def __init__(
        self,
        channel: Channel,
        scheduler: Scheduler,
        samples: int = CLOCK_SYNC_SAMPLES,
        window_ms: float = CLOCK_SYNC_WINDOW_MS,
        ping_interval_ms: float = CLOCK_SYNC_PING_INTERVAL_MS,
    ) -> None:
        if samples < 1:
            raise ValueError(f"samples must be >= 1, got {samples}")
        self.channel = channel
        self.scheduler = scheduler
        self.samples = samples
        self.window_ms = window_ms
        self.ping_interval_ms = ping_interval_ms

        self.current: Optional[ClockOffset] = None
        self._offsets: List[float] = []
        self._outstanding: Set[float] = set()
        self._pings_sent = 0
        self._ping_timer: Optional[TimerHandle] = None
        self._window_timer: Optional[TimerHandle] = None
        self._callbacks: List[Callable[[ClockOffset], None]] = []
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self, on_done: Optional[Callable[[ClockOffset], None]] = None) -> None:
        """Begin a measurement burst; on_done receives the resulting offset.

        Calling start() while a burst is running only registers on_done.
        """
        if on_done is not None:
            self._callbacks.append(on_done)
        if self._running:
            return

        self._running = True
        self._offsets = []
        self._outstanding = set()
        self._pings_sent = 0
        self.channel.add_listener(self._on_message)

        self._send_ping()
        if self.samples > 1:
            self._ping_timer = self.scheduler.call_every(self.ping_interval_ms, self._send_ping)
        self._window_timer = self.scheduler.call_later(self.window_ms, self._finish)

    async def estimate(self) -> ClockOffset:
        """Awaitable form of start() for asyncio callers."""
        future: asyncio.Future = asyncio.get_running_loop().create_future()

        def resolve(offset: ClockOffset) -> None:
            if not future.done():
                future.set_result(offset)

        self.start(resolve)
        return await future

    def invalidate(self) -> None:
        """Forget the current offset and abort a running burst.

        Callers waiting on an aborted burst receive a degraded zero offset;
        it is not stored as the current offset.
        """
        if self._running:
            self._teardown()
            callbacks, self._callbacks = self._callbacks, []
            aborted = ClockOffset(offset_ms=0.0, samples=0, degraded=True)
            for callback in callbacks:
                callback(aborted)
        if self.current is not None:
            log.info("Clock offset invalidated")
        self.current = None

    def _send_ping(self) -> None:
        if self._pings_sent >= self.samples:
            if self._ping_timer is not None:
                self._ping_timer.cancel()
                self._ping_timer = None
            return
        t1 = self.scheduler.now()
        self._pings_sent += 1
        try:
            self.channel.send(Ping(t1=t1))
        except ChannelClosedError:
            log.warning("Clock sync ping not sent: channel closed")
            return
        self._outstanding.add(t1)

    def _on_message(self, message: Message) -> None:
        if not isinstance(message, Pong) or message.t1 not in self._outstanding:
            return
        self._outstanding.discard(message.t1)
        t3 = self.scheduler.now()
        rtt = t3 - message.t1
        self._offsets.append(message.t2 - (message.t1 + rtt / 2.0))
        log.debug(f"Clock sync sample: rtt={rtt:.2f}ms offset={self._offsets[-1]:.2f}ms")
        if len(self._offsets) >= self.samples:
            self._finish()

    def _teardown(self) -> None:
        self._running = False
        self.channel.remove_listener(self._on_message)
        if self._ping_timer is not None:
            self._ping_timer.cancel()
            self._ping_timer = None
        if self._window_timer is not None:
            self._window_timer.cancel()
            self._window_timer = None

    def _finish(self) -> None:
        if not self._running:
            return
        self._teardown()

        if not self._offsets:
            log.warning("Clock offset could not be measured; assuming 0 ms")
            result = ClockOffset(offset_ms=0.0, samples=0, degraded=True)
        else:
            mean = sum(self._offsets) / len(self._offsets)
            result = ClockOffset(offset_ms=mean, samples=len(self._offsets))
            log.info(
                f"{TERM_BLUE}✓ Clock sync complete: offset {mean:.2f} ms "
                f"({len(self._offsets)}/{self.samples} samples){TERM_RESET}"
            )

        self.current = result
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback(result)
