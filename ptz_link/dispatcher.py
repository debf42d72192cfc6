"""Command dispatch and rate limiting.

Operator side, CommandDispatcher turns axis intent into wire commands:
- measured commands get a fresh id, are tracked until their acknowledgement
  (or a client-side timeout) and resolve a CommandHandle exactly once;
- unmeasured commands are fire-and-forget, used for intermediate drag and
  IMU updates where only the settled value matters.
Every value is clamped to the target's AxisCapability before sending.

Actuator side, ApplyRateLimiter bounds how often the hardware is touched per
(target, axis) key. Requests inside the delay window are coalesced: only the
most recent value survives and is applied when the window reopens.
"""

import asyncio
import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from .capabilities import Axis, CapabilityTable
from .channel import Channel
from .clock_sync import Stamp
from .config import ACK_TIMEOUT_MS, APPLY_DELAY_MS, MAX_PENDING_COMMANDS
from .errors import ChannelClosedError
from .messages import Command, CommandAck
from .scheduler import Scheduler, TimerHandle

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingCommand:
    """A measured command awaiting acknowledgement.

    Attributes:
        command_id: Unique token, never reused while the command is live.
        target: Actuator identifier (e.g. "camera1").
        axis: Commanded axis.
        target_value: Clamped value that was sent.
        dispatch_time: Local time the command was sent.
        start_time: Local time latency is measured from; the externally
            supplied correlation time when one was given, else dispatch_time.
        correlation: Auxiliary fields copied into the latency log.
    """

    command_id: str
    target: str
    axis: Axis
    target_value: float
    dispatch_time: Stamp
    start_time: Stamp
    correlation: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AckOutcome:
    """How a measured command was resolved.

    ``source`` is "actuator" for a received command_ack, "dispatcher" for the
    client-side timeout and "evicted" when the pending map overflowed.
    """

    command_id: str
    axis: Axis
    timed_out: bool
    resolved_at: Stamp
    source: str = "actuator"
    superseded: bool = False


class CommandHandle:
    """Resolves once when a measured command is acknowledged or times out."""

    def __init__(self, pending: PendingCommand) -> None:
        self.pending = pending
        self.outcome: Optional[AckOutcome] = None
        self._callbacks: List[Callable[[AckOutcome], None]] = []

    @property
    def command_id(self) -> str:
        return self.pending.command_id

    @property
    def done(self) -> bool:
        return self.outcome is not None

    def add_done_callback(self, callback: Callable[[AckOutcome], None]) -> None:
        if self.outcome is not None:
            callback(self.outcome)
        else:
            self._callbacks.append(callback)

    def _resolve(self, outcome: AckOutcome) -> bool:
        if self.outcome is not None:
            return False
        self.outcome = outcome
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback(outcome)
        return True

    async def wait(self) -> AckOutcome:
        """Await the outcome from asyncio code."""
        if self.outcome is not None:
            return self.outcome
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self.add_done_callback(lambda outcome: future.done() or future.set_result(outcome))
        return await future


class CommandDispatcher:
    """Sends clamped commands and tracks measured ones until resolved.

    Args:
        channel: Channel to the actuator node.
        scheduler: Timer source; its clock stamps dispatch times.
        capabilities: Callable returning the current CapabilityTable, so a
            table replaced after reconnect is picked up automatically.
        on_resolved: Called with (pending, outcome) exactly once per measured
            command. Latency fusion hooks in here.
        ack_timeout_ms: Client-side timeout per measured command.
        max_pending: Cap on live measured commands.
    """

    def __init__(
        self,
        channel: Channel,
        scheduler: Scheduler,
        capabilities: Callable[[], CapabilityTable],
        on_resolved: Optional[Callable[[PendingCommand, AckOutcome], None]] = None,
        ack_timeout_ms: float = ACK_TIMEOUT_MS,
        max_pending: int = MAX_PENDING_COMMANDS,
    ) -> None:
        self.channel = channel
        self.scheduler = scheduler
        self._capabilities = capabilities
        self.on_resolved = on_resolved
        self.ack_timeout_ms = ack_timeout_ms
        self.max_pending = max_pending

        self._pending: "OrderedDict[str, Tuple[CommandHandle, TimerHandle]]" = OrderedDict()
        self.last_sent: Dict[Tuple[str, Axis], float] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def pending(self, command_id: str) -> Optional[PendingCommand]:
        entry = self._pending.get(command_id)
        return entry[0].pending if entry else None

    def _clamp(self, target: str, axis: Axis, value: float) -> Optional[float]:
        cap = self._capabilities().get(target, axis)
        if cap is None:
            log.warning(f"PTZ axis '{axis}' is not supported for {target}")
            return None
        return cap.clamp(value)

    def _ready(self) -> bool:
        if not self.channel.is_open:
            log.warning("Cannot send command: channel not open")
            return False
        return True

    def send_unmeasured(
        self,
        target: str,
        axis: Axis,
        value: float,
        mouse_timestamp: Optional[float] = None,
    ) -> Optional[float]:
        """Fire-and-forget command. Returns the clamped value sent, or None."""
        axis = Axis(axis)
        if not self._ready():
            return None
        clamped = self._clamp(target, axis, value)
        if clamped is None:
            return None
        try:
            self.channel.send(
                Command(target=target, axis=axis, value=clamped, mouse_timestamp=mouse_timestamp)
            )
        except ChannelClosedError as e:
            log.warning(f"Command not sent: {e}")
            return None
        self.last_sent[(target, axis)] = clamped
        return clamped

    def send_measured(
        self,
        target: str,
        axis: Axis,
        value: float,
        correlation_ms: Optional[float] = None,
        **correlation: Any,
    ) -> Optional[CommandHandle]:
        """Tracked command. Returns a handle resolving on ack or timeout.

        Args:
            target: Actuator identifier.
            axis: Axis to move.
            value: Requested absolute value (clamped before sending).
            correlation_ms: Optional local-clock time of the originating event
                (e.g. an IMU sample); latency is measured from it.
            **correlation: Extra fields carried into the latency log.
        """
        axis = Axis(axis)
        if not self._ready():
            return None
        clamped = self._clamp(target, axis, value)
        if clamped is None:
            return None

        command_id = uuid.uuid4().hex
        dispatch_time = Stamp.local(self.scheduler.now())
        start_time = Stamp.local(correlation_ms) if correlation_ms is not None else dispatch_time
        pending = PendingCommand(
            command_id=command_id,
            target=target,
            axis=axis,
            target_value=clamped,
            dispatch_time=dispatch_time,
            start_time=start_time,
            correlation=dict(correlation),
        )

        try:
            self.channel.send(Command(target=target, axis=axis, value=clamped, command_id=command_id))
        except ChannelClosedError as e:
            log.warning(f"Command not sent: {e}")
            return None

        while len(self._pending) >= self.max_pending:
            oldest_id = next(iter(self._pending))
            log.warning(f"Pending command map full; evicting {oldest_id}")
            self._resolve(oldest_id, timed_out=True, source="evicted")

        handle = CommandHandle(pending)
        timer = self.scheduler.call_later(self.ack_timeout_ms, self._on_timeout, command_id)
        self._pending[command_id] = (handle, timer)
        self.last_sent[(target, axis)] = clamped
        log.debug(f"Sent {axis}={clamped:.2f} to {target} (id={command_id})")
        return handle

    def handle_ack(self, ack: CommandAck) -> Optional[PendingCommand]:
        """Resolve the command an acknowledgement refers to.

        Returns:
            The resolved PendingCommand, or None for unknown or late acks.
        """
        if ack.command_id not in self._pending:
            log.debug(f"Ignoring ack for unknown or resolved command {ack.command_id}")
            return None
        return self._resolve(
            ack.command_id, timed_out=ack.timed_out, source="actuator", superseded=ack.superseded
        )

    def _on_timeout(self, command_id: str) -> None:
        if command_id in self._pending:
            log.warning(f"No acknowledgement for command {command_id}; timing out locally")
            self._resolve(command_id, timed_out=True, source="dispatcher")

    def _resolve(
        self, command_id: str, timed_out: bool, source: str, superseded: bool = False
    ) -> PendingCommand:
        handle, timer = self._pending.pop(command_id)
        timer.cancel()
        outcome = AckOutcome(
            command_id=command_id,
            axis=handle.pending.axis,
            timed_out=timed_out,
            resolved_at=Stamp.local(self.scheduler.now()),
            source=source,
            superseded=superseded,
        )
        if self.on_resolved is not None:
            self.on_resolved(handle.pending, outcome)
        handle._resolve(outcome)
        return handle.pending


class ApplyRateLimiter:
    """Coalescing per-key rate limiter in front of the hardware apply call.

    Args:
        scheduler: Timer source.
        apply: Called as apply(target, axis, value) when a value is released.
        delay_ms: Minimum spacing between applies for the same key.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        apply: Callable[[str, Axis, float], Any],
        delay_ms: float = APPLY_DELAY_MS,
    ) -> None:
        self.scheduler = scheduler
        self.apply = apply
        self.delay_ms = delay_ms
        self._last_applied: Dict[Tuple[str, Axis], float] = {}
        self._pending: Dict[Tuple[str, Axis], float] = {}
        self._timers: Dict[Tuple[str, Axis], TimerHandle] = {}

    def request(self, target: str, axis: Axis, value: float) -> bool:
        """Apply now if the window is open, else keep value as the latest.

        Returns:
            True if the value was applied immediately.
        """
        key = (target, Axis(axis))
        now = self.scheduler.now()
        last = self._last_applied.get(key)
        if last is None or now - last >= self.delay_ms:
            self._pending.pop(key, None)
            self._release(key, value)
            return True

        self._pending[key] = value
        if key not in self._timers:
            self._timers[key] = self.scheduler.call_later(
                last + self.delay_ms - now, self._flush, key
            )
        return False

    def _flush(self, key: Tuple[str, Axis]) -> None:
        self._timers.pop(key, None)
        if key in self._pending:
            self._release(key, self._pending.pop(key))

    def _release(self, key: Tuple[str, Axis], value: float) -> None:
        self._last_applied[key] = self.scheduler.now()
        target, axis = key
        self.apply(target, axis, value)

    def cancel(self) -> None:
        """Drop all coalesced values and their timers."""
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._pending.clear()
