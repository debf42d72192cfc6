"""The two peers of a PTZ link.

ActuatorNode runs next to the cameras. It announces capabilities when the
channel opens, answers clock-sync pings, routes incoming commands through the
apply rate limiter and confirms them:
- commands with an id are tracked by the ConvergenceConfirmer (command_ack);
- commands with a mouse timestamp are watched by the SettleListener
  (movement_finished);
- anything else is applied only.

OperatorNode runs on the controlling side. It holds the capability table,
keeps the clock offset fresh per connection, dispatches commands and turns
acknowledgements into latency records.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional

from .actuator import Actuator, Telemetry
from .capabilities import Axis, AxisCapability, CapabilityTable
from .channel import Channel
from .clock_sync import ClockOffsetEstimator, answer_ping
from .config import ACK_TIMEOUT_MS, TERM_BLUE, TERM_RESET
from .convergence import ConvergenceConfirmer, SettleListener
from .dispatcher import AckOutcome, ApplyRateLimiter, CommandDispatcher, PendingCommand
from .errors import ActuatorUnavailable, ChannelClosedError
from .latency import LatencyFusion
from .messages import Capabilities, Command, CommandAck, Message, MovementFinished, Ping
from .profiles import ControlProfile
from .scheduler import Scheduler

log = logging.getLogger(__name__)


class ActuatorNode:
    """Serves one or more actuators over a channel."""

    def __init__(
        self,
        channel: Channel,
        actuators: Mapping[str, Actuator],
        scheduler: Scheduler,
        profile: Optional[ControlProfile] = None,
    ) -> None:
        self.channel = channel
        self.actuators = dict(actuators)
        self.scheduler = scheduler
        self.profile = profile or ControlProfile()

        self.rate_limiter = ApplyRateLimiter(scheduler, self._apply, self.profile.apply_delay_ms)
        self.confirmer = ConvergenceConfirmer(
            scheduler,
            self.actuators,
            self.send,
            poll_interval_ms=self.profile.confirm_poll_interval_ms,
            timeout_ms=self.profile.confirm_timeout_ms,
            tolerance_factor=self.profile.tolerance_factor,
        )
        self.settle = SettleListener(scheduler, self.actuators, self.send)

        channel.add_listener(self._on_message)
        channel.on_open(self._on_open)
        channel.on_close(self._on_close)

    def capability_table(self) -> CapabilityTable:
        return CapabilityTable(
            {target: actuator.get_capabilities() for target, actuator in self.actuators.items()}
        )

    def send(self, message: Message) -> None:
        self.channel.send(message)

    def _on_open(self) -> None:
        log.info(f"Channel open; announcing {len(self.actuators)} actuator(s)")
        try:
            self.send(Capabilities(self.capability_table()))
        except ChannelClosedError as e:
            log.warning(f"Capabilities not sent: {e}")

    def _on_close(self) -> None:
        log.info("Channel closed; stopping confirmation sessions")
        self.confirmer.close()
        self.settle.close()
        self.rate_limiter.cancel()

    def _on_message(self, message: Message) -> None:
        if isinstance(message, Ping):
            try:
                self.send(answer_ping(message, self.scheduler.now()))
            except ChannelClosedError as e:
                log.warning(f"Pong not sent: {e}")
        elif isinstance(message, Command):
            self.handle_command(message)
        else:
            log.debug(f"Actuator node ignoring {type(message).__name__}")

    def handle_command(self, command: Command) -> None:
        if command.target not in self.actuators:
            log.warning(f"Command for unknown target {command.target}")
            if command.command_id is not None:
                self.confirmer.track(command.target, command.axis, command.value, command.command_id)
            return

        self.rate_limiter.request(command.target, command.axis, command.value)
        if command.command_id is not None:
            self.confirmer.track(command.target, command.axis, command.value, command.command_id)
        elif command.mouse_timestamp is not None:
            self.settle.listen(command.target, command.axis, command.value, command.mouse_timestamp)

    def _apply(self, target: str, axis: Axis, value: float) -> None:
        try:
            accepted = self.actuators[target].apply_constraint(axis, value)
        except ActuatorUnavailable as e:
            log.warning(f"Cannot apply {axis} to {target}: {e}")
            return
        if not accepted:
            log.warning(f"{target} rejected {axis}={value:.2f}")


class CommandedTelemetry(Telemetry):
    """Operator-side view of a target built from the last commanded values."""

    def __init__(self, node: "OperatorNode", target: str) -> None:
        self.node = node
        self.target = target

    def get_settings(self) -> Dict[Axis, float]:
        return {
            axis: self.node.current_value(self.target, axis)
            for axis in self.node.capabilities.axes(self.target)
        }

    def get_capabilities(self) -> Dict[Axis, AxisCapability]:
        return self.node.capabilities.axes(self.target)


class OperatorNode:
    """Controlling peer: dispatch, clock sync and latency bookkeeping.

    Args:
        channel: Channel to the actuator node.
        scheduler: Local clock and timers.
        event_log: Optional EvaluationLog for latency records.
        ack_timeout_ms: Client-side timeout per measured command.
    """

    def __init__(
        self,
        channel: Channel,
        scheduler: Scheduler,
        event_log: Any = None,
        ack_timeout_ms: float = ACK_TIMEOUT_MS,
    ) -> None:
        self.channel = channel
        self.scheduler = scheduler
        self.event_log = event_log
        self.capabilities = CapabilityTable()

        self.estimator = ClockOffsetEstimator(channel, scheduler)
        self.latency = LatencyFusion(scheduler, event_log, lambda: self.estimator.current)
        self.dispatcher = CommandDispatcher(
            channel,
            scheduler,
            lambda: self.capabilities,
            on_resolved=self._on_resolved,
            ack_timeout_ms=ack_timeout_ms,
        )
        self.latency_records: List[Dict[str, Any]] = []
        self._ready_callbacks: List[Callable[[], None]] = []

        channel.add_listener(self._on_message)
        channel.on_open(self._on_open)
        channel.on_close(self._on_close)

    @property
    def ready(self) -> bool:
        """True once capabilities arrived and a clock offset is known."""
        return len(self.capabilities) > 0 and self.estimator.current is not None

    def on_ready(self, callback: Callable[[], None]) -> None:
        if self.ready:
            callback()
        else:
            self._ready_callbacks.append(callback)

    async def wait_ready(self) -> None:
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self.on_ready(lambda: future.done() or future.set_result(None))
        await future

    def _check_ready(self) -> None:
        if not self.ready:
            return
        callbacks, self._ready_callbacks = self._ready_callbacks, []
        for callback in callbacks:
            callback()

    def _on_open(self) -> None:
        self.estimator.start(lambda offset: self._check_ready())

    def _on_close(self) -> None:
        self.estimator.invalidate()
        log.warning("Channel closed; clock offset invalidated")

    def _on_message(self, message: Message) -> None:
        if isinstance(message, Capabilities):
            self.capabilities = message.table
            log.info(
                f"{TERM_BLUE}✓ Received capabilities for "
                f"{', '.join(message.table.targets()) or 'no targets'}{TERM_RESET}"
            )
            self._check_ready()
        elif isinstance(message, CommandAck):
            self.dispatcher.handle_ack(message)
        elif isinstance(message, MovementFinished):
            self.latency_records.append(self.latency.on_movement_finished(message))

    def _on_resolved(self, pending: PendingCommand, outcome: AckOutcome) -> None:
        self.latency_records.append(self.latency.on_command_resolved(pending, outcome))

    def current_value(self, target: str, axis: Axis) -> float:
        """Last commanded value for an axis, clamped into its current range.

        Before anything was commanded this is 0 clamped into range (the
        minimum for zoom).
        """
        axis = Axis(axis)
        value = self.dispatcher.last_sent.get((target, axis), 0.0)
        cap = self.capabilities.get(target, axis)
        return cap.clamp(value) if cap is not None else value

    def telemetry(self, target: str) -> CommandedTelemetry:
        return CommandedTelemetry(self, target)

    def move(
        self,
        target: str,
        axis: Axis,
        value: float,
        measured: bool = True,
        correlation_ms: Optional[float] = None,
        mouse_timestamp: Optional[float] = None,
        **correlation: Any,
    ):
        """Send an absolute move.

        Returns:
            A CommandHandle for measured moves, the clamped value for
            unmeasured moves, or None if nothing was sent.
        """
        if measured:
            return self.dispatcher.send_measured(
                target, axis, value, correlation_ms=correlation_ms, **correlation
            )
        return self.dispatcher.send_unmeasured(target, axis, value, mouse_timestamp=mouse_timestamp)
