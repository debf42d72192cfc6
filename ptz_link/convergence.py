"""Actuator-side confirmation that commanded values have been reached.

ConvergenceConfirmer answers measured commands. Each target has at most one
polling session holding one entry per pending axis. Every poll reads the
actuator telemetry once and acknowledges each entry exactly once: converged
when the measured value is within tolerance, timed out when the entry is older
than the hard timeout.

SettleListener answers drag and wheel commands carrying a mouse timestamp. It
waits until the axis is both near the target and no longer moving, judged by
the standard deviation of a short sliding window, then reports
movement_finished with the actuator's clock.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Deque, Dict, Mapping, Optional, Tuple

import numpy as np

from .actuator import Actuator
from .capabilities import Axis
from .config import (
    ANGULAR_TOLERANCE,
    CONFIRM_POLL_INTERVAL_MS,
    CONFIRM_TIMEOUT_MS,
    CONFIRM_TOLERANCE_FACTOR,
    SETTLE_POLL_INTERVAL_MS,
    SETTLE_STABILITY_THRESHOLD,
    SETTLE_TARGET_TOLERANCE,
    SETTLE_TIMEOUT_MS,
    SETTLE_WINDOW_SIZE,
    ZOOM_TOLERANCE,
)
from .errors import ChannelClosedError, TelemetryUnavailable
from .messages import CommandAck, Message, MovementFinished
from .scheduler import Scheduler, TimerHandle

log = logging.getLogger(__name__)

Send = Callable[[Message], None]


class ConfirmationState(Enum):
    IDLE = "idle"
    POLLING = "polling"


@dataclass(frozen=True)
class ConvergenceEntry:
    """One axis awaiting convergence. Replaced, never mutated."""

    command_id: str
    axis: Axis
    target_value: float
    created_at: float


@dataclass
class _Session:
    target: str
    entries: Dict[Axis, ConvergenceEntry] = field(default_factory=dict)
    timer: Optional[TimerHandle] = None


def _send_quietly(send: Send, message: Message) -> bool:
    try:
        send(message)
    except ChannelClosedError as e:
        log.warning(f"Could not send {type(message).__name__}: {e}")
        return False
    return True


class ConvergenceConfirmer:
    """Polls telemetry per target and acknowledges each measured command once.

    Args:
        scheduler: Timer source for polling.
        actuators: Actuator handle per target.
        send: Delivers acknowledgement messages to the operator.
        poll_interval_ms: Telemetry polling interval.
        timeout_ms: Age after which an entry is acknowledged as timed out.
        tolerance_factor: Multiplier on the axis step for stepped axes.
        zoom_tolerance: Tolerance for a zoom axis without a step.
        angular_tolerance: Tolerance for pan/tilt without a step.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        actuators: Mapping[str, Actuator],
        send: Send,
        poll_interval_ms: float = CONFIRM_POLL_INTERVAL_MS,
        timeout_ms: float = CONFIRM_TIMEOUT_MS,
        tolerance_factor: float = CONFIRM_TOLERANCE_FACTOR,
        zoom_tolerance: float = ZOOM_TOLERANCE,
        angular_tolerance: float = ANGULAR_TOLERANCE,
    ) -> None:
        self.scheduler = scheduler
        self.actuators = actuators
        self.send = send
        self.poll_interval_ms = poll_interval_ms
        self.timeout_ms = timeout_ms
        self.tolerance_factor = tolerance_factor
        self.zoom_tolerance = zoom_tolerance
        self.angular_tolerance = angular_tolerance
        self._sessions: Dict[str, _Session] = {}

    def state(self, target: str) -> ConfirmationState:
        return ConfirmationState.POLLING if target in self._sessions else ConfirmationState.IDLE

    def pending_axes(self, target: str) -> Dict[Axis, ConvergenceEntry]:
        session = self._sessions.get(target)
        return dict(session.entries) if session else {}

    def tolerance_for(self, target: str, axis: Axis) -> float:
        """Convergence tolerance for one axis of a target."""
        axis = Axis(axis)
        cap = self.actuators[target].get_capabilities().get(axis)
        if cap is not None and cap.step > 0:
            return cap.step * self.tolerance_factor
        if axis is Axis.ZOOM:
            return self.zoom_tolerance
        return self.angular_tolerance

    def track(self, target: str, axis: Axis, value: float, command_id: str) -> None:
        """Start confirming a measured command.

        A pending entry for the same axis is superseded and acknowledged
        immediately with timed_out and superseded set.
        """
        axis = Axis(axis)
        if target not in self.actuators:
            log.warning(f"No actuator for target {target}; acknowledging {command_id} as timed out")
            _send_quietly(self.send, CommandAck(command_id, axis, timed_out=True))
            return

        session = self._sessions.get(target)
        if session is None:
            session = _Session(target)
            self._sessions[target] = session
            log.debug(f"[{target}] Convergence session started")

        previous = session.entries.get(axis)
        if previous is not None:
            log.debug(f"[{target}] {axis} command {previous.command_id} superseded by {command_id}")
            _send_quietly(
                self.send,
                CommandAck(previous.command_id, axis, timed_out=True, superseded=True),
            )

        session.entries[axis] = ConvergenceEntry(
            command_id=command_id,
            axis=axis,
            target_value=value,
            created_at=self.scheduler.now(),
        )

        # One poll timer per session; later tracks join the running cadence
        if session.timer is None:
            session.timer = self.scheduler.call_every(self.poll_interval_ms, self._poll, target)

    def _poll(self, target: str) -> None:
        session = self._sessions.get(target)
        if session is None:
            return

        try:
            settings = self.actuators[target].get_settings()
        except TelemetryUnavailable as e:
            log.warning(
                f"[{target}] Telemetry unavailable ({e}); dropping "
                f"{len(session.entries)} pending confirmation(s)"
            )
            self.cancel(target)
            return

        now = self.scheduler.now()
        for axis, entry in list(session.entries.items()):
            measured = settings.get(axis)
            if measured is not None and abs(measured - entry.target_value) <= self.tolerance_for(target, axis):
                timed_out = False
            elif now - entry.created_at >= self.timeout_ms:
                timed_out = True
                log.warning(
                    f"[{target}] {axis} did not reach {entry.target_value:.2f} "
                    f"within {self.timeout_ms:.0f} ms (last {measured})"
                )
            else:
                continue

            del session.entries[axis]
            _send_quietly(self.send, CommandAck(entry.command_id, axis, timed_out=timed_out))

        if not session.entries:
            self.cancel(target)

    def cancel(self, target: str) -> None:
        """Tear down a target's session without acknowledging its entries."""
        session = self._sessions.pop(target, None)
        if session is None:
            return
        if session.timer is not None:
            session.timer.cancel()
        log.debug(f"[{target}] Convergence session idle")

    def close(self) -> None:
        for target in list(self._sessions):
            self.cancel(target)


@dataclass
class _Listener:
    target_value: float
    mouse_timestamp: float
    window: Deque[float]
    poll_timer: TimerHandle
    timeout_timer: TimerHandle


class SettleListener:
    """Reports movement_finished once an axis has arrived and stopped.

    One listener runs per (target, axis); a newer listen() for the same key
    replaces the running one.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        actuators: Mapping[str, Actuator],
        send: Send,
        poll_interval_ms: float = SETTLE_POLL_INTERVAL_MS,
        timeout_ms: float = SETTLE_TIMEOUT_MS,
        target_tolerance: float = SETTLE_TARGET_TOLERANCE,
        window_size: int = SETTLE_WINDOW_SIZE,
        stability_threshold: float = SETTLE_STABILITY_THRESHOLD,
    ) -> None:
        self.scheduler = scheduler
        self.actuators = actuators
        self.send = send
        self.poll_interval_ms = poll_interval_ms
        self.timeout_ms = timeout_ms
        self.target_tolerance = target_tolerance
        self.window_size = window_size
        self.stability_threshold = stability_threshold
        self._listeners: Dict[Tuple[str, Axis], _Listener] = {}

    def active(self, target: str, axis: Axis) -> bool:
        return (target, Axis(axis)) in self._listeners

    def listen(self, target: str, axis: Axis, value: float, mouse_timestamp: float) -> None:
        key = (target, Axis(axis))
        if target not in self.actuators:
            log.warning(f"No actuator for target {target}; not listening for {axis}")
            return
        self.cancel(*key)
        self._listeners[key] = _Listener(
            target_value=value,
            mouse_timestamp=mouse_timestamp,
            window=deque(maxlen=self.window_size),
            poll_timer=self.scheduler.call_every(self.poll_interval_ms, self._poll, key),
            timeout_timer=self.scheduler.call_later(self.timeout_ms, self._on_timeout, key),
        )

    def _poll(self, key: Tuple[str, Axis]) -> None:
        listener = self._listeners.get(key)
        if listener is None:
            return
        target, axis = key
        try:
            current = self.actuators[target].get_settings().get(axis)
        except TelemetryUnavailable as e:
            log.warning(f"[{target}] Telemetry unavailable ({e}); stopping {axis} settle listener")
            self.cancel(*key)
            return
        if current is None:
            self.cancel(*key)
            return

        listener.window.append(current)
        at_target = abs(current - listener.target_value) < self.target_tolerance
        stable = (
            len(listener.window) == self.window_size
            and float(np.std(listener.window)) < self.stability_threshold
        )
        if at_target and stable:
            self.cancel(*key)
            _send_quietly(
                self.send,
                MovementFinished(
                    axis=axis,
                    target_value=listener.target_value,
                    mouse_timestamp=listener.mouse_timestamp,
                    movement_end_time=self.scheduler.now(),
                ),
            )

    def _on_timeout(self, key: Tuple[str, Axis]) -> None:
        if key in self._listeners:
            log.warning(f"[{key[0]}] Could not detect end of {key[1]} movement")
            self.cancel(*key)

    def cancel(self, target: str, axis: Axis) -> None:
        listener = self._listeners.pop((target, Axis(axis)), None)
        if listener is not None:
            listener.poll_timer.cancel()
            listener.timeout_timer.cancel()

    def close(self) -> None:
        for key in list(self._listeners):
            self.cancel(*key)
