"""Actuator handles driven by the actuator node.

An Actuator exposes the camera's PTZ telemetry and accepts absolute
constraints per axis. Real hardware bindings implement the same three calls;
SimulatedActuator provides a deterministic slew model for tests, offline
simulation and the demo server.
"""

import logging
import math
from abc import ABC, abstractmethod
from typing import Dict, List, Mapping, Optional, Tuple

from .capabilities import Axis, AxisCapability
from .errors import ActuatorUnavailable, TelemetryUnavailable
from .scheduler import Scheduler

log = logging.getLogger(__name__)


class Telemetry(ABC):
    """Read-only view of a camera's PTZ state."""

    @abstractmethod
    def get_settings(self) -> Dict[Axis, float]:
        """Return the current value per supported axis.

        Raises:
            TelemetryUnavailable: If the device track has ended.
        """

    @abstractmethod
    def get_capabilities(self) -> Dict[Axis, AxisCapability]:
        """Return range and step per supported axis."""


class Actuator(Telemetry):
    """Interface to one PTZ camera."""

    @property
    @abstractmethod
    def is_live(self) -> bool:
        """True while the device accepts constraints."""

    @abstractmethod
    def apply_constraint(self, axis: Axis, value: float) -> bool:
        """Request an absolute value for one axis.

        Returns:
            True if the device accepted the request.

        Raises:
            ActuatorUnavailable: If the device is not live or not visible.
        """


class SimulatedActuator(Actuator):
    """PTZ camera model that slews toward the last applied value.

    Each axis moves at a constant rate (units per millisecond) measured on the
    scheduler clock, so telemetry read through get_settings() follows a
    predictable ramp and then holds at the target.

    Attributes:
        applied: History of (time_ms, axis, value) for every accepted apply.
        visible: Mirrors page visibility; hidden actuators refuse applies.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        capabilities: Mapping[Axis, AxisCapability],
        speed_per_ms: Optional[Mapping[Axis, float]] = None,
        initial: Optional[Mapping[Axis, float]] = None,
    ) -> None:
        self.scheduler = scheduler
        self._capabilities: Dict[Axis, AxisCapability] = {
            Axis(axis): cap for axis, cap in capabilities.items()
        }
        speeds = speed_per_ms or {}
        self._speed: Dict[Axis, float] = {
            axis: float(speeds.get(axis, float("inf"))) for axis in self._capabilities
        }
        start = initial or {}
        self._position: Dict[Axis, float] = {
            axis: cap.clamp(start.get(axis, 0.0)) for axis, cap in self._capabilities.items()
        }
        self._target: Dict[Axis, float] = dict(self._position)
        self._last_update = scheduler.now()

        self.applied: List[Tuple[float, Axis, float]] = []
        self.visible = True
        self._live = True
        self._ended = False

    @classmethod
    def from_config(
        cls,
        scheduler: Scheduler,
        capabilities: Mapping[str, Mapping[str, float]],
        speed_per_ms: Mapping[str, float],
    ) -> "SimulatedActuator":
        return cls(
            scheduler,
            {Axis(name): AxisCapability.from_dict(raw) for name, raw in capabilities.items()},
            speed_per_ms={Axis(name): speed for name, speed in speed_per_ms.items()},
        )

    @property
    def is_live(self) -> bool:
        return self._live and not self._ended

    def set_live(self, live: bool) -> None:
        self._live = live

    def end(self) -> None:
        """Simulate the camera track ending: telemetry becomes unavailable."""
        self._ended = True

    def _advance(self) -> None:
        now = self.scheduler.now()
        elapsed = max(0.0, now - self._last_update)
        self._last_update = now
        for axis, target in self._target.items():
            position = self._position[axis]
            delta = target - position
            speed = self._speed[axis]
            reach = speed * elapsed if math.isfinite(speed) else math.inf
            if abs(delta) <= reach:
                self._position[axis] = target
            else:
                self._position[axis] = position + reach * (1 if delta > 0 else -1)

    def get_settings(self) -> Dict[Axis, float]:
        if self._ended:
            raise TelemetryUnavailable("Simulated track has ended")
        self._advance()
        return dict(self._position)

    def get_capabilities(self) -> Dict[Axis, AxisCapability]:
        return dict(self._capabilities)

    def apply_constraint(self, axis: Axis, value: float) -> bool:
        axis = Axis(axis)
        if not self.is_live or not self.visible:
            raise ActuatorUnavailable(f"Cannot apply {axis} constraint: track not live or hidden")
        cap = self._capabilities.get(axis)
        if cap is None:
            log.warning(f"Simulated actuator does not support {axis}")
            return False
        self._advance()
        self._target[axis] = cap.clamp(value)
        self.applied.append((self.scheduler.now(), axis, self._target[axis]))
        return True
