"""Axis identifiers and per-target actuator capabilities."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterator, Mapping, Optional


class Axis(str, Enum):
    """Independently controllable degree of freedom."""

    PAN = "pan"
    TILT = "tilt"
    ZOOM = "zoom"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class AxisCapability:
    """Range and resolution of one axis as reported by the actuator."""

    min: float
    max: float
    step: float = 0.0

    def __post_init__(self) -> None:
        if self.min > self.max:
            raise ValueError(f"Capability min {self.min} exceeds max {self.max}")

    def clamp(self, value: float) -> float:
        """Clamp value into [min, max]. Clamping a clamped value is a no-op."""
        return max(self.min, min(self.max, value))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AxisCapability":
        return cls(
            min=float(data["min"]),
            max=float(data["max"]),
            step=float(data.get("step") or 0.0),
        )

    def to_dict(self) -> Dict[str, float]:
        return {"min": self.min, "max": self.max, "step": self.step}


class CapabilityTable:
    """Capabilities per target as announced by the actuator node.

    A table is replaced wholesale when a new capabilities message arrives;
    individual AxisCapability records are immutable.
    """

    def __init__(self, data: Optional[Mapping[str, Mapping[Axis, AxisCapability]]] = None) -> None:
        self._targets: Dict[str, Dict[Axis, AxisCapability]] = {
            target: dict(axes) for target, axes in (data or {}).items()
        }

    def get(self, target: str, axis: Axis) -> Optional[AxisCapability]:
        return self._targets.get(target, {}).get(Axis(axis))

    def axes(self, target: str) -> Dict[Axis, AxisCapability]:
        return dict(self._targets.get(target, {}))

    def targets(self) -> Iterator[str]:
        return iter(self._targets)

    def __contains__(self, target: object) -> bool:
        return target in self._targets

    def __len__(self) -> int:
        return len(self._targets)

    @classmethod
    def from_wire(cls, data: Mapping[str, Any]) -> "CapabilityTable":
        """Build a table from the ``data`` field of a capabilities message.

        Axes reported as null or missing are treated as unsupported.

        Raises:
            TypeError: If ``data`` or a target entry is not a JSON object.
        """
        if not isinstance(data, Mapping):
            raise TypeError(f"capabilities data must be an object, got {type(data).__name__}")
        table: Dict[str, Dict[Axis, AxisCapability]] = {}
        for target, axes in data.items():
            axes = axes or {}
            if not isinstance(axes, Mapping):
                raise TypeError(f"capabilities for '{target}' must be an object")
            table[target] = {}
            for axis in Axis:
                raw = axes.get(axis.value)
                if raw:
                    table[target][axis] = AxisCapability.from_dict(raw)
        return cls(table)

    def to_wire(self) -> Dict[str, Dict[str, Dict[str, float]]]:
        return {
            target: {axis.value: cap.to_dict() for axis, cap in axes.items()}
            for target, axes in self._targets.items()
        }
