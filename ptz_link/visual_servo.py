"""Marker-following pan/tilt control.

The VisualServoController keeps a detected marker centered in the frame. Only
every Nth video frame is run through the detector. For each processed frame
the marker centroid is turned into a normalized error per axis:

    error = (centroid - frame_center) / frame_dimension     # nominally [-0.5, 0.5]

and fed through one AxisPID per axis. The PID output is added to the current
camera setting, clamped to the axis range and dispatched as a measured
command so the latency of every correction is observable.

Control law per axis:
    output = Kp * e + Ki * clamp(integral(e), -1, 1) + Kd * de/dt

Pan and tilt gains carry their own sign; a positive tilt command moves the
image the opposite way from a positive pan command.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import numpy as np

from .actuator import Telemetry
from .capabilities import Axis
from .config import PID_GAINS, PID_INTEGRAL_LIMIT, TRACKING_FRAME_INTERVAL, TRACKING_LOG_INTERVAL
from .scheduler import Scheduler

log = logging.getLogger(__name__)

TRACKING_STREAM = "aruco"


@dataclass(frozen=True)
class PIDGains:
    kp: float = 0.0
    ki: float = 0.0
    kd: float = 0.0

    @classmethod
    def from_dict(cls, data: Dict[str, float]) -> "PIDGains":
        return cls(kp=data.get("kp", 0.0), ki=data.get("ki", 0.0), kd=data.get("kd", 0.0))


class AxisPID:
    """PID controller for a single axis with integral anti-windup.

    Attributes:
        gains: Proportional, integral and derivative gains (signed).
        integral_limit: Symmetric clamp applied to the accumulated integral.
        integral: Accumulated error * seconds.
        previous_error: Error seen by the last update, for the derivative term.
    """

    def __init__(self, gains: PIDGains, integral_limit: float = PID_INTEGRAL_LIMIT):
        self.gains = gains
        self.integral_limit = integral_limit
        self.integral: float = 0.0
        self.previous_error: float = 0.0

    def update(self, error: float, dt: float) -> float:
        """Advance the controller by one sample.

        Args:
            error: Normalized error for this sample.
            dt: Seconds since the previous sample. A non-positive dt yields a
                zero derivative and leaves the integral unchanged.

        Returns:
            Controller output (additive correction in actuator units).
        """
        if dt > 0:
            derivative = (error - self.previous_error) / dt
            self.integral += error * dt
        else:
            derivative = 0.0
        self.previous_error = error

        # Anti-windup
        self.integral = max(-self.integral_limit, min(self.integral_limit, self.integral))

        return self.gains.kp * error + self.gains.ki * self.integral + self.gains.kd * derivative

    def reset(self) -> None:
        """Clear integral and derivative state. Call when tracking (re)starts."""
        self.integral = 0.0
        self.previous_error = 0.0

    def get_diagnostics(self) -> Dict[str, float]:
        return {
            "kp": self.gains.kp,
            "ki": self.gains.ki,
            "kd": self.gains.kd,
            "integral": self.integral,
            "previous_error": self.previous_error,
        }


@dataclass(frozen=True)
class MarkerDetection:
    """One detected marker in source-frame pixel coordinates."""

    corners: Tuple[Tuple[float, float], ...]
    marker_id: Optional[int] = None
    confidence: float = 1.0

    def centroid(self) -> Tuple[float, float]:
        """Arithmetic mean of the four corner points."""
        points = np.asarray(self.corners, dtype=float).reshape(-1, 2)
        center = points.mean(axis=0)
        return float(center[0]), float(center[1])


class TrackingState(Enum):
    STOPPED = "stopped"
    TRACKING = "tracking"


@dataclass(frozen=True)
class TrackerStatus:
    """Plain-data status surfaced to whatever UI drives the tracker."""

    state: TrackingState
    message: str
    marker: Optional[Tuple[float, float]] = None
    error: Optional[str] = None


class VisualServoController:
    """Centers a marker by steering pan and tilt of one target.

    Args:
        detector: Object with ``detect(frame) -> List[MarkerDetection]``.
        telemetry: Current settings and capabilities of the target camera.
        dispatcher: CommandDispatcher used for measured corrections.
        target: Target camera identifier.
        scheduler: Clock used for PID time steps.
        gains: Gains per axis; defaults to PID_GAINS from config.
        frame_interval: Run detection on every Nth frame.
        log_interval: Record an evaluation row every Nth processed frame.
        event_log: Optional EvaluationLog receiving tracking rows.
    """

    def __init__(
        self,
        detector: Any,
        telemetry: Telemetry,
        dispatcher: Any,
        target: str,
        scheduler: Scheduler,
        gains: Optional[Dict[Axis, PIDGains]] = None,
        frame_interval: int = TRACKING_FRAME_INTERVAL,
        log_interval: int = TRACKING_LOG_INTERVAL,
        event_log: Any = None,
    ) -> None:
        if frame_interval < 1 or log_interval < 1:
            raise ValueError("frame_interval and log_interval must be >= 1")
        self.detector = detector
        self.telemetry = telemetry
        self.dispatcher = dispatcher
        self.target = target
        self.scheduler = scheduler
        self.frame_interval = frame_interval
        self.log_interval = log_interval
        self.event_log = event_log

        if gains is None:
            gains = {Axis(name): PIDGains.from_dict(g) for name, g in PID_GAINS.items()}
        self.pids: Dict[Axis, AxisPID] = {
            Axis.PAN: AxisPID(gains.get(Axis.PAN, PIDGains())),
            Axis.TILT: AxisPID(gains.get(Axis.TILT, PIDGains())),
        }

        self.state = TrackingState.STOPPED
        self.status = TrackerStatus(TrackingState.STOPPED, "stopped")
        self._last_time = 0.0
        self._frame_counter = 0
        self._log_counter = 0

    @property
    def tracking(self) -> bool:
        return self.state is TrackingState.TRACKING

    def start(self) -> None:
        """Reset PID state and begin tracking."""
        for pid in self.pids.values():
            pid.reset()
        self._last_time = self.scheduler.now()
        self._frame_counter = 0
        self._log_counter = 0
        self.state = TrackingState.TRACKING
        self.status = TrackerStatus(TrackingState.TRACKING, "tracking")
        log.info(f"[{self.target}] Marker tracking started")

    def stop(self, message: str = "stopped", error: Optional[str] = None) -> None:
        """Stop tracking. Commands already dispatched are left to resolve."""
        if self.state is TrackingState.STOPPED:
            return
        self.state = TrackingState.STOPPED
        self.status = TrackerStatus(TrackingState.STOPPED, message, error=error)
        log.info(f"[{self.target}] Marker tracking stopped ({message})")

    def process_frame(self, frame: Any) -> Optional[Dict[str, Any]]:
        """Handle one video frame.

        Returns:
            The evaluation row for a processed frame, or None when the frame
            was skipped or tracking is not active.
        """
        if not self.tracking:
            return None

        self._frame_counter += 1
        if self._frame_counter % self.frame_interval != 0:
            return None

        try:
            height, width = frame.shape[:2]
            # Empty frames count as misses so the tracking log stays continuous
            detections = self.detector.detect(frame) if width and height else []
            self._log_counter += 1
            should_log = self._log_counter % self.log_interval == 0

            if detections:
                row = self._correct(detections[0], width, height)
                row["detected"] = 1
            else:
                row = {
                    "detected": 0,
                    "marker_x": None,
                    "marker_y": None,
                    "error_x": None,
                    "error_y": None,
                    "pan_adjustment": None,
                    "tilt_adjustment": None,
                }
                self.status = TrackerStatus(TrackingState.TRACKING, "not detected")
                log.debug(f"[{self.target}] Marker not detected")
        except Exception as e:
            log.exception(f"[{self.target}] Error during marker tracking")
            self.stop(message="error", error=str(e))
            return None

        if should_log and self.event_log is not None:
            self.event_log.log(TRACKING_STREAM, row)
        return row

    def _correct(self, detection: MarkerDetection, width: int, height: int) -> Dict[str, Any]:
        now = self.scheduler.now()
        dt = (now - self._last_time) / 1000.0
        self._last_time = now

        center_x, center_y = detection.centroid()
        errors = {
            Axis.PAN: (center_x - width / 2.0) / width,
            Axis.TILT: (center_y - height / 2.0) / height,
        }

        settings = self.telemetry.get_settings()
        capabilities = self.telemetry.get_capabilities()

        # Both axes are computed before anything is sent
        adjustments: Dict[Axis, float] = {Axis.PAN: 0.0, Axis.TILT: 0.0}
        commands: Dict[Axis, float] = {}
        for axis, error in errors.items():
            current = settings.get(axis)
            cap = capabilities.get(axis)
            if current is None or cap is None:
                continue
            adjustments[axis] = self.pids[axis].update(error, dt)
            commands[axis] = cap.clamp(current + adjustments[axis])

        for axis, value in commands.items():
            self.dispatcher.send_measured(self.target, axis, value)

        self.status = TrackerStatus(
            TrackingState.TRACKING, "detected", marker=(center_x, center_y)
        )
        return {
            "marker_x": center_x,
            "marker_y": center_y,
            "error_x": errors[Axis.PAN],
            "error_y": errors[Axis.TILT],
            "pan_adjustment": adjustments[Axis.PAN],
            "tilt_adjustment": adjustments[Axis.TILT],
        }

