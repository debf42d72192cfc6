"""Manual and IMU teleoperation of a remote PTZ camera.

ManualControl maps discrete UI gestures onto commands:
- nudge: one capability step up or down (measured)
- set_value: absolute slider value (measured)
- reset: zoom to its minimum, pan and tilt to 0 (measured)
- drag: pointer movement, throttled, mapped to pan and tilt (unmeasured,
  settle reported with movement_finished)
- wheel: zoom in or out (unmeasured, settle reported)

ImuTeleop follows a head-mounted or handheld IMU. Yaw drives pan and pitch
drives tilt. Angle changes are accumulated as residuals and released at a
bounded rate once they exceed a threshold, so small jitter never reaches the
camera. Each release is a measured command whose latency is measured from the
IMU sample's own timestamp.
"""

import asyncio
import json
import logging
import numbers
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

import websockets

from .capabilities import Axis
from .config import (
    DRAG_THROTTLE_MS,
    IMU_DEGREE_THRESHOLD,
    IMU_MIN_INTERVAL_MS,
    IMU_PAN_SIGN,
    IMU_TILT_SIGN,
    IMU_UNITS_PER_DEGREE,
    IMU_WS_URI,
    PAN_SENSITIVITY_DIVISOR,
    TERM_BLUE,
    TERM_RESET,
    TILT_SENSITIVITY_DIVISOR,
    WS_MAX_RETRY_DELAY_SECONDS,
    WS_RETRY_DELAY_SECONDS,
    ZOOM_SENSITIVITY_DIVISOR,
)
from .scheduler import Scheduler, TimerHandle

log = logging.getLogger(__name__)

IMU_STREAM = "imu"


class ManualControl:
    """Gesture-level control of one target through an OperatorNode."""

    def __init__(
        self,
        node: Any,
        target: str,
        scheduler: Scheduler,
        throttle_ms: float = DRAG_THROTTLE_MS,
        pan_divisor: float = PAN_SENSITIVITY_DIVISOR,
        tilt_divisor: float = TILT_SENSITIVITY_DIVISOR,
        zoom_divisor: float = ZOOM_SENSITIVITY_DIVISOR,
    ) -> None:
        self.node = node
        self.target = target
        self.scheduler = scheduler
        self.throttle_ms = throttle_ms
        self.pan_divisor = pan_divisor
        self.tilt_divisor = tilt_divisor
        self.zoom_divisor = zoom_divisor

        self.dragging = False
        self._last_pointer: Tuple[float, float] = (0.0, 0.0)
        self._throttle: Optional[TimerHandle] = None

    def _cap(self, axis: Axis):
        return self.node.capabilities.get(self.target, axis)

    def nudge(self, axis: Axis, direction: int = 1):
        """Move one capability step in ``direction`` (+1 or -1)."""
        axis = Axis(axis)
        cap = self._cap(axis)
        if cap is None:
            log.warning(f"{axis} is not supported for {self.target}")
            return None
        value = self.node.current_value(self.target, axis) + direction * cap.step
        return self.node.move(self.target, axis, value)

    def set_value(self, axis: Axis, value: float):
        return self.node.move(self.target, Axis(axis), value)

    def reset(self) -> Dict[Axis, Any]:
        """Zoom fully out and center pan and tilt."""
        handles = {}
        zoom = self._cap(Axis.ZOOM)
        if zoom is not None:
            handles[Axis.ZOOM] = self.node.move(self.target, Axis.ZOOM, zoom.min)
        for axis in (Axis.PAN, Axis.TILT):
            if self._cap(axis) is not None:
                handles[axis] = self.node.move(self.target, axis, 0.0)
        return handles

    def drag_start(self, x: float, y: float) -> None:
        self.dragging = True
        self._last_pointer = (x, y)

    def drag_move(self, x: float, y: float) -> None:
        """Pointer moved while dragging; at most one update per throttle window.

        The update is stamped when the movement starts and sent when the
        throttle window closes.
        """
        if not self.dragging or self._throttle is not None:
            return
        stamp = self.scheduler.now()
        self._throttle = self.scheduler.call_later(self.throttle_ms, self._drag_update, x, y, stamp)

    def _drag_update(self, x: float, y: float, stamp: float) -> None:
        self._throttle = None
        dx = x - self._last_pointer[0]
        dy = y - self._last_pointer[1]
        self._last_pointer = (x, y)

        pan = self._cap(Axis.PAN)
        if pan is not None:
            value = self.node.current_value(self.target, Axis.PAN) + dx * (pan.step / self.pan_divisor)
            self.node.move(self.target, Axis.PAN, value, measured=False, mouse_timestamp=stamp)
        tilt = self._cap(Axis.TILT)
        if tilt is not None:
            # Screen y grows downward
            value = self.node.current_value(self.target, Axis.TILT) - dy * (tilt.step / self.tilt_divisor)
            self.node.move(self.target, Axis.TILT, value, measured=False, mouse_timestamp=stamp)

    def drag_end(self) -> None:
        self.dragging = False

    def wheel(self, delta_y: float):
        zoom = self._cap(Axis.ZOOM)
        if zoom is None:
            return None
        stamp = self.scheduler.now()
        value = self.node.current_value(self.target, Axis.ZOOM) - delta_y * (zoom.step / self.zoom_divisor)
        return self.node.move(self.target, Axis.ZOOM, value, measured=False, mouse_timestamp=stamp)


def _is_number(value: Any) -> bool:
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


def parse_imu_values(data: Any) -> Optional[Tuple[Optional[float], float, float]]:
    """Extract (roll, pitch, yaw) from a list or dict sample.

    Returns:
        The angles, or None when pitch or yaw is missing or not a number.
    """
    roll = pitch = yaw = None
    if isinstance(data, (list, tuple)):
        if len(data) >= 3:
            roll, pitch, yaw = data[:3]
    elif isinstance(data, dict):
        roll = data.get("roll")
        pitch = data.get("pitch", data.get("p"))
        yaw = data.get("yaw", data.get("y"))
    if not _is_number(pitch) or not _is_number(yaw):
        return None
    return (float(roll) if _is_number(roll) else None, float(pitch), float(yaw))


_FRACTION = re.compile(r"(\.\d{6})\d+")


def parse_timestamp_ms(value: Any) -> Optional[float]:
    """Epoch milliseconds from an ISO-8601 string or a numeric epoch-ms value."""
    if _is_number(value):
        return float(value)
    if not isinstance(value, str) or not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # .NET round-trip format carries 7 fractional digits
    text = _FRACTION.sub(r"\1", text)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp() * 1000.0


def _wrap_degrees(delta: float) -> float:
    if delta > 180:
        return delta - 360
    if delta < -180:
        return delta + 360
    return delta


class ImuTeleop:
    """Turns a stream of IMU orientation samples into pan/tilt commands.

    Attributes:
        enabled: Samples are ignored while False.
        calibration: Raw (pitch, yaw) captured by calibrate_now().
    """

    def __init__(
        self,
        node: Any,
        target: str,
        scheduler: Scheduler,
        event_log: Any = None,
        min_interval_ms: float = IMU_MIN_INTERVAL_MS,
        units_per_degree: float = IMU_UNITS_PER_DEGREE,
        degree_threshold: float = IMU_DEGREE_THRESHOLD,
        pan_sign: int = IMU_PAN_SIGN,
        tilt_sign: int = IMU_TILT_SIGN,
    ) -> None:
        self.node = node
        self.target = target
        self.scheduler = scheduler
        self.event_log = event_log
        self.min_interval_ms = min_interval_ms
        self.units_per_degree = units_per_degree
        self.degree_threshold = degree_threshold
        self.pan_sign = pan_sign or 1
        self.tilt_sign = tilt_sign or 1

        self.enabled = True
        self.calibration: Dict[str, float] = {"pitch": 0.0, "yaw": 0.0}
        self._last_pitch: Optional[float] = None
        self._last_yaw: Optional[float] = None
        self._residual_pitch = 0.0
        self._residual_yaw = 0.0
        self._last_sent: Optional[float] = None

    def calibrate_now(self) -> Dict[str, float]:
        """Take the latest raw orientation as the zero reference."""
        if self._last_pitch is not None:
            self.calibration["pitch"] = self._last_pitch
        if self._last_yaw is not None:
            self.calibration["yaw"] = self._last_yaw
        log.info(f"IMU calibrated. Offsets: {self.calibration}")
        return dict(self.calibration)

    def handle_sample(self, data: Any) -> Optional[Dict[Axis, Any]]:
        """Process one IMU sample.

        Returns:
            The commands sent per axis (handles), or None when nothing was sent.
        """
        if not self.enabled:
            return None
        values = parse_imu_values(data)
        if values is None:
            log.debug(f"Ignoring IMU sample without pitch/yaw: {data!r}")
            return None
        if self.target not in self.node.capabilities:
            return None

        _, pitch, yaw = values
        now = self.scheduler.now()
        raw_stamp = None
        if isinstance(data, dict):
            raw_stamp = data.get("timestamp") or data.get("time") or data.get("t")
        start_ms = parse_timestamp_ms(raw_stamp)
        if start_ms is None:
            start_ms = now

        pitch = max(-180.0, min(180.0, pitch))
        yaw = max(-180.0, min(180.0, yaw))
        if self._last_pitch is None:
            self._last_pitch = pitch
        if self._last_yaw is None:
            self._last_yaw = yaw

        self._residual_pitch += _wrap_degrees(pitch - self._last_pitch)
        self._residual_yaw += _wrap_degrees(yaw - self._last_yaw)
        self._last_pitch = pitch
        self._last_yaw = yaw

        if self._last_sent is not None and now - self._last_sent < self.min_interval_ms:
            return None
        if abs(self._residual_pitch) < self.degree_threshold and abs(self._residual_yaw) < self.degree_threshold:
            return None

        delta_tilt = self._residual_pitch * self.units_per_degree * self.tilt_sign
        delta_pan = self._residual_yaw * self.units_per_degree * self.pan_sign
        log.debug(
            f"IMU -> applying delta degrees (pitch={self._residual_pitch:.2f}, "
            f"yaw={self._residual_yaw:.2f}), units (tilt={delta_tilt:.0f}, pan={delta_pan:.0f})"
        )

        sent: Dict[Axis, Any] = {}
        for axis, delta in ((Axis.TILT, delta_tilt), (Axis.PAN, delta_pan)):
            if self.node.capabilities.get(self.target, axis) is None or delta == 0:
                continue
            value = self.node.current_value(self.target, axis) + delta
            sent[axis] = self.node.move(
                self.target, axis, value, correlation_ms=start_ms, imu_timestamp=start_ms
            )

        if self.event_log is not None:
            self.event_log.log(
                IMU_STREAM,
                {
                    "imu_timestamp": start_ms,
                    "pitch": pitch - self.calibration["pitch"],
                    "yaw": yaw - self.calibration["yaw"],
                    "delta_pitch": self._residual_pitch,
                    "delta_yaw": self._residual_yaw,
                    "tilt_units": delta_tilt,
                    "pan_units": delta_pan,
                },
            )

        self._residual_pitch = 0.0
        self._residual_yaw = 0.0
        self._last_sent = now
        return sent

    def handle_raw(self, raw: Any) -> Optional[Dict[Axis, Any]]:
        """Decode one JSON frame from the IMU feed and process it."""
        try:
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8")
            data = json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError):
            log.warning(f"Invalid IMU message: {raw!r}")
            return None
        return self.handle_sample(data)


async def run_imu_feed(
    teleop: ImuTeleop,
    uri: str = IMU_WS_URI,
    stop_event: Optional[asyncio.Event] = None,
) -> None:
    """Follow an IMU websocket feed until stop_event is set.

    Reconnects with exponential backoff when the feed drops.
    """
    stop_event = stop_event or asyncio.Event()
    retry_delay = WS_RETRY_DELAY_SECONDS

    while not stop_event.is_set():
        try:
            async with websockets.connect(uri) as websocket:
                log.info(f"{TERM_BLUE}✓ IMU feed connected ({uri}){TERM_RESET}")
                retry_delay = WS_RETRY_DELAY_SECONDS
                async for raw in websocket:
                    teleop.handle_raw(raw)
                    if stop_event.is_set():
                        break
        except websockets.exceptions.ConnectionClosed:
            log.warning("IMU feed closed")
        except OSError as e:
            log.error(f"IMU feed connection error: {e}")

        if stop_event.is_set():
            break
        log.info(f"Retrying IMU feed in {retry_delay} seconds...")
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=retry_delay)
        except asyncio.TimeoutError:
            pass
        retry_delay = min(retry_delay * 2, WS_MAX_RETRY_DELAY_SECONDS)
