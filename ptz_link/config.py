"""Configuration parameters for the PTZ link.

This module centralizes all configuration parameters including:
- Channel and WebSocket connection parameters
- Clock synchronization parameters
- Command dispatch and rate limiting
- Convergence confirmation and settle detection
- Visual tracking (PID) gains
- Evaluation logging
- IMU and manual teleoperation

All times are milliseconds unless the name says otherwise.
"""

# ============================================================================
# WebSocket Configuration
# ============================================================================

WS_HOST = "0.0.0.0"
"""Interface the actuator node listens on."""

WS_PORT = 8765
"""Port the actuator node listens on."""

WS_URI = "ws://127.0.0.1:8765"
"""Default actuator node URI used by the operator."""

WS_RETRY_DELAY_SECONDS = 1
"""Initial retry delay for failed WebSocket connections (seconds)."""

WS_MAX_RETRY_DELAY_SECONDS = 60
"""Maximum retry delay with exponential backoff (seconds)."""

WS_READY_TIMEOUT_SECONDS = 5.0
"""How long the operator waits for capabilities and clock sync after connecting."""


# ============================================================================
# Clock Synchronization
# ============================================================================

CLOCK_SYNC_SAMPLES = 10
"""Number of ping/pong round trips used for one offset estimate."""

CLOCK_SYNC_WINDOW_MS = 1000.0
"""Collection window for pong replies.

The estimate is finalized when every round trip completed or the window
elapsed, whichever comes first. Lost pings simply shrink the sample set.
"""

CLOCK_SYNC_PING_INTERVAL_MS = 50.0
"""Spacing between consecutive pings.

Spreading pings avoids queueing them behind each other on the channel, which
would inflate the later round-trip times.
"""


# ============================================================================
# Command Dispatch
# ============================================================================

ACK_TIMEOUT_MS = 6000.0
"""Client-side timeout for a measured command.

Must exceed CONFIRM_TIMEOUT_MS plus one channel round trip so that the
actuator's own timed-out ack normally arrives first. Covers lost acks and
sessions torn down because telemetry disappeared.
"""

MAX_PENDING_COMMANDS = 256
"""Upper bound on live measured commands.

Oldest entries are evicted (and resolved as timed out) beyond this bound.
"""

APPLY_DELAY_MS = 50.0
"""Minimum spacing between hardware applies for one (target, axis) key.

Range: [0, 50]. 0 applies every request immediately.
"""


# ============================================================================
# Convergence Confirmation
# ============================================================================

CONFIRM_POLL_INTERVAL_MS = 50.0
"""Telemetry polling interval while a confirmation session is active.

Range: [1, 50]. Shorter intervals give tighter latency measurements at the
cost of more telemetry reads.
"""

CONFIRM_TIMEOUT_MS = 5000.0
"""Hard timeout after which a pending axis is force-acknowledged with timedOut."""

CONFIRM_TOLERANCE_FACTOR = 0.5
"""Tolerance as a fraction of the axis step (range: [0.1, 0.75])."""

ZOOM_TOLERANCE = 0.05
"""Fixed tolerance for a zoom axis that reports no step."""

ANGULAR_TOLERANCE = 2.0
"""Fixed tolerance for pan/tilt axes that report no step."""


# ============================================================================
# Settle Detection (movement_finished)
# ============================================================================

SETTLE_POLL_INTERVAL_MS = 50.0
"""Telemetry polling interval for settle listeners."""

SETTLE_TIMEOUT_MS = 3000.0
"""Settle listener timeout. No event is emitted when it expires."""

SETTLE_TARGET_TOLERANCE = 1500.0
"""Wide at-target tolerance (PTZ units).

Covers the largest deviation observed between commanded and reported values
on stepped PTZ hardware (about 1440 units).
"""

SETTLE_WINDOW_SIZE = 5
"""Number of recent telemetry samples used for the stability check."""

SETTLE_STABILITY_THRESHOLD = 0.1
"""Standard deviation of the window below which the axis counts as stopped."""


# ============================================================================
# Visual Tracking (PID)
# ============================================================================

PID_GAINS = {
    "pan": {"kp": 84000.0, "ki": 0.0, "kd": 0.0},
    "tilt": {"kp": -85000.0, "ki": 0.0, "kd": 0.0},
}
"""Per-axis PID gains for marker tracking.

Errors are normalized to [-0.5, 0.5] of the frame, so proportional gains are
in PTZ units per frame width. Tilt is negative because a marker below center
(positive image y) requires a lower tilt value.
"""

PID_INTEGRAL_LIMIT = 1.0
"""Anti-windup clamp for the integral accumulator (normalized error * s)."""

TRACKING_FRAME_INTERVAL = 4
"""Run marker detection on every Nth video frame.

Trades tracking smoothness for processing load. 1 processes every frame.
"""

TRACKING_LOG_INTERVAL = 5
"""Record a tracking evaluation event every Nth processed frame."""

ARUCO_PROCESSING_WIDTH = 320
"""Frames are downscaled to this width before detection."""

ARUCO_DICTIONARY = "DICT_4X4_50"
"""OpenCV predefined ArUco dictionary name."""


# ============================================================================
# Evaluation Log
# ============================================================================

LOG_FLUSH_INTERVAL_MS = 1000.0
"""Interval at which buffered log records are written to the CSV sink."""

LOG_FINALIZATION_WAIT_MS = 2000.0
"""Grace period after stop() so in-flight acknowledgements still land."""

RESULTS_DIR = "results"
"""Base directory for run output (results/run_YYYYMMDD_HHMMSS/)."""


# ============================================================================
# IMU Teleoperation
# ============================================================================

IMU_WS_URI = "ws://127.0.0.1:8181"
"""Default IMU feed URI."""

IMU_MIN_INTERVAL_MS = 100.0
"""Minimum spacing between commands derived from IMU samples (10 Hz)."""

IMU_UNITS_PER_DEGREE = 7200.0
"""PTZ units per degree of head rotation."""

IMU_DEGREE_THRESHOLD = 1.0
"""Accumulated rotation (degrees) required before a command is sent."""

IMU_PAN_SIGN = 1
"""Direction of yaw -> pan mapping."""

IMU_TILT_SIGN = 1
"""Direction of pitch -> tilt mapping."""


# ============================================================================
# Manual Input
# ============================================================================

DRAG_THROTTLE_MS = 50.0
"""Minimum spacing between drag-derived commands."""

PAN_SENSITIVITY_DIVISOR = 5.0
"""Pixels of horizontal drag per pan step (smaller = faster)."""

TILT_SENSITIVITY_DIVISOR = 5.0
"""Pixels of vertical drag per tilt step (smaller = faster)."""

ZOOM_SENSITIVITY_DIVISOR = 20.0
"""Wheel delta per zoom step (smaller = faster)."""


# ============================================================================
# Simulation
# ============================================================================

SIM_CAPABILITIES = {
    "pan": {"min": -180000.0, "max": 180000.0, "step": 3600.0},
    "tilt": {"min": -180000.0, "max": 180000.0, "step": 3600.0},
    "zoom": {"min": 100.0, "max": 400.0, "step": 1.0},
}
"""Capabilities reported by the simulated actuator (typical UVC PTZ ranges)."""

SIM_SPEED_PER_MS = {"pan": 360.0, "tilt": 360.0, "zoom": 0.5}
"""Simulated actuator slew rate per axis (units per millisecond)."""


# ============================================================================
# Terminal Colors
# ============================================================================

TERM_ORANGE = "\033[38;2;247;72;35m"
"""Terminal color code for warnings and highlights (RGB: 247, 72, 35)."""

TERM_BLUE = "\033[38;2;35;116;247m"
"""Terminal color code for status lines (RGB: 35, 116, 247)."""

TERM_RESET = "\033[0m"
"""Terminal color reset code."""


# ============================================================================
# Plot Colors
# ============================================================================

PLOT_ORANGE = "#f74823"
"""Primary plot color - measured latencies."""

PLOT_BLUE = "#2374f7"
"""Secondary plot color - reference lines and converged commands."""

PLOT_TAUPE = "#686a5f"
"""Neutral color for guides and grids."""

PLOT_YELLOW_ORANGE = "#ffa726"
"""Accent color for timed-out commands."""
