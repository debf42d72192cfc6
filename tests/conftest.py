"""Shared pytest configuration and fixtures for the PTZ link test suite."""

import sys
from pathlib import Path

import matplotlib
import pytest

# Plots are written to files only
matplotlib.use("Agg")

# Ensure the project root is in the path for imports
PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from ptz_link.actuator import SimulatedActuator  # noqa: E402
from ptz_link.capabilities import Axis, AxisCapability, CapabilityTable  # noqa: E402
from ptz_link.channel import LoopbackChannel  # noqa: E402
from ptz_link.config import SIM_CAPABILITIES, SIM_SPEED_PER_MS  # noqa: E402
from ptz_link.scheduler import ManualScheduler  # noqa: E402


# =============================================================================
# Shared Fixtures
# =============================================================================

@pytest.fixture
def scheduler() -> ManualScheduler:
    """Simulated clock starting at 0 ms."""
    return ManualScheduler()


@pytest.fixture
def camera_axes():
    """Pan/tilt in 1/3600 degree units with one-degree steps, zoom 100-400."""
    return {
        Axis.PAN: AxisCapability(-180000.0, 180000.0, 3600.0),
        Axis.TILT: AxisCapability(-180000.0, 180000.0, 3600.0),
        Axis.ZOOM: AxisCapability(100.0, 400.0, 1.0),
    }


@pytest.fixture
def capability_table(camera_axes) -> CapabilityTable:
    return CapabilityTable({"camera1": camera_axes})


@pytest.fixture
def actuator(scheduler) -> SimulatedActuator:
    """Simulated camera slewing pan/tilt at 360 units/ms."""
    return SimulatedActuator.from_config(scheduler, SIM_CAPABILITIES, SIM_SPEED_PER_MS)


@pytest.fixture
def channel_pair(scheduler):
    """Open loopback pair (operator end, actuator end) with no transit delay."""
    operator_end, actuator_end = LoopbackChannel.pair(scheduler)
    operator_end.open()
    return operator_end, actuator_end


class RecordingLog:
    """Stand-in for EvaluationLog that keeps (stream, fields) pairs."""

    def __init__(self):
        self.entries = []

    def log(self, stream, fields):
        self.entries.append((stream, dict(fields)))

    def stream(self, name):
        return [fields for stream, fields in self.entries if stream == name]


@pytest.fixture
def recording_log() -> RecordingLog:
    return RecordingLog()
