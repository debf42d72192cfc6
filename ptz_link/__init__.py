"""PTZ Link - Remote Pan/Tilt/Zoom Camera Control with Latency Evaluation

Drives PTZ cameras on a remote node over a lossy, unordered message channel
and measures how long each command takes to physically take effect.

## Architecture Overview

Two peers exchange JSON messages over a Channel (websockets in production,
an in-memory loopback in tests):

### Operator node (node.OperatorNode)
- Clock sync (clock_sync.py): ping/pong bursts estimate the offset between
  the two clocks; every timestamp is tagged with its clock domain.
- Dispatch (dispatcher.py): measured commands carry an id and resolve exactly
  once, on acknowledgement or client-side timeout; unmeasured commands are
  fire-and-forget. Values are clamped to the announced capabilities.
- Latency (latency.py): acknowledgements and settle reports become latency
  records in the evaluation log (data_collector.py).
- Control sources: manual gestures and IMU teleoperation (teleop.py), and
  marker tracking with a PID per axis (visual_servo.py, detector.py).

### Actuator node (node.ActuatorNode)
- Announces capabilities when the channel opens and answers pings.
- Rate-limits hardware applies per (target, axis), keeping only the latest
  value (dispatcher.ApplyRateLimiter).
- Confirms convergence by polling telemetry (convergence.py) and acknowledges
  each measured command once, converged or timed out.

All timers run through a Scheduler (scheduler.py): asyncio in production, a
manually advanced clock in tests.

## Quick Start

```bash
python -m ptz_link actuator --port 8765
python -m ptz_link operator --uri ws://127.0.0.1:8765 --move pan=36000 --move zoom=200
```

Results are written to ``results/run_YYYYMMDD_HHMMSS/`` and can be summarized
with ``python -m analysis.cli stats``.
"""

__version__ = "0.1.0"

from .capabilities import Axis, AxisCapability, CapabilityTable
from .channel import LoopbackChannel, WebSocketChannel
from .clock_sync import ClockOffset, ClockOffsetEstimator, Stamp
from .data_collector import EvaluationLog
from .dispatcher import ApplyRateLimiter, CommandDispatcher
from .node import ActuatorNode, OperatorNode
from .scheduler import AsyncioScheduler, ManualScheduler
from .visual_servo import AxisPID, VisualServoController

__all__ = [
    "Axis",
    "AxisCapability",
    "CapabilityTable",
    "LoopbackChannel",
    "WebSocketChannel",
    "ClockOffset",
    "ClockOffsetEstimator",
    "Stamp",
    "EvaluationLog",
    "ApplyRateLimiter",
    "CommandDispatcher",
    "ActuatorNode",
    "OperatorNode",
    "AsyncioScheduler",
    "ManualScheduler",
    "AxisPID",
    "VisualServoController",
]
