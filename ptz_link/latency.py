"""Latency measurement from acknowledgements and settle reports.

Two paths produce latency records:

- on_command_resolved: a measured command was acknowledged (or timed out).
  Start and end are both local stamps, so latency is a plain difference.
- on_movement_finished: the actuator reports when a drag/wheel move settled,
  stamped with its own clock. The end time is first moved into the local
  domain with the current ClockOffset:

      corrected_end = remote_end - offset
      latency       = corrected_end - local_start

  When no offset is available (not measured yet, or zero samples) the record
  is flagged ``offset_degraded``.
"""

import logging
from typing import Any, Callable, Dict, Optional

from .clock_sync import ClockOffset, Stamp
from .dispatcher import AckOutcome, PendingCommand
from .messages import MovementFinished
from .scheduler import Scheduler

log = logging.getLogger(__name__)

COMMAND_STREAM = "ptz"
MOVEMENT_STREAM = "movement"


class LatencyFusion:
    """Turns resolution events into latency log records.

    Args:
        scheduler: Local clock.
        event_log: Optional EvaluationLog; records are also returned.
        offset_provider: Returns the current ClockOffset or None.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        event_log: Any = None,
        offset_provider: Optional[Callable[[], Optional[ClockOffset]]] = None,
    ) -> None:
        self.scheduler = scheduler
        self.event_log = event_log
        self.offset_provider = offset_provider or (lambda: None)

    def on_command_resolved(self, pending: PendingCommand, outcome: AckOutcome) -> Dict[str, Any]:
        end = Stamp.local(self.scheduler.now())
        latency = end - pending.start_time
        record = {
            "command_id": pending.command_id,
            "target": pending.target,
            "axis": pending.axis.value,
            "target_value": pending.target_value,
            "latency_ms": latency,
            "timed_out": outcome.timed_out,
            "superseded": outcome.superseded,
            "source": outcome.source,
            **pending.correlation,
        }
        status = "timed out" if outcome.timed_out else "confirmed"
        log.debug(f"{pending.axis} {status} after {latency:.1f} ms ({pending.command_id})")
        if self.event_log is not None:
            self.event_log.log(COMMAND_STREAM, record)
        return record

    def on_movement_finished(self, message: MovementFinished) -> Dict[str, Any]:
        offset = self.offset_provider()
        degraded = offset is None or offset.degraded
        if offset is None:
            offset = ClockOffset(offset_ms=0.0, samples=0, degraded=True)

        start = Stamp.local(message.mouse_timestamp)
        corrected_end = offset.to_local(Stamp.remote(message.movement_end_time))
        latency = corrected_end - start
        record = {
            "axis": message.axis.value,
            "target_value": message.target_value,
            "mouse_timestamp": message.mouse_timestamp,
            "movement_end_time": message.movement_end_time,
            "corrected_end_time": corrected_end.ms,
            "clock_offset_ms": offset.offset_ms,
            "latency_ms": latency,
            "offset_degraded": degraded,
        }
        if degraded:
            log.warning(f"{message.axis} movement latency computed without a clock offset")
        log.debug(f"{message.axis} movement settled after {latency:.1f} ms")
        if self.event_log is not None:
            self.event_log.log(MOVEMENT_STREAM, record)
        return record
