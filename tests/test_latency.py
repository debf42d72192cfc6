import pytest

from ptz_link.capabilities import Axis
from ptz_link.clock_sync import ClockOffset, Stamp
from ptz_link.dispatcher import AckOutcome, PendingCommand
from ptz_link.latency import LatencyFusion
from ptz_link.messages import MovementFinished


def _pending(start_ms, **correlation):
    return PendingCommand(
        command_id="c1",
        target="camera1",
        axis=Axis.PAN,
        target_value=36000.0,
        dispatch_time=Stamp.local(start_ms),
        start_time=Stamp.local(start_ms),
        correlation=correlation,
    )


def test_command_latency_is_local_difference(scheduler, recording_log):
    fusion = LatencyFusion(scheduler, recording_log)
    scheduler.advance(1210)

    record = fusion.on_command_resolved(
        _pending(1000.0, imu_timestamp=1000.0),
        AckOutcome("c1", Axis.PAN, timed_out=False, resolved_at=Stamp.local(1210.0)),
    )

    assert record["latency_ms"] == pytest.approx(210.0)
    assert record["timed_out"] is False
    assert record["axis"] == "pan"
    assert record["imu_timestamp"] == 1000.0
    assert recording_log.stream("ptz") == [record]


def test_timed_out_command_is_still_recorded(scheduler, recording_log):
    fusion = LatencyFusion(scheduler, recording_log)
    scheduler.advance(6000)

    record = fusion.on_command_resolved(
        _pending(0.0),
        AckOutcome("c1", Axis.PAN, timed_out=True, resolved_at=Stamp.local(6000.0), source="dispatcher"),
    )

    assert record["timed_out"] is True
    assert record["source"] == "dispatcher"
    assert record["latency_ms"] == pytest.approx(6000.0)


def test_movement_latency_corrects_remote_end_time(scheduler, recording_log):
    # Remote clock runs 500 ms ahead: remote 1730 is local 1230
    fusion = LatencyFusion(scheduler, recording_log, lambda: ClockOffset(offset_ms=500.0, samples=10))

    record = fusion.on_movement_finished(MovementFinished(Axis.ZOOM, 200.0, 1200.0, 1730.0))

    assert record["corrected_end_time"] == pytest.approx(1230.0)
    assert record["latency_ms"] == pytest.approx(30.0)
    assert record["offset_degraded"] is False
    assert recording_log.stream("movement") == [record]


def test_movement_latency_without_offset_is_flagged(scheduler):
    fusion = LatencyFusion(scheduler)

    record = fusion.on_movement_finished(MovementFinished(Axis.PAN, 0.0, 1000.0, 1180.0))

    assert record["offset_degraded"] is True
    assert record["clock_offset_ms"] == 0.0
    assert record["latency_ms"] == pytest.approx(180.0)


def test_degraded_offset_is_flagged(scheduler):
    fusion = LatencyFusion(scheduler, offset_provider=lambda: ClockOffset(0.0, 0, degraded=True))

    record = fusion.on_movement_finished(MovementFinished(Axis.PAN, 0.0, 1000.0, 1180.0))

    assert record["offset_degraded"] is True


def test_movement_latency_with_positive_offset(scheduler):
    fusion = LatencyFusion(scheduler, offset_provider=lambda: ClockOffset(offset_ms=120.0, samples=10))

    record = fusion.on_movement_finished(MovementFinished(Axis.PAN, 45.0, 4850.0, 5000.0))

    # (5000 - 120) - 4850
    assert record["latency_ms"] == pytest.approx(30.0)
