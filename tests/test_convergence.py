import pytest

from ptz_link.actuator import SimulatedActuator
from ptz_link.capabilities import Axis, AxisCapability
from ptz_link.convergence import ConfirmationState, ConvergenceConfirmer, SettleListener
from ptz_link.errors import ChannelClosedError
from ptz_link.messages import CommandAck, MovementFinished


@pytest.fixture
def sent():
    return []


@pytest.fixture
def confirmer(scheduler, actuator, sent):
    return ConvergenceConfirmer(scheduler, {"camera1": actuator}, sent.append)


def test_acknowledges_once_value_is_within_tolerance(confirmer, actuator, scheduler, sent):
    # 36000 units at 360 units/ms: reached after 100 ms
    actuator.apply_constraint(Axis.PAN, 36000.0)
    confirmer.track("camera1", Axis.PAN, 36000.0, "c1")
    assert confirmer.state("camera1") is ConfirmationState.POLLING

    scheduler.advance(50)
    assert sent == []

    scheduler.advance(50)
    assert sent == [CommandAck("c1", Axis.PAN, timed_out=False)]
    assert confirmer.state("camera1") is ConfirmationState.IDLE
    assert scheduler.pending == 0


def test_never_converging_axis_times_out_at_hard_timeout(confirmer, scheduler, sent):
    confirmer.track("camera1", Axis.PAN, 36000.0, "stuck")

    scheduler.advance(4999)
    assert sent == []

    scheduler.advance(1)
    assert sent == [CommandAck("stuck", Axis.PAN, timed_out=True)]
    assert confirmer.state("camera1") is ConfirmationState.IDLE


def test_new_command_supersedes_pending_axis(confirmer, scheduler, sent):
    confirmer.track("camera1", Axis.PAN, 36000.0, "old")
    scheduler.advance(10)
    # Position is still 0, so the replacement converges on the next poll
    confirmer.track("camera1", Axis.PAN, 0.0, "new")

    assert sent == [CommandAck("old", Axis.PAN, timed_out=True, superseded=True)]

    scheduler.advance(50)
    assert sent[1] == CommandAck("new", Axis.PAN, timed_out=False)


def test_axes_of_one_target_are_acknowledged_individually(confirmer, actuator, scheduler, sent):
    actuator.apply_constraint(Axis.ZOOM, 110.0)  # 0.5 units/ms: 20 ms
    actuator.apply_constraint(Axis.TILT, 72000.0)  # 200 ms
    confirmer.track("camera1", Axis.ZOOM, 110.0, "z")
    confirmer.track("camera1", Axis.TILT, 72000.0, "t")
    assert set(confirmer.pending_axes("camera1")) == {Axis.ZOOM, Axis.TILT}

    scheduler.advance(50)
    assert sent == [CommandAck("z", Axis.ZOOM, False)]
    assert set(confirmer.pending_axes("camera1")) == {Axis.TILT}

    scheduler.advance(150)
    assert sent[1] == CommandAck("t", Axis.TILT, False)


def test_frequent_tracks_do_not_starve_other_axes(confirmer, actuator, scheduler, sent):
    actuator.apply_constraint(Axis.PAN, 3600.0)  # reached after 10 ms
    confirmer.track("camera1", Axis.PAN, 3600.0, "pan1")

    # Tilt retargeted faster than the 50 ms poll interval
    for i in range(40):
        confirmer.track("camera1", Axis.TILT, 72000.0 + i, f"tilt{i}")
        scheduler.advance(40)

    assert CommandAck("pan1", Axis.PAN, timed_out=False) in sent
    assert sent.index(CommandAck("pan1", Axis.PAN, timed_out=False)) < 3


def test_lost_telemetry_ends_session_without_acks(confirmer, actuator, scheduler, sent):
    confirmer.track("camera1", Axis.PAN, 36000.0, "c1")
    actuator.end()

    scheduler.advance(6000)

    assert sent == []
    assert confirmer.state("camera1") is ConfirmationState.IDLE


def test_unknown_target_is_acknowledged_as_timed_out(confirmer, sent):
    confirmer.track("camera9", Axis.PAN, 0.0, "x")

    assert sent == [CommandAck("x", Axis.PAN, timed_out=True)]
    assert confirmer.state("camera9") is ConfirmationState.IDLE


def test_closed_channel_does_not_break_polling(scheduler, actuator):
    def send(message):
        raise ChannelClosedError("gone")

    confirmer = ConvergenceConfirmer(scheduler, {"camera1": actuator}, send)
    confirmer.track("camera1", Axis.PAN, 0.0, "c1")

    scheduler.advance(50)

    assert confirmer.state("camera1") is ConfirmationState.IDLE


def test_tolerance_rules(scheduler):
    stepless = SimulatedActuator(
        scheduler,
        {
            Axis.PAN: AxisCapability(-180.0, 180.0),
            Axis.ZOOM: AxisCapability(1.0, 4.0),
            Axis.TILT: AxisCapability(-90.0, 90.0, 10.0),
        },
    )
    confirmer = ConvergenceConfirmer(scheduler, {"cam": stepless}, lambda m: None, tolerance_factor=0.5)

    assert confirmer.tolerance_for("cam", Axis.TILT) == 5.0
    assert confirmer.tolerance_for("cam", Axis.ZOOM) == 0.05
    assert confirmer.tolerance_for("cam", Axis.PAN) == 2.0


def test_close_cancels_all_sessions(confirmer, scheduler, sent):
    confirmer.track("camera1", Axis.PAN, 36000.0, "c1")

    confirmer.close()
    scheduler.advance(10000)

    assert sent == []
    assert scheduler.pending == 0


# =============================================================================
# SettleListener
# =============================================================================

@pytest.fixture
def settle(scheduler, actuator, sent):
    return SettleListener(scheduler, {"camera1": actuator}, sent.append)


def test_reports_movement_finished_once_stable(settle, actuator, scheduler, sent):
    actuator.apply_constraint(Axis.PAN, 36000.0)
    settle.listen("camera1", Axis.PAN, 36000.0, mouse_timestamp=0.0)

    # At target from 100 ms; five identical samples by 300 ms
    scheduler.advance(299)
    assert sent == []

    scheduler.advance(1)
    assert sent == [MovementFinished(Axis.PAN, 36000.0, 0.0, 300.0)]
    assert not settle.active("camera1", Axis.PAN)


def test_settle_timeout_emits_nothing(settle, scheduler, sent):
    settle.listen("camera1", Axis.TILT, 90000.0, mouse_timestamp=5.0)

    scheduler.advance(3000)

    assert sent == []
    assert not settle.active("camera1", Axis.TILT)
    assert scheduler.pending == 0


def test_newer_listen_replaces_running_listener(settle, actuator, scheduler, sent):
    settle.listen("camera1", Axis.PAN, 90000.0, mouse_timestamp=1.0)
    actuator.apply_constraint(Axis.PAN, 3600.0)
    settle.listen("camera1", Axis.PAN, 3600.0, mouse_timestamp=2.0)

    scheduler.advance(1000)

    assert len(sent) == 1
    assert sent[0].mouse_timestamp == 2.0
    assert sent[0].target_value == 3600.0
