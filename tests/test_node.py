"""End-to-end tests of both peers over a loopback channel."""

import pytest

from ptz_link import messages
from ptz_link.actuator import Actuator, SimulatedActuator
from ptz_link.capabilities import Axis, AxisCapability
from ptz_link.channel import LoopbackChannel
from ptz_link.config import SIM_CAPABILITIES, SIM_SPEED_PER_MS
from ptz_link.messages import Command, CommandAck
from ptz_link.node import ActuatorNode, OperatorNode
from ptz_link.profiles import ControlProfile


@pytest.fixture
def link(scheduler, actuator, recording_log):
    """Connected nodes with 10 ms one-way delay, synced and ready."""
    operator_end, actuator_end = LoopbackChannel.pair(scheduler, latency_ms=10.0)
    actuator_node = ActuatorNode(actuator_end, {"camera1": actuator}, scheduler)
    operator = OperatorNode(operator_end, scheduler, event_log=recording_log)
    operator_end.open()
    scheduler.advance(1000)
    return operator, actuator_node, operator_end


def test_operator_becomes_ready_after_capabilities_and_sync(link):
    operator, _, _ = link

    assert operator.ready
    assert operator.capabilities.get("camera1", Axis.ZOOM).min == 100.0
    assert operator.estimator.current.offset_ms == pytest.approx(0.0)
    assert operator.estimator.current.samples == 10


def test_measured_move_round_trip(link, scheduler, actuator, recording_log):
    operator, _, _ = link

    handle = operator.move("camera1", Axis.PAN, 36000.0)
    # 10 ms to arrive, converged on the poll at +100 ms, 10 ms back
    scheduler.advance(200)

    assert handle.outcome.timed_out is False
    assert handle.outcome.source == "actuator"
    assert handle.outcome.resolved_at.ms - handle.pending.start_time.ms == pytest.approx(120.0)
    assert actuator.get_settings()[Axis.PAN] == 36000.0
    [record] = recording_log.stream("ptz")
    assert record["latency_ms"] == pytest.approx(120.0)
    assert operator.latency_records == [record]


def test_out_of_range_move_is_clamped_end_to_end(link, scheduler, actuator):
    operator, _, _ = link

    handle = operator.move("camera1", Axis.ZOOM, 10000.0)
    scheduler.advance(1000)

    assert handle.pending.target_value == 400.0
    assert actuator.get_settings()[Axis.ZOOM] == 400.0
    assert handle.outcome.timed_out is False


def test_drag_move_reports_movement_finished(link, scheduler):
    operator, _, _ = link
    mouse_time = scheduler.now()

    operator.move("camera1", Axis.PAN, 36000.0, measured=False, mouse_timestamp=mouse_time)
    scheduler.advance(1000)

    [record] = operator.latency_records
    # Arrives at +10, at target from +110, five stable samples by +310
    assert record["latency_ms"] == pytest.approx(310.0)
    assert record["offset_degraded"] is False


def test_unknown_target_is_acknowledged_as_timed_out(link, scheduler):
    operator, _, operator_end = link
    operator_end.send(Command("camera9", Axis.PAN, 0.0, command_id="lost"))
    acks = []
    operator_end.add_listener(lambda m: isinstance(m, CommandAck) and acks.append(m))

    scheduler.advance(20)

    assert acks == [CommandAck("lost", Axis.PAN, timed_out=True)]


def test_rapid_commands_supersede_and_apply_latest(link, scheduler, actuator):
    operator, actuator_node, _ = link

    first = operator.move("camera1", Axis.TILT, 3600.0)
    second = operator.move("camera1", Axis.TILT, 7200.0)
    scheduler.advance(500)

    assert first.outcome.superseded
    assert first.outcome.timed_out
    assert second.outcome.timed_out is False
    assert actuator.get_settings()[Axis.TILT] == 7200.0


def test_channel_close_invalidates_offset_and_stops_sessions(link, scheduler):
    operator, actuator_node, operator_end = link
    handle = operator.move("camera1", Axis.PAN, 180000.0)
    scheduler.advance(20)

    operator_end.close()

    assert operator.estimator.current is None
    assert not operator.ready
    assert actuator_node.confirmer.pending_axes("camera1") == {}
    scheduler.advance(6000)
    assert handle.outcome.source == "dispatcher"


def test_actuator_node_uses_profile_apply_delay(scheduler):
    actuator = SimulatedActuator.from_config(scheduler, SIM_CAPABILITIES, SIM_SPEED_PER_MS)
    operator_end, actuator_end = LoopbackChannel.pair(scheduler)
    node = ActuatorNode(
        actuator_end, {"camera1": actuator}, scheduler, ControlProfile(name="test", apply_delay_ms=0.0)
    )
    operator_end.open()

    for value in (100.0, 200.0, 300.0):
        node.handle_command(Command("camera1", Axis.ZOOM, value))

    assert [value for _, _, value in actuator.applied] == [100.0, 200.0, 300.0]


def test_capabilities_announced_on_open(scheduler, actuator):
    operator_end, actuator_end = LoopbackChannel.pair(scheduler)
    ActuatorNode(actuator_end, {"camera1": actuator}, scheduler)

    operator_end.open()

    [first] = [messages.decode(raw) for raw in actuator_end.sent]
    assert first.table.get("camera1", Axis.PAN).step == 3600.0


class ScriptedActuator(Actuator):
    """Reports pan 0 until ``arrive_at``, then the commanded value."""

    def __init__(self, scheduler, arrive_at):
        self.scheduler = scheduler
        self.arrive_at = arrive_at
        self.value = 0.0

    @property
    def is_live(self):
        return True

    def apply_constraint(self, axis, value):
        self.value = value
        return True

    def get_settings(self):
        return {Axis.PAN: self.value if self.scheduler.now() >= self.arrive_at else 0.0}

    def get_capabilities(self):
        return {Axis.PAN: AxisCapability(-180.0, 180.0)}


def test_latency_from_dispatch_to_ack_arrival(scheduler, recording_log):
    operator_end, actuator_end = LoopbackChannel.pair(scheduler, latency_ms=10.0)
    ActuatorNode(
        actuator_end,
        {"camera1": ScriptedActuator(scheduler, arrive_at=1200.0)},
        scheduler,
        ControlProfile(name="fast-poll", confirm_poll_interval_ms=10.0),
    )
    operator = OperatorNode(operator_end, scheduler, event_log=recording_log)
    operator_end.open()
    scheduler.advance(1000)

    # Dispatched at 1000, converged on the 1200 poll, ack back at 1210
    handle = operator.move("camera1", Axis.PAN, 45.0)
    scheduler.advance(500)

    [record] = recording_log.stream("ptz")
    assert record["latency_ms"] == pytest.approx(210.0)
    assert record["timed_out"] is False
    assert handle.outcome.resolved_at.ms == pytest.approx(1210.0)
