import pytest

from ptz_link import messages
from ptz_link.capabilities import Axis, AxisCapability, CapabilityTable
from ptz_link.channel import LoopbackChannel
from ptz_link.clock_sync import Stamp
from ptz_link.dispatcher import ApplyRateLimiter, CommandDispatcher
from ptz_link.messages import Command, CommandAck


@pytest.fixture
def resolved():
    return []


@pytest.fixture
def dispatcher(scheduler, channel_pair, capability_table, resolved):
    return CommandDispatcher(
        channel_pair[0],
        scheduler,
        lambda: capability_table,
        on_resolved=lambda pending, outcome: resolved.append((pending, outcome)),
    )


def _sent_commands(channel):
    decoded = [messages.decode(raw) for raw in channel.sent]
    return [m for m in decoded if isinstance(m, Command)]


def test_measured_value_is_clamped_before_sending(dispatcher, channel_pair):
    handle = dispatcher.send_measured("camera1", Axis.PAN, 999999.0)

    assert handle.pending.target_value == 180000.0
    [command] = _sent_commands(channel_pair[0])
    assert command.value == 180000.0
    assert command.command_id == handle.command_id


def test_unsupported_axis_is_not_sent(scheduler, channel_pair):
    table = CapabilityTable({"camera1": {Axis.PAN: AxisCapability(-1.0, 1.0)}})
    dispatcher = CommandDispatcher(channel_pair[0], scheduler, lambda: table)

    assert dispatcher.send_measured("camera1", Axis.ZOOM, 2.0) is None
    assert dispatcher.send_unmeasured("camera2", Axis.PAN, 0.5) is None
    assert channel_pair[0].sent == []


def test_nothing_sent_on_closed_channel(scheduler, capability_table):
    channel, _ = LoopbackChannel.pair(scheduler)
    dispatcher = CommandDispatcher(channel, scheduler, lambda: capability_table)

    assert dispatcher.send_measured("camera1", Axis.PAN, 10.0) is None
    assert dispatcher.pending_count == 0


def test_ack_resolves_exactly_once(dispatcher, scheduler, resolved):
    handle = dispatcher.send_measured("camera1", Axis.TILT, 3600.0)
    scheduler.advance(120)

    dispatcher.handle_ack(CommandAck(handle.command_id, Axis.TILT, timed_out=False))
    assert dispatcher.handle_ack(CommandAck(handle.command_id, Axis.TILT, timed_out=True)) is None
    scheduler.advance(10000)

    assert handle.done
    assert handle.outcome.timed_out is False
    assert handle.outcome.source == "actuator"
    assert handle.outcome.resolved_at == Stamp.local(120.0)
    assert len(resolved) == 1
    assert dispatcher.pending_count == 0


def test_missing_ack_times_out_locally(dispatcher, scheduler, resolved):
    handle = dispatcher.send_measured("camera1", Axis.ZOOM, 200.0)

    scheduler.advance(5999)
    assert not handle.done

    scheduler.advance(1)
    assert handle.outcome.timed_out is True
    assert handle.outcome.source == "dispatcher"
    assert len(resolved) == 1

    # A late ack is ignored
    assert dispatcher.handle_ack(CommandAck(handle.command_id, Axis.ZOOM, False)) is None
    assert len(resolved) == 1


def test_pending_map_evicts_oldest(scheduler, channel_pair, capability_table, resolved):
    dispatcher = CommandDispatcher(
        channel_pair[0],
        scheduler,
        lambda: capability_table,
        on_resolved=lambda pending, outcome: resolved.append(outcome),
        max_pending=2,
    )

    first = dispatcher.send_measured("camera1", Axis.PAN, 1.0)
    second = dispatcher.send_measured("camera1", Axis.PAN, 2.0)
    third = dispatcher.send_measured("camera1", Axis.PAN, 3.0)

    assert first.outcome.source == "evicted"
    assert first.outcome.timed_out
    assert not second.done and not third.done
    assert dispatcher.pending_count == 2
    assert [o.command_id for o in resolved] == [first.command_id]


def test_command_ids_are_unique(dispatcher):
    ids = {dispatcher.send_measured("camera1", Axis.PAN, float(i)).command_id for i in range(50)}

    assert len(ids) == 50


def test_correlation_time_becomes_start_time(dispatcher, scheduler):
    scheduler.advance(300)

    handle = dispatcher.send_measured("camera1", Axis.PAN, 10.0, correlation_ms=250.0, imu_timestamp=250.0)

    assert handle.pending.dispatch_time == Stamp.local(300.0)
    assert handle.pending.start_time == Stamp.local(250.0)
    assert handle.pending.correlation == {"imu_timestamp": 250.0}


def test_done_callback_runs_immediately_when_resolved(dispatcher):
    handle = dispatcher.send_measured("camera1", Axis.PAN, 10.0)
    dispatcher.handle_ack(CommandAck(handle.command_id, Axis.PAN, False))
    seen = []

    handle.add_done_callback(seen.append)

    assert seen == [handle.outcome]


def test_unmeasured_command_is_not_tracked(dispatcher, channel_pair):
    value = dispatcher.send_unmeasured("camera1", Axis.ZOOM, 50.0, mouse_timestamp=12.0)

    assert value == 100.0
    assert dispatcher.pending_count == 0
    assert dispatcher.last_sent[("camera1", Axis.ZOOM)] == 100.0
    [command] = _sent_commands(channel_pair[0])
    assert command.command_id is None
    assert command.mouse_timestamp == 12.0


# =============================================================================
# ApplyRateLimiter
# =============================================================================

@pytest.fixture
def applied():
    return []


def _limiter(scheduler, applied, delay_ms=50.0):
    return ApplyRateLimiter(
        scheduler,
        lambda target, axis, value: applied.append((scheduler.now(), target, axis, value)),
        delay_ms=delay_ms,
    )


def test_burst_coalesces_to_latest_value(scheduler, applied):
    limiter = _limiter(scheduler, applied)

    assert limiter.request("camera1", Axis.PAN, 1.0) is True
    scheduler.advance(10)
    assert limiter.request("camera1", Axis.PAN, 2.0) is False
    scheduler.advance(10)
    assert limiter.request("camera1", Axis.PAN, 3.0) is False
    assert scheduler.pending == 1

    scheduler.advance(100)

    assert applied == [
        (0.0, "camera1", Axis.PAN, 1.0),
        (50.0, "camera1", Axis.PAN, 3.0),
    ]


def test_request_after_window_applies_immediately(scheduler, applied):
    limiter = _limiter(scheduler, applied)

    limiter.request("camera1", Axis.TILT, 1.0)
    scheduler.advance(50)
    assert limiter.request("camera1", Axis.TILT, 2.0) is True

    assert [a[3] for a in applied] == [1.0, 2.0]


def test_zero_delay_applies_every_request(scheduler, applied):
    limiter = _limiter(scheduler, applied, delay_ms=0.0)

    for value in (1.0, 2.0, 3.0):
        assert limiter.request("camera1", Axis.ZOOM, value) is True

    assert [a[3] for a in applied] == [1.0, 2.0, 3.0]


def test_keys_are_limited_independently(scheduler, applied):
    limiter = _limiter(scheduler, applied)

    limiter.request("camera1", Axis.PAN, 1.0)
    limiter.request("camera1", Axis.TILT, 2.0)
    limiter.request("camera2", Axis.PAN, 3.0)

    assert len(applied) == 3


def test_cancel_drops_coalesced_value(scheduler, applied):
    limiter = _limiter(scheduler, applied)
    limiter.request("camera1", Axis.PAN, 1.0)
    limiter.request("camera1", Axis.PAN, 2.0)

    limiter.cancel()
    scheduler.advance(100)

    assert [a[3] for a in applied] == [1.0]
