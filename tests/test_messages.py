import json

import pytest

from ptz_link import messages
from ptz_link.capabilities import Axis, AxisCapability, CapabilityTable
from ptz_link.errors import ProtocolError
from ptz_link.messages import Capabilities, Command, CommandAck, MovementFinished, Ping


def test_measured_command_wire_shape():
    raw = messages.encode(Command("camera1", Axis.PAN, 45.0, command_id="abc"))

    assert json.loads(raw) == {
        "type": "command",
        "target": "camera1",
        "command": "pan",
        "value": 45.0,
        "id": "abc",
    }


def test_drag_command_carries_mouse_timestamp():
    data = messages.to_dict(Command("camera1", Axis.TILT, -10.0, mouse_timestamp=1234.5))

    assert data["mouseTimestamp"] == 1234.5
    assert "id" not in data


def test_decode_command_ack():
    ack = messages.decode('{"type": "command_ack", "id": "x1", "command": "zoom", "timedOut": true}')

    assert ack == CommandAck("x1", Axis.ZOOM, timed_out=True)


def test_superseded_flag_only_sent_when_set():
    assert "superseded" not in messages.to_dict(CommandAck("a", Axis.PAN, False))
    assert messages.to_dict(CommandAck("a", Axis.PAN, True, superseded=True))["superseded"] is True


def test_decode_movement_finished():
    message = messages.decode(json.dumps({
        "type": "movement_finished",
        "command": "pan",
        "targetValue": 7200,
        "mouseTimestamp": 1000,
        "movementEndTime": 1180,
    }))

    assert message == MovementFinished(Axis.PAN, 7200.0, 1000.0, 1180.0)


def test_capabilities_treat_null_axis_as_unsupported():
    message = messages.decode(json.dumps({
        "type": "capabilities",
        "data": {"camera1": {"pan": {"min": -10, "max": 10, "step": 1}, "zoom": None}},
    }))

    assert isinstance(message, Capabilities)
    assert message.table.get("camera1", Axis.PAN) == AxisCapability(-10.0, 10.0, 1.0)
    assert message.table.get("camera1", Axis.ZOOM) is None
    assert "camera1" in message.table


def test_capabilities_round_trip_through_wire_dict():
    table = CapabilityTable({"cam": {Axis.ZOOM: AxisCapability(1.0, 4.0)}})

    decoded = messages.decode(messages.encode(Capabilities(table)))

    assert decoded.table.to_wire() == {"cam": {"zoom": {"min": 1.0, "max": 4.0, "step": 0.0}}}


@pytest.mark.parametrize("raw", [
    "not json",
    '["ping"]',
    '{"type": "teleport"}',
    '{"type": "ping"}',
    '{"type": "command", "target": "c", "command": "roll", "value": 1}',
    '{"type": "command", "target": "c", "command": "pan", "value": "fast"}',
    '{"type": "capabilities", "data": [1, 2]}',
    '{"type": "capabilities", "data": {"camera1": [1, 2]}}',
    '{"type": "capabilities", "data": {"camera1": "x"}}',
    '{"type": "capabilities", "data": {"camera1": {"pan": "x"}}}',
    b'\xff\xfe{"type": "ping", "t1": 1}',
])
def test_malformed_frames_raise_protocol_error(raw):
    with pytest.raises(ProtocolError):
        messages.decode(raw)


def test_decode_accepts_bytes():
    assert messages.decode(b'{"type": "ping", "t1": 5}') == Ping(5.0)


def test_clamp_is_idempotent():
    cap = AxisCapability(-100.0, 100.0, 1.0)

    assert cap.clamp(250.0) == 100.0
    assert cap.clamp(cap.clamp(-250.0)) == -100.0
    assert cap.clamp(42.0) == 42.0


def test_capability_rejects_inverted_range():
    with pytest.raises(ValueError):
        AxisCapability(10.0, -10.0)
