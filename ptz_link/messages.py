"""Wire messages exchanged over the control channel.

Every message is a JSON object with a ``type`` tag. The six message shapes
form a closed union; ``decode`` rejects anything else with ProtocolError.

    {"type": "ping", "t1": 12.5}
    {"type": "pong", "t1": 12.5, "t2": 140.1}
    {"type": "command", "target": "camera1", "command": "pan", "value": 45.0, "id": "..."}
    {"type": "command_ack", "id": "...", "command": "pan", "timedOut": false}
    {"type": "movement_finished", "command": "pan", "targetValue": 45.0,
     "mouseTimestamp": 1000.0, "movementEndTime": 1180.0}
    {"type": "capabilities", "data": {"camera1": {"pan": {"min": 0, "max": 1, "step": 0.1}}}}
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from .capabilities import Axis, CapabilityTable
from .errors import ProtocolError


@dataclass(frozen=True)
class Ping:
    t1: float


@dataclass(frozen=True)
class Pong:
    t1: float
    t2: float


@dataclass(frozen=True)
class Command:
    """Absolute axis move request.

    ``command_id`` is set for measured commands, which are acknowledged with
    command_ack. ``mouse_timestamp`` asks the actuator to report settling with
    movement_finished.
    """

    target: str
    axis: Axis
    value: float
    command_id: Optional[str] = None
    mouse_timestamp: Optional[float] = None


@dataclass(frozen=True)
class CommandAck:
    command_id: str
    axis: Axis
    timed_out: bool
    superseded: bool = False


@dataclass(frozen=True)
class MovementFinished:
    axis: Axis
    target_value: float
    mouse_timestamp: float
    movement_end_time: float


@dataclass(frozen=True)
class Capabilities:
    table: CapabilityTable = field(default_factory=CapabilityTable)


Message = Union[Ping, Pong, Command, CommandAck, MovementFinished, Capabilities]


def to_dict(message: Message) -> Dict[str, Any]:
    """Convert a message into its JSON-ready wire dictionary."""
    if isinstance(message, Ping):
        return {"type": "ping", "t1": message.t1}
    if isinstance(message, Pong):
        return {"type": "pong", "t1": message.t1, "t2": message.t2}
    if isinstance(message, Command):
        data: Dict[str, Any] = {
            "type": "command",
            "target": message.target,
            "command": message.axis.value,
            "value": message.value,
        }
        if message.command_id is not None:
            data["id"] = message.command_id
        if message.mouse_timestamp is not None:
            data["mouseTimestamp"] = message.mouse_timestamp
        return data
    if isinstance(message, CommandAck):
        data = {
            "type": "command_ack",
            "id": message.command_id,
            "command": message.axis.value,
            "timedOut": message.timed_out,
        }
        if message.superseded:
            data["superseded"] = True
        return data
    if isinstance(message, MovementFinished):
        return {
            "type": "movement_finished",
            "command": message.axis.value,
            "targetValue": message.target_value,
            "mouseTimestamp": message.mouse_timestamp,
            "movementEndTime": message.movement_end_time,
        }
    if isinstance(message, Capabilities):
        return {"type": "capabilities", "data": message.table.to_wire()}
    raise TypeError(f"Not a wire message: {message!r}")


def from_dict(data: Dict[str, Any]) -> Message:
    """Build a message from a parsed wire dictionary.

    Raises:
        ProtocolError: If the type is unknown or a required field is missing
            or has the wrong type.
    """
    if not isinstance(data, dict):
        raise ProtocolError(f"Expected JSON object, got {type(data).__name__}")

    message_type = data.get("type")
    try:
        if message_type == "ping":
            return Ping(t1=float(data["t1"]))
        if message_type == "pong":
            return Pong(t1=float(data["t1"]), t2=float(data["t2"]))
        if message_type == "command":
            command_id = data.get("id")
            mouse_timestamp = data.get("mouseTimestamp")
            return Command(
                target=str(data["target"]),
                axis=Axis(data["command"]),
                value=float(data["value"]),
                command_id=str(command_id) if command_id is not None else None,
                mouse_timestamp=float(mouse_timestamp) if mouse_timestamp is not None else None,
            )
        if message_type == "command_ack":
            return CommandAck(
                command_id=str(data["id"]),
                axis=Axis(data["command"]),
                timed_out=bool(data["timedOut"]),
                superseded=bool(data.get("superseded", False)),
            )
        if message_type == "movement_finished":
            return MovementFinished(
                axis=Axis(data["command"]),
                target_value=float(data["targetValue"]),
                mouse_timestamp=float(data["mouseTimestamp"]),
                movement_end_time=float(data["movementEndTime"]),
            )
        if message_type == "capabilities":
            return Capabilities(table=CapabilityTable.from_wire(data["data"] or {}))
    except (KeyError, TypeError, ValueError) as e:
        raise ProtocolError(f"Malformed {message_type} message: {e}") from e

    raise ProtocolError(f"Unknown message type: {message_type!r}")


def encode(message: Message) -> str:
    return json.dumps(to_dict(message))


def decode(raw: Union[str, bytes]) -> Message:
    """Parse a raw JSON frame into a message.

    Raises:
        ProtocolError: If the frame is not valid JSON or not a known message.
    """
    try:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        data = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolError(f"Error parsing JSON: {e}") from e
    return from_dict(data)
