"""Exception types raised by the PTZ link."""


class PTZLinkError(Exception):
    """Base class for all PTZ link errors."""


class ProtocolError(PTZLinkError, ValueError):
    """Raised when a wire message is malformed or of an unknown type."""


class ChannelClosedError(PTZLinkError):
    """Raised when sending on a channel that is not open."""


class ClockDomainError(PTZLinkError):
    """Raised when timestamps from different clock domains are combined."""


class ActuatorUnavailable(PTZLinkError):
    """Raised when the actuator cannot accept a constraint (not live, hidden)."""


class TelemetryUnavailable(PTZLinkError):
    """Raised when actuator telemetry can no longer be read (track ended)."""
