"""
Control timing profiles.

A profile bundles the timing knobs that trade responsiveness against
actuator load: apply rate limiting, confirmation polling, convergence
tolerance and tracking decimation. Profiles are selected from the command
line and recorded in each run's run_config.json.
"""

from dataclasses import dataclass, replace
import argparse
import sys

from .config import (
    APPLY_DELAY_MS,
    CONFIRM_POLL_INTERVAL_MS,
    CONFIRM_TIMEOUT_MS,
    CONFIRM_TOLERANCE_FACTOR,
    TRACKING_FRAME_INTERVAL,
)


@dataclass(frozen=True)
class ControlProfile:
    """Timing configuration shared by both nodes."""

    name: str = "balanced"

    # Actuator apply path
    apply_delay_ms: float = APPLY_DELAY_MS  # Min spacing between applies per (target, axis)

    # Convergence confirmation
    confirm_poll_interval_ms: float = CONFIRM_POLL_INTERVAL_MS
    confirm_timeout_ms: float = CONFIRM_TIMEOUT_MS
    tolerance_factor: float = CONFIRM_TOLERANCE_FACTOR  # Multiplier on axis step

    # Marker tracking
    frame_interval: int = TRACKING_FRAME_INTERVAL  # Detect on every Nth frame

    def __str__(self):
        """Human-readable summary of the profile."""
        return (
            f"{self.name}: apply every {self.apply_delay_ms:g} ms, "
            f"poll {self.confirm_poll_interval_ms:g} ms, "
            f"tolerance {self.tolerance_factor:g}×step, "
            f"detect 1/{self.frame_interval} frames"
        )

    def to_dict(self):
        """Convert to dictionary for the run metadata."""
        return {
            'name': self.name,
            'apply_delay_ms': self.apply_delay_ms,
            'confirm_poll_interval_ms': self.confirm_poll_interval_ms,
            'confirm_timeout_ms': self.confirm_timeout_ms,
            'tolerance_factor': self.tolerance_factor,
            'frame_interval': self.frame_interval,
        }


PROFILES = {
    'responsive': ControlProfile(
        name='responsive',
        apply_delay_ms=0.0,
        confirm_poll_interval_ms=10.0,
        tolerance_factor=0.1,
        frame_interval=2,
    ),
    'balanced': ControlProfile(),
    'smooth': ControlProfile(
        name='smooth',
        apply_delay_ms=50.0,
        confirm_poll_interval_ms=50.0,
        tolerance_factor=0.75,
        frame_interval=8,
    ),
}


def parse_profile_flags(args=None):
    """
    Parse command-line flags selecting and tuning a control profile.

    Args:
        args: List of command-line arguments (default: sys.argv[1:])

    Returns:
        tuple: (ControlProfile, remaining_args)
    """
    parser = argparse.ArgumentParser(add_help=False)

    parser.add_argument('--profile', choices=sorted(PROFILES), default='balanced',
                        help='Named timing profile (default: balanced)')
    parser.add_argument('--apply-delay', type=float, default=None,
                        help='Override minimum spacing between applies (ms)')
    parser.add_argument('--poll-interval', type=float, default=None,
                        help='Override confirmation polling interval (ms)')
    parser.add_argument('--tolerance-factor', type=float, default=None,
                        help='Override convergence tolerance as a multiple of the axis step')

    if args is None:
        args = sys.argv[1:]

    known_args, remaining_args = parser.parse_known_args(args)

    profile = PROFILES[known_args.profile]
    overrides = {}
    if known_args.apply_delay is not None:
        overrides['apply_delay_ms'] = known_args.apply_delay
    if known_args.poll_interval is not None:
        overrides['confirm_poll_interval_ms'] = known_args.poll_interval
    if known_args.tolerance_factor is not None:
        overrides['tolerance_factor'] = known_args.tolerance_factor
    if overrides:
        profile = replace(profile, **overrides)

    return profile, remaining_args
