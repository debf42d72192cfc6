"""
Main entry point when running the ptz_link module with python -m.
"""

import asyncio
import logging
import sys

from .client import build_parser, run_actuator, run_operator, setup_logging
from .profiles import parse_profile_flags

if __name__ == "__main__":
    # Profile flags are shared by both roles
    profile, remaining_args = parse_profile_flags()

    args = build_parser().parse_args(remaining_args)

    setup_logging(args.verbose)
    logging.info(f"Control profile: {profile}")

    try:
        if args.role == "actuator":
            asyncio.run(run_actuator(args, profile))
        else:
            asyncio.run(run_operator(args, profile))
    except KeyboardInterrupt:
        logging.info("\nExiting...")
        sys.exit(0)
