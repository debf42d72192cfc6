"""Command-line interface for the analysis framework.

This module provides a simple CLI for generating latency reports,
creating visualizations, and comparing runs.
"""

import argparse
import sys
from pathlib import Path
from typing import List, Optional

from analysis import statistics, visualize


def _latest_run(results_dir: Path) -> Optional[Path]:
    runs = sorted(p for p in results_dir.glob("run_*") if p.is_dir())
    return runs[-1] if runs else None


def _resolve_run_dir(run_dir: Optional[str]) -> Optional[Path]:
    """Use the given run directory, or the newest one under results/."""
    if run_dir:
        path = Path(run_dir)
        return path if path.is_dir() else None
    return _latest_run(Path("results"))


def run_stats(args: argparse.Namespace) -> int:
    """Generate a latency report for a run.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success)
    """
    run_dir = _resolve_run_dir(args.run_dir)

    if run_dir is None:
        print(f"Error: Run directory not found: {args.run_dir or 'results/run_*'}")
        return 1

    output_path = Path(args.output) if args.output else None

    try:
        report = statistics.generate_report(run_dir, output_path)

        if not output_path:
            print(report)

        return 0
    except (OSError, ValueError) as e:
        print(f"Error: {e}")
        if args.verbose:
            raise
        return 1


def run_visualize(args: argparse.Namespace) -> int:
    """Generate plots for a run."""
    run_dir = _resolve_run_dir(args.run_dir)

    if run_dir is None:
        print(f"Error: Run directory not found: {args.run_dir or 'results/run_*'}")
        return 1

    output_dir = Path(args.output_dir) if args.output_dir else None

    try:
        written = visualize.visualize_run(run_dir, output_dir)
        return 0 if written else 1
    except (OSError, ValueError) as e:
        print(f"Error: {e}")
        if args.verbose:
            raise
        return 1


def run_compare(args: argparse.Namespace) -> int:
    """Compare command latencies of two runs."""
    baseline_path = Path(args.baseline) / args.log
    candidate_path = Path(args.candidate) / args.log

    for path in (baseline_path, candidate_path):
        if not path.exists():
            print(f"Error: File not found: {path}")
            return 1

    def converged(path: Path) -> List[float]:
        return [
            r["latency_ms"]
            for r in statistics.load_latency_log(path)
            if not r["timed_out"] and r["latency_ms"] is not None
        ]

    try:
        result = statistics.compare_latencies(converged(baseline_path), converged(candidate_path))
    except ValueError as e:
        print(f"Error: {e}")
        return 1

    print(f"Baseline ({args.baseline}):\n{result['baseline']}\n")
    print(f"Candidate ({args.candidate}):\n{result['candidate']}\n")
    verdict = "faster" if result["faster"] else "slower"
    print(
        f"Candidate is {abs(result['mean_difference']):.1f} ms {verdict} "
        f"({result['relative_change']:+.1%}), t = {result['t_statistic']:.2f}"
        + (" (significant)" if result["significant"] else "")
    )
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for CLI.

    Args:
        argv: Optional command-line arguments (for testing)

    Returns:
        Exit code (0 for success)
    """
    parser = argparse.ArgumentParser(
        description="Analysis framework for PTZ latency evaluation runs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Report on the newest run under results/
  python -m analysis.cli stats

  # Report on a specific run and save it
  python -m analysis.cli stats results/run_20250101_120000 -o report.txt

  # Plot latency distributions and timelines
  python -m analysis.cli visualize results/run_20250101_120000

  # Compare two runs (e.g. two control profiles)
  python -m analysis.cli compare results/run_A results/run_B
        """
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Stats command
    stats_parser = subparsers.add_parser(
        "stats",
        help="Generate latency report for a run"
    )
    stats_parser.add_argument(
        "run_dir",
        nargs="?",
        help="Run directory (default: newest results/run_*)"
    )
    stats_parser.add_argument(
        "--output",
        "-o",
        help="Output report path (default: print to stdout)"
    )
    stats_parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose output"
    )

    # Visualize command
    viz_parser = subparsers.add_parser(
        "visualize",
        help="Generate plots for a run"
    )
    viz_parser.add_argument(
        "run_dir",
        nargs="?",
        help="Run directory (default: newest results/run_*)"
    )
    viz_parser.add_argument(
        "--output-dir",
        "-o",
        help="Output directory for plots (default: the run directory)"
    )
    viz_parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose output"
    )

    # Compare command
    compare_parser = subparsers.add_parser(
        "compare",
        help="Compare latencies of two runs"
    )
    compare_parser.add_argument("baseline", help="Baseline run directory")
    compare_parser.add_argument("candidate", help="Candidate run directory")
    compare_parser.add_argument(
        "--log",
        default=statistics.COMMAND_LOG,
        help=f"Log file to compare (default: {statistics.COMMAND_LOG})"
    )

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    if args.command == "stats":
        return run_stats(args)
    elif args.command == "visualize":
        return run_visualize(args)
    elif args.command == "compare":
        return run_compare(args)
    else:
        print(f"Unknown command: {args.command}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
