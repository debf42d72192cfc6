"""Visualization utilities for latency evaluation runs.

This module plots the latency logs of a single run:
- Box plots comparing latency per axis
- Latency over time with timed-out commands highlighted
"""

from pathlib import Path
from typing import Dict, List, Optional

import matplotlib.pyplot as plt

from analysis.statistics import COMMAND_LOG, MOVEMENT_LOG, load_latency_log
from ptz_link.config import PLOT_BLUE, PLOT_ORANGE, PLOT_TAUPE, PLOT_YELLOW_ORANGE


def _latencies_by_axis(records: List[Dict]) -> Dict[str, List[float]]:
    by_axis: Dict[str, List[float]] = {}
    for r in records:
        if r["timed_out"] or r["latency_ms"] is None:
            continue
        by_axis.setdefault(str(r.get("axis") or "unknown"), []).append(r["latency_ms"])
    return dict(sorted(by_axis.items()))


def _finish(output_path: Optional[Path], label: str) -> None:
    plt.tight_layout()

    if output_path:
        plt.savefig(output_path, dpi=150, bbox_inches="tight")
        print(f"✓ {label} saved to {output_path}")
    else:
        plt.show()

    plt.close()


def plot_latency_boxes(
    records: List[Dict],
    output_path: Optional[Path] = None,
    title: str = "Latency by Axis"
) -> bool:
    """Create box plots of converged latency per axis.

    Args:
        records: Records from load_latency_log()
        output_path: Optional path to save figure
        title: Plot title

    Returns:
        True if a plot was produced
    """
    by_axis = _latencies_by_axis(records)

    if not by_axis:
        print("No converged latencies to plot!")
        return False

    fig, ax = plt.subplots(figsize=(10, 6))

    bp = ax.boxplot(
        list(by_axis.values()),
        patch_artist=True,
        showmeans=True,
        meanline=True,
    )

    for patch in bp["boxes"]:
        patch.set_facecolor(PLOT_ORANGE)
        patch.set_alpha(0.6)

    for element in ["whiskers", "fliers", "caps"]:
        plt.setp(bp[element], color=PLOT_TAUPE)

    plt.setp(bp["medians"], color=PLOT_BLUE, linewidth=2)
    plt.setp(bp["means"], color=PLOT_YELLOW_ORANGE, linewidth=2)

    ax.set_xticks(range(1, len(by_axis) + 1))
    ax.set_xticklabels([f"{name} (n={len(v)})" for name, v in by_axis.items()])
    ax.set_xlabel("Axis", fontsize=12, fontweight="bold")
    ax.set_ylabel("Latency (ms)", fontsize=12, fontweight="bold")
    ax.set_title(title, fontsize=14, fontweight="bold", pad=20)
    ax.grid(True, alpha=0.3, axis="y")

    _finish(output_path, "Box plot")
    return True


def plot_latency_timeline(
    records: List[Dict],
    output_path: Optional[Path] = None,
    title: str = "Latency over Time"
) -> bool:
    """Plot each record's latency against the time it was logged.

    Timed-out records are drawn separately so they stand out from the
    converged ones.

    Returns:
        True if a plot was produced
    """
    points = [r for r in records if r["timestamp"] is not None and r["latency_ms"] is not None]

    if not points:
        print("No timestamped latencies to plot!")
        return False

    t0 = min(r["timestamp"] for r in points)
    converged = [r for r in points if not r["timed_out"]]
    timed_out = [r for r in points if r["timed_out"]]

    fig, ax = plt.subplots(figsize=(12, 6))

    if converged:
        ax.scatter(
            [(r["timestamp"] - t0) / 1000.0 for r in converged],
            [r["latency_ms"] for r in converged],
            color=PLOT_ORANGE,
            s=20,
            alpha=0.8,
            label="Converged",
        )
    if timed_out:
        ax.scatter(
            [(r["timestamp"] - t0) / 1000.0 for r in timed_out],
            [r["latency_ms"] for r in timed_out],
            color=PLOT_YELLOW_ORANGE,
            marker="x",
            s=40,
            label="Timed out",
        )

    ax.set_xlabel("Time since first record (s)", fontsize=12, fontweight="bold")
    ax.set_ylabel("Latency (ms)", fontsize=12, fontweight="bold")
    ax.set_title(title, fontsize=14, fontweight="bold", pad=15)
    ax.legend(loc="best")
    ax.grid(True, alpha=0.3)

    _finish(output_path, "Timeline plot")
    return True


def visualize_run(run_dir: Path, output_dir: Optional[Path] = None) -> List[Path]:
    """Generate all plots for an evaluation run.

    Args:
        run_dir: Run directory containing the *_log.csv files
        output_dir: Optional directory to save plots (default: run_dir)

    Returns:
        Paths of the plots that were written
    """
    run_dir = Path(run_dir)
    output_dir = Path(output_dir) if output_dir else run_dir
    output_dir.mkdir(parents=True, exist_ok=True)

    written = []
    for log_name in (COMMAND_LOG, MOVEMENT_LOG):
        csv_path = run_dir / log_name
        if not csv_path.exists():
            continue

        print(f"Loading records from {csv_path}...")
        records = load_latency_log(csv_path)
        stem = csv_path.stem

        box_path = output_dir / f"{stem}_boxes.png"
        if plot_latency_boxes(records, box_path, title=f"Latency by Axis: {log_name}"):
            written.append(box_path)

        timeline_path = output_dir / f"{stem}_timeline.png"
        if plot_latency_timeline(records, timeline_path, title=f"Latency over Time: {log_name}"):
            written.append(timeline_path)

    if written:
        print(f"\n✓ All plots saved to {output_dir}")
    else:
        print(f"No latency logs found in {run_dir}")

    return written
