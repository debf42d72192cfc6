"""Statistical analysis utilities for latency evaluation runs.

This module reads the per-stream CSV files written by the evaluation log
(results/run_YYYYMMDD_HHMMSS/*_log.csv) and provides:
- Descriptive statistics (mean, std, median, quartiles)
- Confidence intervals
- Per-axis latency summaries with timeout and degraded-offset counts
- Comparison of two groups of latencies (e.g. two runs or two profiles)
- Text report generation
"""

import csv
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

import numpy as np

COMMAND_LOG = "ptz_log.csv"
MOVEMENT_LOG = "movement_log.csv"

_TRUE_VALUES = {"true", "1", "yes"}


@dataclass
class Statistics:
    """Statistical summary of a dataset."""

    mean: float
    std: float
    median: float
    min: float
    max: float
    q1: float  # 25th percentile
    q3: float  # 75th percentile
    iqr: float  # Interquartile range
    ci_95_lower: float  # 95% confidence interval lower bound
    ci_95_upper: float  # 95% confidence interval upper bound
    n: int  # Sample size

    def __str__(self) -> str:
        return (
            f"Mean: {self.mean:.1f} ± {self.std:.1f} ms\n"
            f"Median: {self.median:.1f} ms (IQR: {self.q1:.1f} - {self.q3:.1f})\n"
            f"Range: [{self.min:.1f}, {self.max:.1f}] ms\n"
            f"95% CI: [{self.ci_95_lower:.1f}, {self.ci_95_upper:.1f}] ms\n"
            f"N = {self.n}"
        )


@dataclass
class LatencySummary:
    """Latency summary for one group of records (usually one axis)."""

    group: str
    total: int
    timed_out: int
    superseded: int
    degraded: int
    stats: Optional[Statistics]

    @property
    def timeout_rate(self) -> float:
        return self.timed_out / self.total if self.total else 0.0


def compute_statistics(data: Iterable[float]) -> Statistics:
    """Compute comprehensive statistics for a dataset.

    Args:
        data: Latency samples in milliseconds

    Returns:
        Statistics object with all computed values

    Raises:
        ValueError: If data is empty
    """
    values = np.asarray(list(data), dtype=float)
    if values.size == 0:
        raise ValueError("Cannot compute statistics on empty data")

    n = int(values.size)
    mean = float(np.mean(values))
    std = float(np.std(values, ddof=1)) if n > 1 else 0.0
    q1, median, q3 = (float(v) for v in np.percentile(values, [25, 50, 75]))

    # 95% CI with a normal approximation for large samples and a rough
    # t critical value for small ones
    if n > 1:
        t_critical = 1.96 if n >= 30 else 2.0 + 4.0 / n
        margin = t_critical * std / math.sqrt(n)
    else:
        margin = 0.0

    return Statistics(
        mean=mean,
        std=std,
        median=median,
        min=float(np.min(values)),
        max=float(np.max(values)),
        q1=q1,
        q3=q3,
        iqr=q3 - q1,
        ci_95_lower=mean - margin,
        ci_95_upper=mean + margin,
        n=n,
    )


def _parse_bool(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in _TRUE_VALUES


def _parse_float(value: Optional[str]) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except ValueError:
        return None


def load_latency_log(csv_path: Path) -> List[Dict]:
    """Load latency records from an evaluation log CSV.

    Works for both the command log (ptz_log.csv) and the movement log
    (movement_log.csv). Numeric and boolean columns are parsed; every other
    column is kept as a string.

    Args:
        csv_path: Path to the CSV file

    Returns:
        List of record dictionaries
    """
    records = []

    with open(csv_path, "r", newline="") as f:
        reader = csv.DictReader(f)
        for row in reader:
            record: Dict[str, Union[str, float, bool, None]] = dict(row)
            record["latency_ms"] = _parse_float(row.get("latency_ms"))
            record["timestamp"] = _parse_float(row.get("timestamp"))
            record["timed_out"] = _parse_bool(row.get("timed_out"))
            record["superseded"] = _parse_bool(row.get("superseded"))
            record["offset_degraded"] = _parse_bool(row.get("offset_degraded"))
            records.append(record)

    return records


def summarize_latency(records: List[Dict], group_by: str = "axis") -> Dict[str, LatencySummary]:
    """Group records and summarize their latencies.

    Timed-out records are counted but excluded from the latency statistics,
    since their latency is the timeout rather than a convergence time.

    Args:
        records: Records from load_latency_log()
        group_by: Column used to group records

    Returns:
        Mapping of group name to LatencySummary, sorted by group name
    """
    groups: Dict[str, List[Dict]] = {}
    for record in records:
        groups.setdefault(str(record.get(group_by) or "unknown"), []).append(record)

    summaries = {}
    for name in sorted(groups):
        rows = groups[name]
        latencies = [
            r["latency_ms"]
            for r in rows
            if not r["timed_out"] and r["latency_ms"] is not None
        ]
        summaries[name] = LatencySummary(
            group=name,
            total=len(rows),
            timed_out=sum(1 for r in rows if r["timed_out"]),
            superseded=sum(1 for r in rows if r["superseded"]),
            degraded=sum(1 for r in rows if r["offset_degraded"]),
            stats=compute_statistics(latencies) if latencies else None,
        )

    return summaries


def compare_latencies(latencies_a: List[float], latencies_b: List[float]) -> Dict:
    """Compare two groups of latencies.

    Args:
        latencies_a: Baseline latencies (ms)
        latencies_b: Latencies to compare against the baseline (ms)

    Returns:
        Dictionary with mean difference, relative change and Welch's t
    """
    stats_a = compute_statistics(latencies_a)
    stats_b = compute_statistics(latencies_b)

    diff = stats_b.mean - stats_a.mean
    relative = diff / stats_a.mean if stats_a.mean else 0.0

    se = math.sqrt(stats_a.std ** 2 / stats_a.n + stats_b.std ** 2 / stats_b.n)
    t_stat = diff / se if se > 0 else 0.0

    return {
        "baseline": stats_a,
        "candidate": stats_b,
        "mean_difference": diff,
        "relative_change": relative,
        "t_statistic": t_stat,
        # |t| > 2 is roughly p < 0.05
        "significant": abs(t_stat) > 2.0,
        "faster": diff < 0,
    }


def _format_section(title: str, summaries: Dict[str, LatencySummary]) -> List[str]:
    lines = ["", title, "-" * 80]

    if not summaries:
        lines.append("No records.")
        return lines

    for name, summary in summaries.items():
        lines.append(f"\n{name}:")
        lines.append(
            f"  Records: {summary.total}  "
            f"Timed out: {summary.timed_out} ({summary.timeout_rate:.1%})  "
            f"Superseded: {summary.superseded}"
        )
        if summary.degraded:
            lines.append(f"  Degraded clock offset: {summary.degraded}")
        if summary.stats is None:
            lines.append("  No converged samples.")
        else:
            for stat_line in str(summary.stats).split("\n"):
                lines.append(f"  {stat_line}")

    return lines


def generate_report(run_dir: Path, output_path: Optional[Path] = None) -> str:
    """Generate a latency report for one evaluation run.

    Args:
        run_dir: Run directory containing the *_log.csv files
        output_path: Optional path to save the report

    Returns:
        Report text

    Raises:
        FileNotFoundError: If the run directory holds no latency logs
    """
    run_dir = Path(run_dir)
    command_path = run_dir / COMMAND_LOG
    movement_path = run_dir / MOVEMENT_LOG

    if not command_path.exists() and not movement_path.exists():
        raise FileNotFoundError(f"No latency logs found in {run_dir}")

    lines = [
        "=" * 80,
        "LATENCY EVALUATION REPORT",
        "=" * 80,
        f"Run: {run_dir}",
    ]

    if command_path.exists():
        lines.extend(_format_section(
            "COMMAND LATENCY (dispatch to confirmed convergence)",
            summarize_latency(load_latency_log(command_path)),
        ))

    if movement_path.exists():
        lines.extend(_format_section(
            "MOVEMENT LATENCY (input to settled, clock corrected)",
            summarize_latency(load_latency_log(movement_path)),
        ))

    lines.extend(["", "=" * 80])
    report = "\n".join(lines)

    if output_path:
        with open(output_path, "w") as f:
            f.write(report)
        print(f"✓ Report saved to {output_path}")

    return report
