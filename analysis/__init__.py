"""Latency analysis for PTZ link evaluation runs.

This package reads the CSV logs written to results/run_YYYYMMDD_HHMMSS/ and
provides:
- Statistical summaries of command and movement latency per axis
- Run-to-run comparison
- Result visualization

Quick Start:
    >>> from analysis import load_latency_log, summarize_latency
    >>> records = load_latency_log('results/run_20250101_120000/ptz_log.csv')
    >>> for axis, summary in summarize_latency(records).items():
    ...     print(axis, summary.stats)

Command Line:
    # Report on the newest run
    python -m analysis.cli stats

    # Plot a run
    python -m analysis.cli visualize results/run_20250101_120000

    # Compare two runs
    python -m analysis.cli compare results/run_A results/run_B
"""

# Statistical analysis
from analysis.statistics import (
    LatencySummary,
    Statistics,
    compare_latencies,
    compute_statistics,
    generate_report,
    load_latency_log,
    summarize_latency,
)

# Visualization
from analysis.visualize import (
    plot_latency_boxes,
    plot_latency_timeline,
    visualize_run,
)

__all__ = [
    # Statistics
    'Statistics',
    'LatencySummary',
    'compute_statistics',
    'load_latency_log',
    'summarize_latency',
    'compare_latencies',
    'generate_report',
    # Visualization
    'plot_latency_boxes',
    'plot_latency_timeline',
    'visualize_run',
]

__version__ = '1.0.0'
