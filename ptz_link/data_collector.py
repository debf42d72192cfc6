"""Buffered evaluation logging to CSV and JSON.

Records are appended per stream into an in-memory buffer and written out on
a fixed flush interval:
- ptz: measured command latency (command_ack)
- movement: corrected latency of settled drag/wheel moves (movement_finished)
- aruco: marker tracking samples
- imu: IMU teleoperation samples

Each stream gets its own CSV file in the run directory; the header is taken
from the first record of that stream. Stopping waits a grace period so that
acknowledgements still in flight land in the log before files are closed.
"""

import asyncio
import csv
import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, TextIO

from .config import (
    LOG_FINALIZATION_WAIT_MS,
    LOG_FLUSH_INTERVAL_MS,
    RESULTS_DIR,
    TERM_BLUE,
    TERM_RESET,
)
from .scheduler import Scheduler, TimerHandle

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class LogRecord:
    """One append-only evaluation row. ``fields`` is a read-only mapping."""

    stream: str
    timestamp: float
    fields: Mapping[str, Any]

    def to_row(self) -> Dict[str, Any]:
        return {"timestamp": self.timestamp, **self.fields}


class EvaluationLog:
    """Manages the evaluation run directory and its per-stream CSV files.

    Attributes:
        run_dir: Directory path for this run's output files.
        export_ready: True once the log has been finalized.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        output_dir: str = ".",
        run_dir: Optional[str] = None,
        flush_interval_ms: float = LOG_FLUSH_INTERVAL_MS,
        finalization_wait_ms: float = LOG_FINALIZATION_WAIT_MS,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """Initialize the evaluation log.

        Args:
            scheduler: Timer source for periodic flushing and record timestamps.
            output_dir: Base directory for output files.
            run_dir: Optional specific run directory. If None, creates a
                timestamped directory. Can also be set via RUN_DIR.
            flush_interval_ms: Interval between buffer flushes.
            finalization_wait_ms: Grace period between stop() and final flush.
            metadata: Run settings written to run_config.json on start().

        Raises:
            ValueError: If output_dir exists and is not a directory.
        """
        output_path = Path(output_dir)
        if output_path.exists() and not output_path.is_dir():
            raise ValueError(f"Output path exists but is not a directory: {output_dir}")

        self.scheduler = scheduler
        self.flush_interval_ms = flush_interval_ms
        self.finalization_wait_ms = finalization_wait_ms
        self.metadata = dict(metadata or {})

        if run_dir:
            self.run_dir: Path = Path(run_dir)
        elif env_run_dir := os.environ.get("RUN_DIR"):
            self.run_dir = Path(env_run_dir)
        else:
            # results/run_YYYYMMDD_HHMMSS/
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            self.run_dir = output_path / RESULTS_DIR / f"run_{timestamp}"

        self._buffer: List[LogRecord] = []
        self._flushed: List[LogRecord] = []
        self._files: Dict[str, TextIO] = {}
        self._writers: Dict[str, csv.DictWriter] = {}
        self._flush_timer: Optional[TimerHandle] = None
        self._finalize_timer: Optional[TimerHandle] = None
        self._ready_callbacks: List[Callable[[], None]] = []
        self.started = False
        self.stopping = False
        self.export_ready = False

    def csv_path(self, stream: str) -> Path:
        return self.run_dir / f"{stream}_log.csv"

    def start(self) -> None:
        """Create the run directory and begin periodic flushing."""
        if self.started:
            return
        self.run_dir.mkdir(parents=True, exist_ok=True)
        if self.metadata:
            with open(self.run_dir / "run_config.json", "w") as f:
                json.dump(self.metadata, f, indent=2)
        self._flush_timer = self.scheduler.call_every(self.flush_interval_ms, self.flush)
        self.started = True
        log.info(f"{TERM_BLUE}✓ Initialized evaluation log in {self.run_dir}/{TERM_RESET}")

    def log(self, stream: str, fields: Mapping[str, Any]) -> Optional[LogRecord]:
        """Append one record. Records logged after finalization are dropped."""
        if self.export_ready:
            log.warning(f"Evaluation log finalized; dropping {stream} record")
            return None
        record = LogRecord(
            stream=stream,
            timestamp=self.scheduler.now(),
            fields=MappingProxyType(dict(fields)),
        )
        self._buffer.append(record)
        return record

    def flush(self) -> int:
        """Write buffered records to their CSV files.

        Returns:
            Number of records written.
        """
        if not self._buffer:
            return 0
        self.run_dir.mkdir(parents=True, exist_ok=True)
        records, self._buffer = self._buffer, []
        touched = set()
        for record in records:
            writer = self._writers.get(record.stream)
            if writer is None:
                writer = self._open_stream(record)
            writer.writerow(record.to_row())
            touched.add(record.stream)
        for stream in touched:
            self._files[stream].flush()
        self._flushed.extend(records)
        log.debug(f"Flushed {len(records)} evaluation record(s)")
        return len(records)

    def _open_stream(self, first: LogRecord) -> csv.DictWriter:
        handle = open(self.csv_path(first.stream), "w", newline="")
        writer = csv.DictWriter(handle, fieldnames=list(first.to_row()), extrasaction="ignore")
        writer.writeheader()
        self._files[first.stream] = handle
        self._writers[first.stream] = writer
        return writer

    def records(self, stream: Optional[str] = None) -> List[LogRecord]:
        """All records logged so far, flushed or not, optionally for one stream."""
        everything = self._flushed + self._buffer
        if stream is None:
            return everything
        return [record for record in everything if record.stream == stream]

    def stop(self, on_ready: Optional[Callable[[], None]] = None) -> None:
        """Stop periodic flushing and finalize after the grace period."""
        if on_ready is not None:
            if self.export_ready:
                on_ready()
                return
            self._ready_callbacks.append(on_ready)
        if self.stopping or self.export_ready:
            return
        self.stopping = True
        if self._flush_timer is not None:
            self._flush_timer.cancel()
            self._flush_timer = None
        log.info(f"Finalizing evaluation log in {self.finalization_wait_ms / 1000:.1f}s")
        self._finalize_timer = self.scheduler.call_later(self.finalization_wait_ms, self.finalize)

    async def stop_and_wait(self) -> None:
        """Awaitable stop() for asyncio callers."""
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self.stop(lambda: future.done() or future.set_result(None))
        await future

    def finalize(self) -> None:
        """Final flush, close files and enable export. Safe to call twice."""
        if self.export_ready:
            return
        for timer in (self._flush_timer, self._finalize_timer):
            if timer is not None:
                timer.cancel()
        self._flush_timer = self._finalize_timer = None
        self.flush()
        for handle in self._files.values():
            handle.close()
        self._files.clear()
        self._writers.clear()
        self.export_ready = True
        self.stopping = False
        log.info(
            f"{TERM_BLUE}✓ Saved {len(self._flushed)} evaluation record(s) to "
            f"{self.run_dir}/{TERM_RESET}"
        )
        callbacks, self._ready_callbacks = self._ready_callbacks, []
        for callback in callbacks:
            callback()

    def export_json(self, path: Optional[str] = None) -> Path:
        """Write all flushed records, grouped by stream, to a JSON file."""
        output = Path(path) if path else self.run_dir / "evaluation_log.json"
        output.parent.mkdir(parents=True, exist_ok=True)
        grouped: Dict[str, List[Dict[str, Any]]] = {}
        for record in self._flushed:
            grouped.setdefault(record.stream, []).append(record.to_row())
        with open(output, "w") as f:
            json.dump(grouped, f, indent=2)
        log.info(f"{TERM_BLUE}✓ Exported evaluation log to {output}{TERM_RESET}")
        return output

    def __enter__(self) -> "EvaluationLog":
        self.start()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.finalize()
