"""Telemetry of a test run.

Durations reported by workers are collected together with the output of test commands that
contains failure markers. Live output of concurrently running tests is interleaved, so the
report printed at the end of the run is the place where failures can actually be found.
"""

import dataclasses
import datetime
import sys
import threading
import typing as tp

from cluster_test_runner.utils import helpers

FAILURE_MARKERS = (b"FAIL", b"TODO")

# Records of tasks that finished faster than this are not part of the timeline
REPORT_THRESHOLD_SECS = 1.0

INDENT = "   "


class Sink(tp.Protocol):
    def write(self, chunk: bytes) -> tp.Any: ...


@dataclasses.dataclass(frozen=True)
class DurationRecord:
    worker_id: int
    label: str
    duration: float
    timestamp: datetime.datetime


class ConsoleSink:
    """Forward output to a binary stream (stdout by default)."""

    def __init__(self, stream: tp.BinaryIO | None = None) -> None:
        self.stream = stream

    def write(self, chunk: bytes) -> int:
        stream = self.stream or sys.stdout.buffer
        written = stream.write(chunk)
        stream.flush()
        return written


class FailureBuffer:
    """Keep only output chunks with failure markers."""

    def __init__(self, markers: tp.Iterable[bytes] = FAILURE_MARKERS) -> None:
        self.markers = tuple(markers)
        self.data = bytearray()

    def write(self, chunk: bytes) -> int:
        if any(m in chunk for m in self.markers):
            self.data.extend(chunk)
        return len(chunk)


class TeeSink:
    """Write every chunk to all the sinks, in order."""

    def __init__(self, *sinks: Sink) -> None:
        self.sinks = sinks

    def write(self, chunk: bytes) -> int:
        for sink in self.sinks:
            sink.write(chunk)
        return len(chunk)


class OutputCatcher:
    """Concurrency-safe collector of durations and failure output.

    All the state is guarded by a single lock.
    """

    def __init__(
        self,
        console: Sink | None = None,
        label_prefix: str = "",
        now_func: tp.Callable[[], datetime.datetime] = datetime.datetime.now,
    ) -> None:
        self.console = console or ConsoleSink()
        self.label_prefix = label_prefix
        self.now_func = now_func
        self.failures = FailureBuffer()
        self.records: list[DurationRecord] = []
        self._sink = TeeSink(self.console, self.failures)
        self._lock = threading.Lock()

    def took(self, worker_id: int, label: str, duration: float) -> None:
        """Record that `label` took `duration` seconds on the worker."""
        record = DurationRecord(
            worker_id=worker_id, label=label, duration=duration, timestamp=self.now_func()
        )
        with self._lock:
            self.records.append(record)

    def write(self, chunk: bytes) -> int:
        """Pass output to console, remember it if it contains a failure marker."""
        with self._lock:
            return self._sink.write(chunk)

    def _short_label(self, label: str) -> str:
        if self.label_prefix:
            return label.removeprefix(f"{self.label_prefix}/")
        return label

    def report_lines(self) -> list[str]:
        with self._lock:
            records = sorted(self.records, key=lambda r: r.timestamp)
            failure = bytes(self.failures.data)

        lines = []
        if records:
            base_ts = records[0].timestamp
            clock = f"{base_ts.hour % 12 or 12}:{base_ts:%M:%S %p}"
            lines.append(f"TIMELINE starting at {clock}")
            for rec in records:
                # Don't capture tasks which were fast
                if rec.duration < REPORT_THRESHOLD_SECS:
                    continue
                elapsed = (rec.timestamp - base_ts).total_seconds()
                lines.append(
                    f"[{helpers.format_duration(elapsed):>6}]{INDENT * rec.worker_id}"
                    f"[{rec.worker_id}] {self._short_label(rec.label)} took: "
                    f"{helpers.format_duration(rec.duration)}"
                )

        if failure:
            lines.append(f"Caught output:\n{failure.decode(errors='replace')}")

        return lines

    def print_report(self) -> None:
        """Print timeline of the run and the caught failure output."""
        report = "".join(f"{line}\n" for line in self.report_lines())
        self.write_console(report.encode())

    def write_console(self, text: bytes) -> None:
        """Write to console only, bypassing the failure capture."""
        with self._lock:
            self.console.write(text)
