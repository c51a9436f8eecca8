"""Counters, gauges and latency summaries for the messaging core.

One registry is shared by the sync engine, the notifier and the HTTP
service.  A series is a metric name plus a set of labels; labels are
keyword arguments, so ``inc("huddle_notifications_total", outcome="failed")``
and ``outcome="created"`` are two series of one metric.  Keep label values
low-cardinality (outcomes, methods), never thread or user ids.
"""
from __future__ import annotations

from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from time import perf_counter
from typing import Iterator

Labels = tuple[tuple[str, str], ...]
SeriesKey = tuple[str, Labels]


def _key(name: str, labels: dict) -> SeriesKey:
    return name, tuple(sorted((k, str(v)) for k, v in labels.items()))


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def series_name(name: str, labels: Labels = ()) -> str:
    """``name{k="v",...}`` as it appears in the exposition format."""
    if not labels:
        return name
    body = ",".join(f'{k}="{_escape(v)}"' for k, v in labels)
    return f"{name}{{{body}}}"


@dataclass
class LatencyStats:
    count: int = 0
    total_ms: float = 0.0
    max_ms: float = 0.0

    def add(self, value_ms: float) -> None:
        value_ms = max(0.0, value_ms)
        self.count += 1
        self.total_ms += value_ms
        self.max_ms = max(self.max_ms, value_ms)


class MetricsRegistry:
    def __init__(self) -> None:
        self._counters: dict[SeriesKey, float] = defaultdict(float)
        self._gauges: dict[SeriesKey, float] = {}
        self._latency: dict[SeriesKey, LatencyStats] = defaultdict(LatencyStats)

    # ── Writers ───────────────────────────────────────────────────────────

    def inc(self, name: str, value: float = 1.0, **labels) -> None:
        if value < 0:
            raise ValueError(f"counter {name} cannot decrease")
        self._counters[_key(name, labels)] += value

    def set_gauge(self, name: str, value: float, **labels) -> None:
        self._gauges[_key(name, labels)] = float(value)

    def observe_ms(self, name: str, value_ms: float, **labels) -> None:
        self._latency[_key(name, labels)].add(value_ms)

    @contextmanager
    def track_ms(self, name: str, **labels) -> Iterator[None]:
        """Time the block; failed blocks are observed too."""
        start = perf_counter()
        try:
            yield
        finally:
            self.observe_ms(name, (perf_counter() - start) * 1000.0, **labels)

    # ── Readers ───────────────────────────────────────────────────────────

    def counter(self, name: str, **labels) -> float:
        return self._counters.get(_key(name, labels), 0.0)

    def total(self, name: str) -> float:
        """Sum of a counter across all of its label sets."""
        return sum(v for (n, _), v in self._counters.items() if n == name)

    def gauge(self, name: str, **labels) -> float | None:
        return self._gauges.get(_key(name, labels))

    def latency(self, name: str, **labels) -> LatencyStats:
        return self._latency.get(_key(name, labels), LatencyStats())

    # ── Exposition ────────────────────────────────────────────────────────

    def render_prometheus(self) -> str:
        lines: list[str] = []

        def emit(kind: str, values: dict[SeriesKey, float], fmt: str) -> None:
            typed: set[str] = set()
            for name, labels in sorted(values):
                if name not in typed:
                    lines.append(f"# TYPE {name} {kind}")
                    typed.add(name)
                lines.append(f"{series_name(name, labels)} {values[(name, labels)]:{fmt}}")

        emit("counter", self._counters, ".6f")
        emit("gauge", self._gauges, ".6f")

        summarized: set[str] = set()
        for name, labels in sorted(self._latency):
            stats = self._latency[(name, labels)]
            base = f"{name}_ms"
            if base not in summarized:
                lines.append(f"# TYPE {base} summary")
                summarized.add(base)
            lines.append(f"{series_name(base + '_sum', labels)} {stats.total_ms:.6f}")
            lines.append(f"{series_name(base + '_count', labels)} {stats.count}")
            lines.append(f"{series_name(base + '_max', labels)} {stats.max_ms:.6f}")

        return "\n".join(lines) + "\n"
