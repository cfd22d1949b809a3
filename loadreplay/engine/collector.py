from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping

import numpy as np
import pandas as pd

LOGGER = logging.getLogger("loadreplay.engine.collector")

SAMPLE_COLUMNS = [
    "timestamp",
    "vu_id",
    "scenario",
    "group",
    "path",
    "status_code",
    "outcome",
    "latency_ms",
    "error",
    "tags",
]

TagFilter = Iterable[tuple[str, str]]


class Outcome(enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class MetricSample:
    tags: Mapping[str, str]
    timestamp: float
    latency_ms: float
    outcome: Outcome
    vu_id: int = 0
    path: str = ""
    status_code: int | None = None
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.outcome is Outcome.FAILURE

    def to_row(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "vu_id": self.vu_id,
            "scenario": self.tags.get("scenario"),
            "group": self.tags.get("group"),
            "path": self.path,
            "status_code": self.status_code,
            "outcome": self.outcome.value,
            "latency_ms": self.latency_ms,
            "error": self.error,
            "tags": ",".join(f"{key}={value}" for key, value in sorted(self.tags.items())),
        }


@dataclass
class TagStats:
    """Counts and retained latency distribution for a selection of samples.

    Failed requests contribute their latency to every latency statistic and
    are additionally counted in ``failures``.
    """

    count: int = 0
    failures: int = 0
    latencies: np.ndarray = field(default_factory=lambda: np.empty(0, dtype=float))

    @property
    def failure_rate(self) -> float:
        if self.count == 0:
            return 0.0
        return self.failures / self.count

    def percentile(self, pct: float) -> float:
        if self.latencies.size == 0:
            return float("nan")
        return float(np.percentile(self.latencies, pct))

    def mean(self) -> float:
        if self.latencies.size == 0:
            return float("nan")
        return float(self.latencies.mean())

    def minimum(self) -> float:
        if self.latencies.size == 0:
            return float("nan")
        return float(self.latencies.min())

    def maximum(self) -> float:
        if self.latencies.size == 0:
            return float("nan")
        return float(self.latencies.max())

    def summary(self) -> dict[str, float | int]:
        return {
            "count": self.count,
            "failures": self.failures,
            "failure_rate": round(self.failure_rate, 4),
            "avg_ms": round(self.mean(), 2),
            "min_ms": round(self.minimum(), 2),
            "med_ms": round(self.percentile(50), 2),
            "p90_ms": round(self.percentile(90), 2),
            "p95_ms": round(self.percentile(95), 2),
            "p99_ms": round(self.percentile(99), 2),
            "max_ms": round(self.maximum(), 2),
        }


class _Series:
    __slots__ = ("latencies", "failures")

    def __init__(self) -> None:
        self.latencies: list[float] = []
        self.failures = 0


class MetricsAggregator:
    """Thread-safe sink for samples written concurrently by virtual users.

    Samples are bucketed by their complete tag set so that a tag filter only
    has to scan the distinct tag combinations, not every sample. Reads take a
    snapshot under the same lock, which makes them safe while writers are
    still running.
    """

    def __init__(self, retain_samples: bool = True) -> None:
        self._lock = threading.Lock()
        self._series: dict[frozenset[tuple[str, str]], _Series] = {}
        self._samples: list[MetricSample] = []
        self._retain_samples = retain_samples
        self._listeners: list[Callable[[MetricSample], None]] = []

    def subscribe(self, callback: Callable[[MetricSample], None]) -> None:
        with self._lock:
            self._listeners.append(callback)

    def record(self, sample: MetricSample) -> None:
        key = frozenset(sample.tags.items())
        with self._lock:
            series = self._series.get(key)
            if series is None:
                series = self._series[key] = _Series()
            series.latencies.append(sample.latency_ms)
            if sample.failed:
                series.failures += 1
            if self._retain_samples:
                self._samples.append(sample)
            listeners = list(self._listeners)

        for listener in listeners:
            try:
                listener(sample)
            except Exception:  # noqa: BLE001
                LOGGER.exception("sample subscriber %r failed", listener)

    def total(self) -> int:
        with self._lock:
            return sum(len(series.latencies) for series in self._series.values())

    def select(self, tag_filter: TagFilter | Mapping[str, str] = ()) -> TagStats:
        """Aggregate every sample whose tags contain all of ``tag_filter``."""
        if isinstance(tag_filter, Mapping):
            wanted = set(tag_filter.items())
        else:
            wanted = set(tag_filter)

        chunks: list[list[float]] = []
        failures = 0
        with self._lock:
            for key, series in self._series.items():
                if wanted <= key:
                    chunks.append(list(series.latencies))
                    failures += series.failures

        if not chunks:
            return TagStats()
        latencies = np.fromiter(
            (value for chunk in chunks for value in chunk), dtype=float
        )
        return TagStats(count=int(latencies.size), failures=failures, latencies=latencies)

    def tags(self) -> list[tuple[str, str]]:
        with self._lock:
            keys = list(self._series)
        return sorted({pair for key in keys for pair in key})

    def per_tag(self) -> dict[str, TagStats]:
        return {f"{key}={value}": self.select([(key, value)]) for key, value in self.tags()}

    def summaries(self) -> dict[str, dict[str, float | int]]:
        return {label: stats.summary() for label, stats in self.per_tag().items()}

    def build_dataframe(self) -> pd.DataFrame:
        with self._lock:
            rows = [sample.to_row() for sample in self._samples]

        if not rows:
            return pd.DataFrame(columns=SAMPLE_COLUMNS)
        return pd.DataFrame(rows, columns=SAMPLE_COLUMNS)
