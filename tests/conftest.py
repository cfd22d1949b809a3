"""
Shared pytest fixtures for the loadreplay test suite.

Provides a thread-safe fake dispatcher (so no HTTP target is needed), a
manual clock for deterministic single-threaded runtime tests, and small
workload catalogs.
"""

from __future__ import annotations

import collections
import threading
import time
from typing import Callable

import pytest

from loadreplay.engine.collector import MetricsAggregator
from loadreplay.engine.config import RequestSpec, WorkloadCatalog, WorkloadGroup
from loadreplay.engine.dispatcher import DispatchResult


class FakeDispatcher:
    """Records every dispatched request and answers from ``responder``."""

    def __init__(
        self,
        responder: Callable[[RequestSpec], DispatchResult] | None = None,
        delay_s: float = 0.0,
    ) -> None:
        self._responder = responder or (lambda request: DispatchResult(ok=True, status_code=200))
        self._delay_s = delay_s
        self._lock = threading.Lock()
        self.calls: list[str] = []
        self.counts: collections.Counter[str] = collections.Counter()
        self.aborted = threading.Event()
        self.closed = False

    def dispatch(self, request: RequestSpec) -> DispatchResult:
        if self._delay_s:
            time.sleep(self._delay_s)
        with self._lock:
            self.calls.append(request.target)
            self.counts[request.target] += 1
        return self._responder(request)

    def abort(self) -> None:
        self.aborted.set()

    def close(self) -> None:
        self.closed = True

    @property
    def total(self) -> int:
        with self._lock:
            return len(self.calls)


class ManualClock:
    """Clock whose time only moves when something sleeps."""

    def __init__(self, start: float = 100.0, step: float = 0.0) -> None:
        self._now = start
        self._step = step
        self.sleeps: list[float] = []

    def now(self) -> float:
        value = self._now
        self._now += self._step
        return value

    def sleep(self, seconds: float, cancel: threading.Event | None = None) -> bool:
        self.sleeps.append(seconds)
        self._now += max(seconds, 0.0)
        return cancel.is_set() if cancel is not None else False


@pytest.fixture
def dispatcher() -> FakeDispatcher:
    return FakeDispatcher()


@pytest.fixture
def dispatcher_factory() -> type[FakeDispatcher]:
    return FakeDispatcher


@pytest.fixture
def aggregator() -> MetricsAggregator:
    return MetricsAggregator()


@pytest.fixture
def manual_clock() -> ManualClock:
    return ManualClock(step=0.01)


@pytest.fixture
def single_request_groups() -> tuple[WorkloadGroup, ...]:
    """One group with one request: one dispatch per iteration."""
    return (
        WorkloadGroup(
            label="core",
            requests=(RequestSpec(path="/health", tags={"endpoint": "health"}),),
        ),
    )


@pytest.fixture
def registry_catalog() -> WorkloadCatalog:
    return WorkloadCatalog(
        groups=(
            WorkloadGroup(
                label="core",
                shuffle=False,
                requests=(
                    RequestSpec(path="/", tags={"endpoint": "root"}),
                    RequestSpec(path="/health", tags={"endpoint": "health"}),
                ),
            ),
            WorkloadGroup(
                label="search",
                requests=tuple(
                    RequestSpec(path="/search", query=query, tags={"endpoint": "search"})
                    for query in ("", "all=true", "package=aws", "type=integration")
                ),
            ),
        )
    )
