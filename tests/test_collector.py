"""
Unit tests for the metrics aggregator.
"""

from __future__ import annotations

import threading

import pytest

from loadreplay.engine.collector import MetricSample, MetricsAggregator, Outcome, SAMPLE_COLUMNS


def _sample(latency_ms: float, outcome: Outcome = Outcome.SUCCESS, **tags: str) -> MetricSample:
    return MetricSample(
        tags=tags or {"test_type": "steady_vus"},
        timestamp=0.0,
        latency_ms=latency_ms,
        outcome=outcome,
        path="/search",
        status_code=200 if outcome is Outcome.SUCCESS else 500,
    )


def test_concurrent_writes_lose_no_samples():
    aggregator = MetricsAggregator()
    writers = 16
    per_writer = 500

    def write(worker: int) -> None:
        for index in range(per_writer):
            outcome = Outcome.FAILURE if index % 10 == 0 else Outcome.SUCCESS
            aggregator.record(_sample(float(index), outcome, worker=str(worker % 4)))

    threads = [threading.Thread(target=write, args=(worker,)) for worker in range(writers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    stats = aggregator.select([])
    assert stats.count == writers * per_writer
    assert stats.failures == writers * (per_writer // 10)
    assert aggregator.total() == writers * per_writer


def test_select_matches_samples_containing_all_filter_tags():
    aggregator = MetricsAggregator()
    aggregator.record(_sample(10, test_type="steady", endpoint="search"))
    aggregator.record(_sample(20, test_type="steady", endpoint="categories"))
    aggregator.record(_sample(30, test_type="stress", endpoint="search"))

    assert aggregator.select([("test_type", "steady")]).count == 2
    assert aggregator.select({"endpoint": "search"}).count == 2
    assert aggregator.select([("test_type", "steady"), ("endpoint", "search")]).count == 1
    assert aggregator.select([("test_type", "soak")]).count == 0


def test_failure_counts_without_excluding_latency():
    aggregator = MetricsAggregator()
    aggregator.record(_sample(100))
    aggregator.record(_sample(200))
    aggregator.record(_sample(20000, Outcome.FAILURE))

    stats = aggregator.select([("test_type", "steady_vus")])

    assert stats.count == 3
    assert stats.failures == 1
    assert stats.failure_rate == pytest.approx(1 / 3)
    assert stats.maximum() == 20000
    assert stats.percentile(100) == 20000


def test_per_tag_summaries():
    aggregator = MetricsAggregator()
    for latency in (10, 20, 30, 40):
        aggregator.record(_sample(latency, endpoint="search"))
    aggregator.record(_sample(5, Outcome.FAILURE, endpoint="health"))

    summaries = aggregator.summaries()

    assert summaries["endpoint=search"]["count"] == 4
    assert summaries["endpoint=search"]["failures"] == 0
    assert summaries["endpoint=search"]["max_ms"] == 40
    assert summaries["endpoint=health"]["failures"] == 1
    assert ("endpoint", "health") in aggregator.tags()


def test_empty_selection_has_no_statistics():
    stats = MetricsAggregator().select([("test_type", "nothing")])

    assert stats.count == 0
    assert stats.failure_rate == 0.0


def test_reads_are_safe_while_writers_run():
    aggregator = MetricsAggregator()
    stop = threading.Event()
    observed: list[int] = []

    def write() -> None:
        while not stop.is_set():
            aggregator.record(_sample(1.0))

    writer = threading.Thread(target=write)
    writer.start()
    try:
        for _ in range(50):
            observed.append(aggregator.select([("test_type", "steady_vus")]).count)
    finally:
        stop.set()
        writer.join()

    assert observed == sorted(observed)
    assert aggregator.select([]).count >= observed[-1]


def test_subscribers_receive_every_sample():
    aggregator = MetricsAggregator()
    received: list[MetricSample] = []
    aggregator.subscribe(received.append)

    sample = _sample(12.5)
    aggregator.record(sample)

    assert received == [sample]


def test_build_dataframe():
    aggregator = MetricsAggregator()
    assert list(aggregator.build_dataframe().columns) == SAMPLE_COLUMNS

    aggregator.record(_sample(50, scenario="steady", group="search"))
    df = aggregator.build_dataframe()

    assert len(df) == 1
    assert df.loc[0, "scenario"] == "steady"
    assert df.loc[0, "group"] == "search"
    assert df.loc[0, "outcome"] == "success"
    assert df.loc[0, "latency_ms"] == 50


def test_failing_subscriber_does_not_break_recording():
    aggregator = MetricsAggregator()
    received: list[MetricSample] = []

    def broken(sample: MetricSample) -> None:
        raise RuntimeError("buffer full")

    aggregator.subscribe(broken)
    aggregator.subscribe(received.append)

    aggregator.record(_sample(1.0))
    aggregator.record(_sample(2.0))

    assert aggregator.total() == 2
    assert len(received) == 2
