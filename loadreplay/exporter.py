from __future__ import annotations

import collections
import json
import logging
import threading
import time
from typing import Any

from kafka import KafkaProducer
from kafka.errors import KafkaError, NoBrokersAvailable

from .engine.collector import MetricSample

LOGGER = logging.getLogger("loadreplay.exporter")

CONNECT_TIMEOUT_S_DEFAULT = 60.0


class ExporterError(Exception):
    """Raised when samples cannot be exported."""


def create_producer(broker: str, connect_timeout_s: float = CONNECT_TIMEOUT_S_DEFAULT) -> KafkaProducer:
    backoff = 1.0
    max_backoff = 10.0
    deadline = time.time() + connect_timeout_s

    while True:
        try:
            return KafkaProducer(
                bootstrap_servers=broker,
                key_serializer=lambda v: v.encode("utf-8") if v else None,
                value_serializer=lambda v: json.dumps(v).encode("utf-8"),
            )
        except NoBrokersAvailable as exc:
            if time.time() >= deadline:
                raise ExporterError(
                    f"failed to connect to Kafka broker within {connect_timeout_s:.0f} seconds"
                ) from exc

            time.sleep(backoff)
            backoff = min(backoff * 1.5, max_backoff)


def sample_payload(sample: MetricSample) -> dict[str, Any]:
    return {
        "type": "http_req_duration",
        "timestamp": sample.timestamp,
        "wall_time": time.time(),
        "vu_id": sample.vu_id,
        "path": sample.path,
        "status_code": sample.status_code,
        "outcome": sample.outcome.value,
        "latency_ms": sample.latency_ms,
        "error": sample.error,
        "tags": dict(sample.tags),
    }


class KafkaSampleExporter:
    """Aggregator subscriber publishing every sample to a Kafka topic.

    Sends are asynchronous so virtual users are never held up by the broker;
    delivery failures are counted and logged.
    """

    def __init__(self, producer: KafkaProducer, topic: str) -> None:
        self._producer = producer
        self._topic = topic
        self._lock = threading.Lock()
        self.counters: collections.Counter[str] = collections.Counter()
        self.failed = 0

    def __call__(self, sample: MetricSample) -> None:
        scenario = sample.tags.get("scenario", "")
        try:
            future = self._producer.send(self._topic, key=scenario, value=sample_payload(sample))
        except KafkaError as exc:
            self._on_error(exc)
            return
        future.add_errback(self._on_error)
        with self._lock:
            self.counters[scenario] += 1

    def _on_error(self, exc: BaseException) -> None:
        with self._lock:
            self.failed += 1
        LOGGER.warning("failed to export sample: %r", exc)

    def snapshot_counters(self) -> dict[str, int]:
        with self._lock:
            return dict(self.counters)

    def close(self, timeout_s: float = 30.0) -> None:
        try:
            self._producer.flush(timeout=timeout_s)
        except KafkaError as exc:
            raise ExporterError(f"failed to flush samples: {exc}") from exc
        finally:
            self._producer.close()


__all__ = [
    "ExporterError",
    "KafkaSampleExporter",
    "create_producer",
    "sample_payload",
]
