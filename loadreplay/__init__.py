"""
HTTP workload replay harness.

Replays an externally supplied catalog of request paths from many virtual
users under a fixed-iteration, constant-concurrency or ramping execution
model, aggregates per-tag latency samples and gates the run on threshold
rules.
"""

from .main import main

__all__ = ["main"]
