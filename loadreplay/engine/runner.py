from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any

from .clock import Clock, SystemClock
from .collector import MetricsAggregator
from .config import TestPlan
from .dispatcher import Dispatcher
from .scheduler import DEFAULT_TICK_S, ScenarioResult, ScenarioScheduler
from .thresholds import RunVerdict, ThresholdEvaluator

LOGGER = logging.getLogger("loadreplay.engine.runner")


@dataclass
class RunReport:
    verdict: RunVerdict
    scenarios: dict[str, ScenarioResult] = field(default_factory=dict)
    aborted: bool = False
    abort_reason: str | None = None
    duration_s: float = 0.0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "verdict": self.verdict.to_dict(),
            "scenarios": {name: result.to_dict() for name, result in self.scenarios.items()},
            "aborted": self.aborted,
            "abort_reason": self.abort_reason,
            "duration_s": round(self.duration_s, 3),
            "errors": list(self.errors),
        }


class LoadTestRunner:
    """Runs every scenario of a plan and turns the samples into a verdict.

    Scenarios run concurrently, each delayed by its ``start_time``. When the
    plan sets ``checkpoint_interval`` thresholds are also evaluated while the
    scenarios run, and a failing rule flagged ``abort_on_fail`` stops the run.
    """

    def __init__(
        self,
        plan: TestPlan,
        dispatcher: Dispatcher,
        aggregator: MetricsAggregator | None = None,
        clock: Clock | None = None,
        tick_s: float = DEFAULT_TICK_S,
    ) -> None:
        plan.validate()
        self.plan = plan
        self.aggregator = aggregator or MetricsAggregator()
        self._dispatcher = dispatcher
        self._clock = clock or SystemClock()
        self._tick_s = tick_s
        self._abort = threading.Event()
        self._abort_reason: str | None = None
        self._abort_lock = threading.Lock()
        self._evaluator = ThresholdEvaluator(plan.thresholds)
        self._results: dict[str, ScenarioResult] = {}
        self._errors: list[str] = []
        self._results_lock = threading.Lock()
        self.schedulers = [
            ScenarioScheduler(
                spec=spec,
                groups=plan.catalog.subset(spec.groups),
                dispatcher=dispatcher,
                aggregator=self.aggregator,
                pacing=plan.pacing,
                clock=self._clock,
                seed=plan.seed,
                abort_event=self._abort,
                tick_s=tick_s,
            )
            for spec in plan.scenarios
        ]

    @property
    def aborted(self) -> bool:
        return self._abort.is_set()

    def abort(self, reason: str = "operator abort") -> None:
        """Stop promptly, cancelling requests that are still in flight."""
        with self._abort_lock:
            if self._abort.is_set():
                return
            self._abort_reason = reason
            self._abort.set()
        LOGGER.warning("Aborting run: %s", reason)
        self._dispatcher.abort()

    def stop(self) -> None:
        """Gracefully stop every scenario; running iterations complete."""
        for scheduler in self.schedulers:
            scheduler.stop()

    def run(self) -> RunReport:
        started_at = self._clock.now()
        threads = [
            threading.Thread(
                target=self._run_scenario,
                args=(scheduler,),
                name=f"scenario-{scheduler.spec.name}",
                daemon=True,
            )
            for scheduler in self.schedulers
        ]
        for thread in threads:
            thread.start()

        interval = self.plan.checkpoint_interval
        next_checkpoint = started_at + interval if interval else None
        while any(thread.is_alive() for thread in threads):
            try:
                now = self._clock.now()
                if next_checkpoint is not None and now >= next_checkpoint:
                    self._checkpoint(now - started_at)
                    next_checkpoint = now + interval
                self._clock.sleep(self._tick_s)
            except KeyboardInterrupt:
                self.abort("interrupted by operator")

        for thread in threads:
            thread.join()

        verdict = self._evaluator.evaluate(self.aggregator)
        LOGGER.info("Run finished with verdict %s", verdict.overall.value)
        with self._results_lock:
            scenarios = {
                scheduler.spec.name: self._results[scheduler.spec.name]
                for scheduler in self.schedulers
                if scheduler.spec.name in self._results
            }
            errors = list(self._errors)
        return RunReport(
            verdict=verdict,
            scenarios=scenarios,
            aborted=self._abort.is_set(),
            abort_reason=self._abort_reason,
            duration_s=self._clock.now() - started_at,
            errors=errors,
        )

    def _run_scenario(self, scheduler: ScenarioScheduler) -> None:
        spec = scheduler.spec
        if spec.start_time > 0:
            LOGGER.info("Scenario %s starts in %.2fs", spec.name, spec.start_time)
            if self._clock.sleep(spec.start_time, self._abort):
                return
        try:
            result = scheduler.run()
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Scenario %s failed", spec.name)
            with self._results_lock:
                self._errors.append(f"{spec.name}: {exc!r}")
            self.abort(f"scenario {spec.name} failed")
            return
        with self._results_lock:
            self._results[spec.name] = result
            if result.crashed_vus:
                self._errors.append(f"{spec.name}: {result.crashed_vus} VU(s) crashed")

    def _checkpoint(self, elapsed_s: float) -> None:
        verdict, aborting = self._evaluator.checkpoint(self.aggregator, elapsed_s)
        LOGGER.debug("Checkpoint at %.2fs: %s", elapsed_s, verdict.overall.value)
        if aborting:
            self.abort(
                "threshold failed: " + "; ".join(rule.describe() for rule in aborting)
            )
