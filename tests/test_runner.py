"""
End-to-end runner tests: scenarios, checkpoints and verdicts with a fake dispatcher.
"""

from __future__ import annotations

import threading
import time

from loadreplay.engine.config import parse_plan
from loadreplay.engine.dispatcher import DispatchResult
from loadreplay.engine.runner import LoadTestRunner
from loadreplay.engine.thresholds import RuleStatus

TICK_S = 0.01

CATALOG = {
    "groups": [
        {"label": "core", "shuffle": False, "requests": [{"path": "/health", "tags": {"endpoint": "health"}}]},
        {"label": "search", "tags": {"endpoint": "search"}, "requests": ["/search", "/search?all=true"]},
    ]
}


def _plan(scenarios, thresholds=None, **extra):
    data = {
        "target_host": "http://registry.local:8080",
        "catalog": CATALOG,
        "scenarios": scenarios,
        "thresholds": thresholds,
        "seed": 3,
    }
    data.update(extra)
    return parse_plan(data)


def test_fixed_iterations_run_passes_thresholds(dispatcher):
    plan = _plan(
        {"steady": {"executor": "shared-iterations", "vus": 4, "iterations": 20, "tags": {"test_type": "steady_iters"}}},
        thresholds={
            "http_req_duration{test_type:steady_iters}": ["p(95)<1000"],
            "http_req_failed{test_type:steady_iters}": ["rate<0.01"],
        },
    )
    runner = LoadTestRunner(plan, dispatcher, tick_s=TICK_S)

    report = runner.run()

    assert report.verdict.overall is RuleStatus.PASS
    assert report.aborted is False
    assert report.errors == []
    assert report.scenarios["steady"].iterations == 20
    # Three requests per iteration across the two groups.
    assert dispatcher.total == 60
    assert runner.aggregator.select({"test_type": "steady_iters", "endpoint": "search"}).count == 40


def test_thresholds_for_absent_tags_are_inconclusive(dispatcher):
    plan = _plan(
        {"steady": {"executor": "shared-iterations", "vus": 1, "iterations": 2}},
        thresholds={"http_req_duration{test_type:never_ran}": ["p(95)<1000"]},
    )

    report = LoadTestRunner(plan, dispatcher, tick_s=TICK_S).run()

    assert report.verdict.overall is RuleStatus.INCONCLUSIVE


def test_failing_threshold_with_abort_stops_the_run(dispatcher_factory):
    dispatcher = dispatcher_factory(
        lambda request: DispatchResult(ok=False, status_code=500, error="unexpected status 500"),
        delay_s=0.005,
    )
    plan = _plan(
        {"soak": {"executor": "constant-vus", "vus": 3, "duration": "30s", "tags": {"test_type": "soak"}}},
        thresholds={"http_req_failed{test_type:soak}": [{"threshold": "rate<0.1", "abortOnFail": True}]},
        checkpoint_interval="100ms",
    )
    runner = LoadTestRunner(plan, dispatcher, tick_s=TICK_S)

    started = time.monotonic()
    report = runner.run()

    assert time.monotonic() - started < 10
    assert report.aborted is True
    assert "rate<0.1" in report.abort_reason
    assert report.verdict.overall is RuleStatus.FAIL
    assert report.scenarios["soak"].aborted is True
    assert dispatcher.aborted.is_set()


def test_failing_threshold_without_abort_lets_run_finish(dispatcher_factory):
    dispatcher = dispatcher_factory(lambda request: DispatchResult(ok=False, status_code=500))
    plan = _plan(
        {"steady": {"executor": "shared-iterations", "vus": 2, "iterations": 10, "tags": {"test_type": "steady"}}},
        thresholds={"http_req_failed{test_type:steady}": ["rate<0.1"]},
        checkpoint_interval="10ms",
    )

    report = LoadTestRunner(plan, dispatcher, tick_s=TICK_S).run()

    assert report.aborted is False
    assert report.scenarios["steady"].iterations == 10
    assert report.verdict.overall is RuleStatus.FAIL


def test_start_time_delays_a_scenario(dispatcher):
    plan = _plan(
        {
            "first": {"executor": "shared-iterations", "vus": 1, "iterations": 1},
            "second": {"executor": "shared-iterations", "vus": 1, "iterations": 1, "start_time": "300ms"},
        }
    )
    runner = LoadTestRunner(plan, dispatcher, tick_s=TICK_S)

    started = time.monotonic()
    report = runner.run()

    df = runner.aggregator.build_dataframe()
    first_seen = df.groupby("scenario")["timestamp"].min()
    assert first_seen["second"] - started >= 0.3
    assert first_seen["first"] - started < 0.3
    assert set(report.scenarios) == {"first", "second"}


def test_operator_abort_interrupts_scenarios(dispatcher_factory):
    dispatcher = dispatcher_factory(delay_s=0.005)
    plan = _plan({"soak": {"executor": "constant-vus", "vus": 2, "duration": "30s"}})
    runner = LoadTestRunner(plan, dispatcher, tick_s=TICK_S)
    threading.Timer(0.1, runner.abort).start()

    report = runner.run()

    assert report.aborted is True
    assert report.abort_reason == "operator abort"
    assert runner.aborted


def test_report_to_dict(dispatcher):
    plan = _plan(
        {"steady": {"executor": "shared-iterations", "vus": 1, "iterations": 1, "tags": {"test_type": "steady"}}},
        thresholds={"http_req_duration{test_type:steady}": ["p(95)<1000"]},
    )

    payload = LoadTestRunner(plan, dispatcher, tick_s=TICK_S).run().to_dict()

    assert payload["verdict"]["overall"] == "pass"
    assert payload["scenarios"]["steady"]["iterations"] == 1
    assert payload["scenarios"]["steady"]["executor"] == "fixed-iterations"
    assert payload["aborted"] is False


def test_crashed_vus_are_reported_as_errors(dispatcher_factory):
    def explode(request):
        raise RuntimeError("dispatcher bug")

    plan = _plan({"steady": {"executor": "shared-iterations", "vus": 1, "iterations": 3}})

    report = LoadTestRunner(plan, dispatcher_factory(explode), tick_s=TICK_S).run()

    assert report.scenarios["steady"].crashed_vus == 1
    assert report.errors == ["steady: 1 VU(s) crashed"]
