from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path

from .engine.collector import MetricsAggregator
from .engine.config import TestPlan, load_plan
from .engine.dispatcher import HttpxDispatcher
from .engine.durations import parse_duration
from .engine.errors import ConfigurationError
from .engine.runner import LoadTestRunner, RunReport
from .engine.thresholds import RuleStatus
from .exporter import ExporterError, KafkaSampleExporter, create_producer

LOGGER = logging.getLogger("loadreplay")

# Distinct exit codes so CI can tell "thresholds breached" from "plan broken".
EXIT_PASS = 0
EXIT_THRESHOLD_BREACH = 1
EXIT_CONFIG_ERROR = 2
EXIT_INCONCLUSIVE = 3

_VERDICT_EXIT_CODES = {
    RuleStatus.PASS: EXIT_PASS,
    RuleStatus.FAIL: EXIT_THRESHOLD_BREACH,
    RuleStatus.INCONCLUSIVE: EXIT_INCONCLUSIVE,
}


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Replay an HTTP workload catalog and gate on thresholds")
    parser.add_argument("plan", help="Path to the YAML test plan")
    parser.add_argument(
        "--target-host",
        default=os.environ.get("TARGET_HOST"),
        help="Base URL requests are resolved against (overrides the plan)",
    )
    parser.add_argument("--vus", type=int, help="Virtual user count for every non-ramping scenario")
    parser.add_argument("--iterations", type=int, help="Iteration budget for fixed-iteration scenarios")
    parser.add_argument("--duration", help="Run length for constant-concurrency scenarios, e.g. 30s")
    parser.add_argument("--seed", type=int, help="Seed for reproducible traversal order and pacing")
    parser.add_argument(
        "--output-dir",
        default=os.environ.get("LOADREPLAY_OUTPUT_DIR"),
        help="Directory to store samples.csv and run_manifest.json",
    )
    parser.add_argument(
        "--kafka-broker",
        default=os.environ.get("KAFKA_BROKER"),
        help="Kafka bootstrap broker; enables sample export when set",
    )
    parser.add_argument(
        "--kafka-topic",
        default=os.environ.get("KAFKA_SAMPLES_TOPIC", "loadreplay-samples"),
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only print the planned scenarios without executing them",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOADREPLAY_LOG_LEVEL", "INFO"),
        help="Logging level",
    )
    return parser.parse_args(argv)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def _env_int(name: str) -> int | None:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return int(raw)
    except ValueError:
        print(f"invalid {name} value {raw!r}; ignoring", file=sys.stderr)
        return None


def _env_duration(name: str) -> float | None:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return parse_duration(raw, name)
    except ConfigurationError:
        print(f"invalid {name} value {raw!r}; ignoring", file=sys.stderr)
        return None


def resolve_plan(args: argparse.Namespace) -> TestPlan:
    plan = load_plan(Path(args.plan))
    duration = parse_duration(args.duration, "--duration") if args.duration else _env_duration("RUN_DURATION")
    plan = plan.with_overrides(
        target_host=args.target_host,
        concurrency=args.vus if args.vus is not None else _env_int("VUS_NUMBER"),
        total_iterations=args.iterations if args.iterations is not None else _env_int("ITERATIONS_NUMBER"),
        duration=duration,
        seed=args.seed if args.seed is not None else _env_int("LOADREPLAY_SEED"),
    )
    plan.validate()
    if not plan.target_host:
        raise ConfigurationError("no target host: set target_host, --target-host or TARGET_HOST")
    return plan


def run(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)

    try:
        plan = resolve_plan(args)
    except ConfigurationError as exc:
        LOGGER.error("Invalid plan: %s", exc)
        print(f"configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    LOGGER.info("Target host: %s", plan.target_host)
    LOGGER.info("Scenarios: %s", ", ".join(scenario.name for scenario in plan.scenarios))

    if args.dry_run:
        _print_plan(plan)
        return EXIT_PASS

    aggregator = MetricsAggregator()
    exporter: KafkaSampleExporter | None = None
    if args.kafka_broker:
        try:
            exporter = KafkaSampleExporter(create_producer(args.kafka_broker), args.kafka_topic)
        except ExporterError:
            LOGGER.exception("failed to initialise Kafka sample export")
            return EXIT_CONFIG_ERROR
        aggregator.subscribe(exporter)
        LOGGER.info("Exporting samples to Kafka topic %s", args.kafka_topic)

    dispatcher = HttpxDispatcher(
        plan.target_host,
        timeout=plan.request_timeout,
        expected_statuses=plan.expected_statuses,
    )
    try:
        runner = LoadTestRunner(plan, dispatcher, aggregator)
        report = runner.run()
    finally:
        dispatcher.close()
        if exporter is not None:
            try:
                exporter.close()
            except ExporterError:
                LOGGER.exception("sample export did not complete")

    _print_summary(aggregator, report)
    if args.output_dir:
        write_artefacts(Path(args.output_dir), aggregator, report)

    if report.errors:
        return EXIT_CONFIG_ERROR
    return _VERDICT_EXIT_CODES[report.verdict.overall]


def write_artefacts(output_dir: Path, aggregator: MetricsAggregator, report: RunReport) -> None:
    output_dir.mkdir(parents=True, exist_ok=True)
    samples_path = output_dir / "samples.csv"
    df = aggregator.build_dataframe()
    df.to_csv(samples_path, index=False)
    LOGGER.info("Saved %d sample(s) to %s", len(df), samples_path)

    manifest = report.to_dict()
    manifest["tags"] = aggregator.summaries()
    manifest_path = output_dir / "run_manifest.json"
    with open(manifest_path, "w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, default=str)
    LOGGER.info("Run manifest written to %s", manifest_path)


def _print_summary(aggregator: MetricsAggregator, report: RunReport) -> None:
    print(f"{'Tag':<40}{'Count':>8}{'Failed':>8}{'p50':>10}{'p95':>10}{'max':>10}")
    print("-" * 86)
    for label, summary in aggregator.summaries().items():
        print(
            f"{label:<40}{summary['count']:>8}{summary['failures']:>8}"
            f"{summary['med_ms']:>10.1f}{summary['p95_ms']:>10.1f}{summary['max_ms']:>10.1f}"
        )
    print()
    for name, result in report.scenarios.items():
        print(
            f"Scenario {name}: iterations={result.iterations} vus={result.vus_spawned} "
            f"peak={result.peak_concurrency} duration={result.duration_s:.1f}s"
        )
    for result in report.verdict.results.values():
        observed = "n/a" if result.observed is None else f"{result.observed:.2f}"
        print(
            f"  {result.status.value.upper():<13}{result.rule.describe()} "
            f"(observed {observed}, samples {result.sample_count})"
        )
    if report.aborted:
        print(f"Run aborted: {report.abort_reason}", file=sys.stderr)
    print(f"\nOverall: {report.verdict.overall.value.upper()}")


def _print_plan(plan: TestPlan) -> None:
    print(f"Target: {plan.target_host}")
    for scenario in plan.scenarios:
        print(
            f"  - {scenario.name}: executor={scenario.executor.value} vus={scenario.concurrency} "
            f"iterations={scenario.total_iterations} duration={scenario.duration} "
            f"stages={len(scenario.stages)} start={scenario.start_time}s tags={dict(scenario.tags)}"
        )
    for group in plan.catalog:
        print(f"  group {group.label}: {len(group.requests)} request(s)")
    for rule in plan.thresholds:
        print(f"  threshold {rule.describe()}")


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()
