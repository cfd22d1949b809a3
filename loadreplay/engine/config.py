from __future__ import annotations

import dataclasses
import enum
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Iterator, Mapping, Sequence

import yaml

from .durations import parse_duration
from .errors import ConfigurationError
from .thresholds import ThresholdRule, parse_thresholds


class ExecutorKind(enum.Enum):
    FIXED_ITERATIONS = "fixed-iterations"
    CONSTANT_CONCURRENCY = "constant-concurrency"
    RAMPING_CONCURRENCY = "ramping-concurrency"

    @classmethod
    def parse(cls, value: str) -> "ExecutorKind":
        key = str(value).strip().lower().replace("_", "-")
        kind = _EXECUTOR_ALIASES.get(key)
        if kind is None:
            raise ConfigurationError(f"unknown executor {value!r}")
        return kind


_EXECUTOR_ALIASES: dict[str, ExecutorKind] = {
    "fixed-iterations": ExecutorKind.FIXED_ITERATIONS,
    "shared-iterations": ExecutorKind.FIXED_ITERATIONS,
    "constant-concurrency": ExecutorKind.CONSTANT_CONCURRENCY,
    "constant-vus": ExecutorKind.CONSTANT_CONCURRENCY,
    "ramping-concurrency": ExecutorKind.RAMPING_CONCURRENCY,
    "ramping-vus": ExecutorKind.RAMPING_CONCURRENCY,
}


@dataclass(frozen=True)
class RequestSpec:
    path: str
    query: str = ""
    tags: Mapping[str, str] = field(default_factory=dict)

    @property
    def target(self) -> str:
        if not self.query:
            return self.path
        return f"{self.path}?{self.query}"


@dataclass(frozen=True)
class WorkloadGroup:
    """Ordered requests sharing a semantic label, e.g. ``search``."""

    label: str
    requests: tuple[RequestSpec, ...]
    shuffle: bool = True


@dataclass(frozen=True)
class WorkloadCatalog:
    groups: tuple[WorkloadGroup, ...]

    def __iter__(self) -> Iterator[WorkloadGroup]:
        return iter(self.groups)

    def __len__(self) -> int:
        return len(self.groups)

    def labels(self) -> list[str]:
        return [group.label for group in self.groups]

    def subset(self, labels: Sequence[str] | None) -> tuple[WorkloadGroup, ...]:
        if not labels:
            return self.groups
        lookup = {group.label: group for group in self.groups}
        missing = [label for label in labels if label not in lookup]
        if missing:
            raise ConfigurationError(
                f"unknown catalog group(s): {', '.join(missing)}"
            )
        return tuple(lookup[label] for label in labels)


@dataclass(frozen=True)
class Stage:
    duration: float
    target: int


@dataclass(frozen=True)
class ScenarioSpec:
    """Execution model for one scenario. Immutable once a run starts."""

    name: str
    executor: ExecutorKind
    total_iterations: int | None = None
    concurrency: int | None = None
    duration: float | None = None
    stages: tuple[Stage, ...] = ()
    tags: Mapping[str, str] = field(default_factory=dict)
    start_time: float = 0.0
    groups: tuple[str, ...] = ()
    graceful_stop: float = 30.0
    start_concurrency: int = 0
    max_duration: float | None = None

    def validate(self) -> None:
        if self.start_time < 0:
            raise ConfigurationError(f"{self.name}: start_time must be >= 0")
        if self.graceful_stop < 0:
            raise ConfigurationError(f"{self.name}: graceful_stop must be >= 0")

        if self.executor is ExecutorKind.FIXED_ITERATIONS:
            if self.total_iterations is None or self.total_iterations < 0:
                raise ConfigurationError(
                    f"{self.name}: fixed-iterations requires iterations >= 0"
                )
            if self.concurrency is None or self.concurrency < 1:
                raise ConfigurationError(
                    f"{self.name}: fixed-iterations requires vus >= 1"
                )
            if self.max_duration is not None and self.max_duration <= 0:
                raise ConfigurationError(f"{self.name}: max_duration must be > 0")
        elif self.executor is ExecutorKind.CONSTANT_CONCURRENCY:
            if self.concurrency is None or self.concurrency < 1:
                raise ConfigurationError(
                    f"{self.name}: constant-concurrency requires vus >= 1"
                )
            if self.duration is None or self.duration <= 0:
                raise ConfigurationError(
                    f"{self.name}: constant-concurrency requires duration > 0"
                )
        elif self.executor is ExecutorKind.RAMPING_CONCURRENCY:
            if not self.stages:
                raise ConfigurationError(
                    f"{self.name}: ramping-concurrency requires at least one stage"
                )
            for index, stage in enumerate(self.stages):
                if stage.duration < 0 or stage.target < 0:
                    raise ConfigurationError(
                        f"{self.name}: stage {index} must have duration >= 0 and target >= 0"
                    )
            if self.start_concurrency < 0:
                raise ConfigurationError(
                    f"{self.name}: start_vus must be >= 0"
                )


@dataclass(frozen=True)
class Pacing:
    min_sleep: float = 0.0
    max_sleep: float = 0.0
    startup_jitter: float = 0.0
    iteration_sleep: float = 0.0

    def __post_init__(self) -> None:
        if self.min_sleep > self.max_sleep:
            raise ConfigurationError(
                f"pacing: min_sleep ({self.min_sleep}) exceeds max_sleep ({self.max_sleep})"
            )


@dataclass(frozen=True)
class TestPlan:
    target_host: str
    scenarios: tuple[ScenarioSpec, ...]
    catalog: WorkloadCatalog
    thresholds: tuple[ThresholdRule, ...] = ()
    pacing: Pacing = field(default_factory=Pacing)
    seed: int | None = None
    checkpoint_interval: float | None = None
    request_timeout: float = 30.0
    expected_statuses: frozenset[int] = frozenset({200})

    __test__ = False

    def validate(self) -> None:
        if not self.scenarios:
            raise ConfigurationError("plan defines no scenarios")
        names = [scenario.name for scenario in self.scenarios]
        if len(set(names)) != len(names):
            raise ConfigurationError("scenario names must be unique")
        for scenario in self.scenarios:
            scenario.validate()
            groups = self.catalog.subset(scenario.groups)
            if not any(group.requests for group in groups):
                raise ConfigurationError(
                    f"{scenario.name}: selected catalog groups contain no requests"
                )
        if self.checkpoint_interval is not None and self.checkpoint_interval <= 0:
            raise ConfigurationError("checkpoint_interval must be > 0")
        if self.request_timeout <= 0:
            raise ConfigurationError("request_timeout must be > 0")

    def with_overrides(
        self,
        target_host: str | None = None,
        concurrency: int | None = None,
        total_iterations: int | None = None,
        duration: float | None = None,
        seed: int | None = None,
    ) -> "TestPlan":
        """Apply CLI/environment overrides to every applicable scenario."""
        scenarios = []
        for scenario in self.scenarios:
            changes: dict[str, Any] = {}
            if concurrency is not None and scenario.executor is not ExecutorKind.RAMPING_CONCURRENCY:
                changes["concurrency"] = concurrency
            if total_iterations is not None and scenario.executor is ExecutorKind.FIXED_ITERATIONS:
                changes["total_iterations"] = total_iterations
            if duration is not None and scenario.executor is ExecutorKind.CONSTANT_CONCURRENCY:
                changes["duration"] = duration
            scenarios.append(dataclasses.replace(scenario, **changes))

        plan_changes: dict[str, Any] = {"scenarios": tuple(scenarios)}
        if target_host:
            plan_changes["target_host"] = target_host
        if seed is not None:
            plan_changes["seed"] = seed
        return dataclasses.replace(self, **plan_changes)


def _string_tags(raw: Any, context: str) -> dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise ConfigurationError(f"{context}: tags must be a mapping")
    return {str(key): str(value) for key, value in raw.items()}


def _parse_request(raw: Any, group_tags: Mapping[str, str], context: str) -> RequestSpec:
    if isinstance(raw, str):
        path, _, query = raw.partition("?")
        return RequestSpec(path=path or "/", query=query, tags=dict(group_tags))
    if isinstance(raw, Mapping):
        if "path" not in raw:
            raise ConfigurationError(f"{context}: request entry requires a path")
        path, _, inline_query = str(raw["path"]).partition("?")
        query = str(raw.get("query") or inline_query).lstrip("?")
        tags = dict(group_tags)
        tags.update(_string_tags(raw.get("tags"), context))
        return RequestSpec(path=path or "/", query=query, tags=tags)
    raise ConfigurationError(f"{context}: request entries must be strings or mappings")


def parse_catalog(data: Any) -> WorkloadCatalog:
    """Build a catalog from its decoded YAML/JSON form."""
    if isinstance(data, Mapping):
        raw_groups = data.get("groups")
    else:
        raw_groups = data
    if not isinstance(raw_groups, list) or not raw_groups:
        raise ConfigurationError("catalog must define a non-empty list of groups")

    groups: list[WorkloadGroup] = []
    seen: set[str] = set()
    for index, raw_group in enumerate(raw_groups):
        if not isinstance(raw_group, Mapping):
            raise ConfigurationError(f"catalog group {index} must be a mapping")
        label = str(raw_group.get("label") or f"group-{index}")
        if label in seen:
            raise ConfigurationError(f"duplicate catalog group {label!r}")
        seen.add(label)
        group_tags = _string_tags(raw_group.get("tags"), label)
        raw_requests = raw_group.get("requests") or []
        if not isinstance(raw_requests, list):
            raise ConfigurationError(f"{label}: requests must be a list")
        requests = tuple(
            _parse_request(entry, group_tags, label) for entry in raw_requests
        )
        groups.append(
            WorkloadGroup(
                label=label,
                requests=requests,
                shuffle=bool(raw_group.get("shuffle", True)),
            )
        )
    return WorkloadCatalog(groups=tuple(groups))


def _optional_int(raw: Mapping[str, Any], keys: Iterable[str], context: str) -> int | None:
    for key in keys:
        if key in raw and raw[key] is not None:
            try:
                return int(raw[key])
            except (TypeError, ValueError) as exc:
                raise ConfigurationError(f"{context}: {key} must be an integer") from exc
    return None


def parse_scenario(name: str, raw: Mapping[str, Any]) -> ScenarioSpec:
    if not isinstance(raw, Mapping):
        raise ConfigurationError(f"scenario {name!r} must be a mapping")
    if "executor" not in raw:
        raise ConfigurationError(f"{name}: executor is required")

    stages: list[Stage] = []
    for index, raw_stage in enumerate(raw.get("stages") or []):
        if not isinstance(raw_stage, Mapping) or "target" not in raw_stage:
            raise ConfigurationError(f"{name}: stage {index} requires duration and target")
        stages.append(
            Stage(
                duration=parse_duration(raw_stage.get("duration", 0), f"{name}.stages[{index}]"),
                target=_optional_int(raw_stage, ("target",), f"{name}.stages[{index}]") or 0,
            )
        )

    duration = raw.get("duration")
    max_duration = raw.get("max_duration", raw.get("maxDuration"))
    groups = raw.get("groups") or ()
    if isinstance(groups, str):
        groups = (groups,)
    if not isinstance(groups, (list, tuple)):
        raise ConfigurationError(f"{name}: groups must be a label or a list of labels")

    return ScenarioSpec(
        name=name,
        executor=ExecutorKind.parse(raw["executor"]),
        total_iterations=_optional_int(raw, ("iterations", "total_iterations"), name),
        concurrency=_optional_int(raw, ("vus", "concurrency"), name),
        duration=parse_duration(duration, f"{name}.duration") if duration is not None else None,
        stages=tuple(stages),
        tags=_string_tags(raw.get("tags"), name),
        start_time=parse_duration(raw.get("start_time", raw.get("startTime", 0)), f"{name}.start_time"),
        groups=tuple(str(group) for group in groups),
        graceful_stop=parse_duration(
            raw.get("graceful_stop", raw.get("gracefulStop", raw.get("gracefulRampDown", 30))),
            f"{name}.graceful_stop",
        ),
        start_concurrency=_optional_int(raw, ("start_vus", "startVUs"), name) or 0,
        max_duration=(
            parse_duration(max_duration, f"{name}.max_duration")
            if max_duration is not None
            else None
        ),
    )


def parse_pacing(raw: Any) -> Pacing:
    if raw is None:
        return Pacing()
    if not isinstance(raw, Mapping):
        raise ConfigurationError("pacing must be a mapping")
    return Pacing(
        min_sleep=parse_duration(raw.get("min_sleep", 0), "pacing.min_sleep"),
        max_sleep=parse_duration(raw.get("max_sleep", raw.get("min_sleep", 0)), "pacing.max_sleep"),
        startup_jitter=parse_duration(raw.get("startup_jitter", 0), "pacing.startup_jitter"),
        iteration_sleep=parse_duration(raw.get("iteration_sleep", 0), "pacing.iteration_sleep"),
    )


def parse_plan(data: Any, base_dir: Path | None = None) -> TestPlan:
    """Build and validate a plan from its decoded YAML form."""
    if not isinstance(data, Mapping):
        raise ConfigurationError("plan must be a mapping")

    raw_catalog = data.get("catalog")
    if raw_catalog is None:
        raise ConfigurationError("plan must reference a catalog")
    if isinstance(raw_catalog, str):
        catalog_path = Path(raw_catalog)
        if base_dir is not None and not catalog_path.is_absolute():
            catalog_path = base_dir / catalog_path
        catalog = load_catalog(catalog_path)
    else:
        catalog = parse_catalog(raw_catalog)

    raw_scenarios = data.get("scenarios")
    if not isinstance(raw_scenarios, Mapping) or not raw_scenarios:
        raise ConfigurationError("plan must define a mapping of scenarios")
    scenarios = tuple(
        parse_scenario(str(name), raw) for name, raw in raw_scenarios.items()
    )

    checkpoint = data.get("checkpoint_interval")
    seed = _optional_int(data, ("seed",), "plan")
    statuses = data.get("expected_statuses") or [200]
    try:
        expected_statuses = frozenset(int(status) for status in statuses)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError("expected_statuses must be a list of integers") from exc

    plan = TestPlan(
        target_host=str(data.get("target_host") or ""),
        scenarios=scenarios,
        catalog=catalog,
        thresholds=tuple(parse_thresholds(data.get("thresholds"))),
        pacing=parse_pacing(data.get("pacing")),
        seed=seed,
        checkpoint_interval=(
            parse_duration(checkpoint, "checkpoint_interval") if checkpoint is not None else None
        ),
        request_timeout=parse_duration(data.get("request_timeout", 30), "request_timeout"),
        expected_statuses=expected_statuses,
    )
    plan.validate()
    return plan


def _read_yaml(path: Path) -> Any:
    try:
        with path.open("r", encoding="utf-8") as handle:
            return yaml.safe_load(handle)
    except OSError as exc:
        raise ConfigurationError(f"unable to read {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"invalid YAML in {path}: {exc}") from exc


def load_catalog(path: Path) -> WorkloadCatalog:
    return parse_catalog(_read_yaml(Path(path)))


def load_plan(path: Path) -> TestPlan:
    path = Path(path)
    return parse_plan(_read_yaml(path), base_dir=path.parent)
