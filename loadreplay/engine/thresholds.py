"""
Threshold rules and their evaluation against aggregated samples.

Rules are written either in the k6 mapping form::

    thresholds:
      "http_req_duration{test_type:steady_iters}": ["p(95)<4000"]

or as structured entries::

    thresholds:
      - tags: {test_type: steady_vus}
        percentile: 95
        comparator: "<"
        bound_ms: 15000

A rule whose tag filter matches no samples is reported as inconclusive,
never as a pass.
"""

from __future__ import annotations

import enum
import logging
import operator
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Iterable, Mapping

from .durations import parse_duration
from .errors import ConfigurationError

if TYPE_CHECKING:
    from .collector import MetricsAggregator, TagStats

LOGGER = logging.getLogger("loadreplay.engine.thresholds")

METRIC_DURATION = "http_req_duration"
METRIC_FAILED = "http_req_failed"
METRIC_REQS = "http_reqs"

_METRIC_STATISTICS: dict[str, frozenset[str]] = {
    METRIC_DURATION: frozenset({"p", "avg", "min", "max", "med"}),
    METRIC_FAILED: frozenset({"rate"}),
    METRIC_REQS: frozenset({"count"}),
}

_KEY_PATTERN = re.compile(r"^\s*(?P<metric>[A-Za-z_][A-Za-z0-9_]*)\s*(?:\{(?P<filter>[^}]*)\})?\s*$")
_EXPRESSION_PATTERN = re.compile(
    r"^\s*(?:p\(\s*(?P<pct>\d+(?:\.\d+)?)\s*\)|(?P<stat>avg|min|max|med|rate|count))"
    r"\s*(?P<op><=|>=|==|!=|<|>)\s*(?P<bound>-?\d+(?:\.\d+)?)\s*$"
)


class Comparator(enum.Enum):
    LT = "<"
    LE = "<="
    GT = ">"
    GE = ">="
    EQ = "=="
    NE = "!="

    @classmethod
    def parse(cls, value: str) -> "Comparator":
        try:
            return cls(str(value).strip())
        except ValueError as exc:
            raise ConfigurationError(f"unknown comparator {value!r}") from exc

    def holds(self, observed: float, bound: float) -> bool:
        return _OPERATORS[self](observed, bound)


_OPERATORS: dict[Comparator, Callable[[float, float], bool]] = {
    Comparator.LT: operator.lt,
    Comparator.LE: operator.le,
    Comparator.GT: operator.gt,
    Comparator.GE: operator.ge,
    Comparator.EQ: operator.eq,
    Comparator.NE: operator.ne,
}


class RuleStatus(enum.Enum):
    PASS = "pass"
    FAIL = "fail"
    INCONCLUSIVE = "inconclusive"


def parse_tag_filter(raw: Any) -> tuple[tuple[str, str], ...]:
    """Normalise ``"a:b,c=d"`` strings or mappings into sorted tag pairs."""
    if raw is None:
        return ()
    if isinstance(raw, Mapping):
        pairs = [(str(key).strip(), str(value).strip()) for key, value in raw.items()]
    else:
        pairs = []
        for part in str(raw).split(","):
            part = part.strip()
            if not part:
                continue
            match = re.match(r"^([^:=]+)[:=](.*)$", part)
            if match is None:
                raise ConfigurationError(f"invalid tag filter entry {part!r}")
            pairs.append((match.group(1).strip(), match.group(2).strip()))
    return tuple(sorted(pairs))


@dataclass(frozen=True)
class ThresholdRule:
    tag_filter: tuple[tuple[str, str], ...]
    comparator: Comparator
    bound: float
    statistic: str = "p"
    percentile: float | None = 95.0
    metric: str = METRIC_DURATION
    abort_on_fail: bool = False
    delay_abort_eval: float = 0.0

    def __post_init__(self) -> None:
        if not self.tag_filter:
            raise ConfigurationError(f"threshold on {self.metric} must reference at least one tag")
        allowed = _METRIC_STATISTICS.get(self.metric)
        if allowed is None:
            raise ConfigurationError(f"unknown threshold metric {self.metric!r}")
        if self.statistic not in allowed:
            raise ConfigurationError(
                f"statistic {self.statistic!r} is not supported for {self.metric}"
            )
        if self.statistic == "p":
            if self.percentile is None or not 0 <= self.percentile <= 100:
                raise ConfigurationError("percentile must be within [0, 100]")

    @property
    def expression(self) -> str:
        if self.statistic == "p":
            stat = f"p({self.percentile:g})"
        else:
            stat = self.statistic
        return f"{stat}{self.comparator.value}{self.bound:g}"

    @property
    def tag_label(self) -> str:
        return ",".join(f"{key}:{value}" for key, value in self.tag_filter)

    def describe(self) -> str:
        return f"{self.metric}{{{self.tag_label}}} {self.expression}"

    def observe(self, stats: "TagStats") -> float:
        if self.metric == METRIC_FAILED:
            return stats.failure_rate
        if self.metric == METRIC_REQS:
            return float(stats.count)
        if self.statistic == "p":
            return stats.percentile(self.percentile)
        if self.statistic == "avg":
            return stats.mean()
        if self.statistic == "min":
            return stats.minimum()
        if self.statistic == "max":
            return stats.maximum()
        return stats.percentile(50.0)


@dataclass(frozen=True)
class RuleResult:
    rule: ThresholdRule
    status: RuleStatus
    observed: float | None
    sample_count: int


@dataclass
class RunVerdict:
    results: dict[ThresholdRule, RuleResult] = field(default_factory=dict)

    @property
    def overall(self) -> RuleStatus:
        statuses = [result.status for result in self.results.values()]
        if any(status is RuleStatus.FAIL for status in statuses):
            return RuleStatus.FAIL
        if any(status is RuleStatus.INCONCLUSIVE for status in statuses):
            return RuleStatus.INCONCLUSIVE
        return RuleStatus.PASS

    @property
    def passed(self) -> bool:
        return self.overall is RuleStatus.PASS

    def with_status(self, status: RuleStatus) -> list[RuleResult]:
        return [result for result in self.results.values() if result.status is status]

    def to_dict(self) -> dict[str, Any]:
        return {
            "overall": self.overall.value,
            "rules": [
                {
                    "rule": result.rule.describe(),
                    "status": result.status.value,
                    "observed": result.observed,
                    "samples": result.sample_count,
                }
                for result in self.results.values()
            ],
        }


class ThresholdEvaluator:
    """Evaluates threshold rules against a metrics aggregator."""

    def __init__(self, rules: Iterable[ThresholdRule]) -> None:
        self._rules = tuple(rules)
        _reject_duplicates(self._rules)

    @property
    def rules(self) -> tuple[ThresholdRule, ...]:
        return self._rules

    def evaluate(self, aggregator: "MetricsAggregator") -> RunVerdict:
        verdict = RunVerdict()
        for rule in self._rules:
            stats = aggregator.select(rule.tag_filter)
            if stats.count == 0:
                verdict.results[rule] = RuleResult(rule, RuleStatus.INCONCLUSIVE, None, 0)
                continue
            observed = rule.observe(stats)
            status = RuleStatus.PASS if rule.comparator.holds(observed, rule.bound) else RuleStatus.FAIL
            verdict.results[rule] = RuleResult(rule, status, observed, stats.count)
        return verdict

    def checkpoint(
        self, aggregator: "MetricsAggregator", elapsed_s: float
    ) -> tuple[RunVerdict, list[ThresholdRule]]:
        """Evaluate mid-run and return the rules that demand an abort."""
        verdict = self.evaluate(aggregator)
        aborting = [
            result.rule
            for result in verdict.with_status(RuleStatus.FAIL)
            if result.rule.abort_on_fail and elapsed_s >= result.rule.delay_abort_eval
        ]
        for rule in aborting:
            LOGGER.warning(
                "Threshold %s failed at checkpoint (observed %.2f)",
                rule.describe(),
                verdict.results[rule].observed,
            )
        return verdict, aborting


def parse_expression(
    metric: str,
    tag_filter: tuple[tuple[str, str], ...],
    expression: str,
    abort_on_fail: bool = False,
    delay_abort_eval: float = 0.0,
) -> ThresholdRule:
    match = _EXPRESSION_PATTERN.match(str(expression))
    if match is None:
        raise ConfigurationError(f"invalid threshold expression {expression!r}")
    pct = match.group("pct")
    return ThresholdRule(
        tag_filter=tag_filter,
        comparator=Comparator.parse(match.group("op")),
        bound=float(match.group("bound")),
        statistic="p" if pct is not None else match.group("stat"),
        percentile=float(pct) if pct is not None else None,
        metric=metric,
        abort_on_fail=abort_on_fail,
        delay_abort_eval=delay_abort_eval,
    )


def _parse_mapping_form(raw: Mapping[str, Any]) -> list[ThresholdRule]:
    rules: list[ThresholdRule] = []
    for key, expressions in raw.items():
        match = _KEY_PATTERN.match(str(key))
        if match is None:
            raise ConfigurationError(f"invalid threshold key {key!r}")
        metric = match.group("metric")
        tag_filter = parse_tag_filter(match.group("filter"))
        if isinstance(expressions, (str, Mapping)):
            expressions = [expressions]
        elif expressions is not None and not isinstance(expressions, list):
            raise ConfigurationError(f"{key}: expected an expression or a list of expressions")
        for entry in expressions or []:
            if isinstance(entry, Mapping):
                rules.append(
                    parse_expression(
                        metric,
                        tag_filter,
                        entry.get("threshold", ""),
                        abort_on_fail=bool(entry.get("abortOnFail", entry.get("abort_on_fail", False))),
                        delay_abort_eval=parse_duration(
                            entry.get("delayAbortEval", entry.get("delay_abort_eval", 0)),
                            f"{key}.delay_abort_eval",
                        ),
                    )
                )
            else:
                rules.append(parse_expression(metric, tag_filter, entry))
    return rules


def _parse_structured(entry: Any, index: int) -> ThresholdRule:
    if not isinstance(entry, Mapping):
        raise ConfigurationError(f"threshold {index} must be a mapping")
    tag_filter = parse_tag_filter(entry.get("tags", entry.get("tag")))
    metric = str(entry.get("metric", METRIC_DURATION))
    percentile = entry.get("percentile")
    statistic = entry.get("statistic")
    if statistic is None:
        statistic = "p" if percentile is not None or metric == METRIC_DURATION else (
            "rate" if metric == METRIC_FAILED else "count"
        )
    bound = entry.get("bound_ms", entry.get("bound"))
    if bound is None:
        raise ConfigurationError(f"threshold {index} requires a bound")
    try:
        return ThresholdRule(
            tag_filter=tag_filter,
            comparator=Comparator.parse(entry.get("comparator", "<")),
            bound=float(bound),
            statistic=str(statistic),
            percentile=float(percentile) if percentile is not None else (95.0 if statistic == "p" else None),
            metric=metric,
            abort_on_fail=bool(entry.get("abort_on_fail", False)),
            delay_abort_eval=parse_duration(entry.get("delay_abort_eval", 0), f"threshold {index}"),
        )
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"threshold {index}: {exc}") from exc


def parse_thresholds(raw: Any) -> list[ThresholdRule]:
    if raw is None:
        return []
    if isinstance(raw, Mapping):
        rules = _parse_mapping_form(raw)
    elif isinstance(raw, list):
        rules = [_parse_structured(entry, index) for index, entry in enumerate(raw)]
    else:
        raise ConfigurationError("thresholds must be a mapping or a list")
    _reject_duplicates(rules)
    return rules


def _reject_duplicates(rules: Iterable[ThresholdRule]) -> None:
    seen: set[ThresholdRule] = set()
    for rule in rules:
        if rule in seen:
            raise ConfigurationError(f"duplicate threshold {rule.describe()}")
        seen.add(rule)
