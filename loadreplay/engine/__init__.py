"""
Scheduling, replay and threshold evaluation core.

The engine has no knowledge of the system under test: endpoint lists come
from a workload catalog and requests are issued through a dispatcher.
"""

from .collector import MetricSample, MetricsAggregator, Outcome, TagStats
from .config import (
    ExecutorKind,
    Pacing,
    RequestSpec,
    ScenarioSpec,
    Stage,
    TestPlan,
    WorkloadCatalog,
    WorkloadGroup,
    load_catalog,
    load_plan,
)
from .errors import ConfigurationError
from .randomizer import Randomizer
from .runner import LoadTestRunner, RunReport
from .scheduler import IterationCounter, ScenarioResult, ScenarioScheduler
from .thresholds import Comparator, RuleStatus, RunVerdict, ThresholdEvaluator, ThresholdRule

__all__ = [
    "Comparator",
    "ConfigurationError",
    "ExecutorKind",
    "IterationCounter",
    "LoadTestRunner",
    "MetricSample",
    "MetricsAggregator",
    "Outcome",
    "Pacing",
    "Randomizer",
    "RequestSpec",
    "RuleStatus",
    "RunReport",
    "RunVerdict",
    "ScenarioResult",
    "ScenarioScheduler",
    "ScenarioSpec",
    "Stage",
    "TagStats",
    "TestPlan",
    "ThresholdEvaluator",
    "ThresholdRule",
    "WorkloadCatalog",
    "WorkloadGroup",
    "load_catalog",
    "load_plan",
]
