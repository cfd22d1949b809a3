from __future__ import annotations

import itertools
import logging
import math
import threading
from dataclasses import asdict, dataclass
from typing import Any, Callable, Sequence

from .clock import Clock, SystemClock
from .collector import MetricsAggregator
from .config import ExecutorKind, Pacing, ScenarioSpec, WorkloadGroup
from .dispatcher import Dispatcher
from .errors import ConfigurationError
from .randomizer import Randomizer
from .runtime import VirtualUser

LOGGER = logging.getLogger("loadreplay.engine.scheduler")

DEFAULT_TICK_S = 0.05


class IterationCounter:
    """Shared iteration budget claimed with an atomic decrement-and-test."""

    def __init__(self, total: int) -> None:
        if total < 0:
            raise ValueError("iteration budget must be >= 0")
        self._lock = threading.Lock()
        self._remaining = total
        self._claimed = 0

    def claim(self) -> bool:
        with self._lock:
            if self._remaining <= 0:
                return False
            self._remaining -= 1
            self._claimed += 1
            return True

    def exhaust(self) -> int:
        """Withdraw the unclaimed budget and return how much was left."""
        with self._lock:
            left, self._remaining = self._remaining, 0
            return left

    @property
    def remaining(self) -> int:
        with self._lock:
            return self._remaining

    @property
    def claimed(self) -> int:
        with self._lock:
            return self._claimed


def _always() -> bool:
    return True


@dataclass
class ScenarioResult:
    name: str
    executor: str
    iterations: int
    interrupted_iterations: int
    vus_spawned: int
    peak_concurrency: int
    duration_s: float
    aborted: bool
    crashed_vus: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def interpolate_target(previous: int, target: int, fraction: float) -> int:
    """Linear ramp between two targets, never leaving the ``[previous, target]`` envelope."""
    fraction = min(max(fraction, 0.0), 1.0)
    value = previous + (target - previous) * fraction
    if target >= previous:
        return int(math.floor(value))
    return int(math.ceil(value))


class ScenarioScheduler:
    """Drives virtual user lifecycles to realise one scenario's executor.

    Every spawn and exit is recorded in ``timeline`` as ``(elapsed_s, live)``
    so that concurrency can be inspected after the run.
    """

    def __init__(
        self,
        spec: ScenarioSpec,
        groups: Sequence[WorkloadGroup],
        dispatcher: Dispatcher,
        aggregator: MetricsAggregator,
        pacing: Pacing | None = None,
        clock: Clock | None = None,
        seed: int | None = None,
        abort_event: threading.Event | None = None,
        tick_s: float = DEFAULT_TICK_S,
    ) -> None:
        spec.validate()
        if not any(group.requests for group in groups):
            raise ConfigurationError(f"{spec.name}: no requests to replay")

        self.spec = spec
        self._groups = tuple(groups)
        self._dispatcher = dispatcher
        self._aggregator = aggregator
        self._pacing = pacing or Pacing()
        self._clock = clock or SystemClock()
        self._seed = seed
        self._abort = abort_event or threading.Event()
        self._stop_event = threading.Event()
        self._tick_s = tick_s
        self._base_tags = {"scenario": spec.name, **spec.tags}

        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._live: dict[int, VirtualUser] = {}
        self._finished: list[VirtualUser] = []
        self._threads: list[threading.Thread] = []
        self._timeline: list[tuple[float, int]] = []
        self._peak = 0
        self._crashed = 0
        self._started_at: float | None = None
        self.counter: IterationCounter | None = None

    # -- public API -----------------------------------------------------------

    def run(self) -> ScenarioResult:
        self._started_at = self._clock.now()
        LOGGER.info(
            "Starting scenario %s (executor=%s)", self.spec.name, self.spec.executor.value
        )
        try:
            if self.spec.executor is ExecutorKind.FIXED_ITERATIONS:
                self._run_fixed_iterations()
            elif self.spec.executor is ExecutorKind.CONSTANT_CONCURRENCY:
                self._run_constant_concurrency()
            else:
                self._run_ramping_concurrency()
        finally:
            self._wind_down()

        result = self._result()
        LOGGER.info(
            "Scenario %s finished: %d iteration(s), %d VU(s) spawned, peak %d, %.2fs%s",
            result.name,
            result.iterations,
            result.vus_spawned,
            result.peak_concurrency,
            result.duration_s,
            " (aborted)" if result.aborted else "",
        )
        return result

    def stop(self) -> None:
        """Ask for a graceful stop: running iterations finish, none start."""
        self._stop_event.set()

    def live_count(self) -> int:
        with self._lock:
            return len(self._live)

    @property
    def timeline(self) -> list[tuple[float, int]]:
        with self._lock:
            return list(self._timeline)

    @property
    def peak_concurrency(self) -> int:
        with self._lock:
            return self._peak

    # -- executors ------------------------------------------------------------

    def _run_fixed_iterations(self) -> None:
        total = self.spec.total_iterations or 0
        self.counter = IterationCounter(total)
        pool = min(self.spec.concurrency or 1, total)
        if pool == 0:
            LOGGER.info("Scenario %s has no iterations to run", self.spec.name)
            return

        for _ in range(pool):
            self._spawn(self.counter.claim)

        deadline = None
        if self.spec.max_duration is not None:
            deadline = self._started_at + self.spec.max_duration
        while self.live_count() > 0:
            if self._halted():
                return
            if deadline is not None and self._clock.now() >= deadline:
                left = self.counter.exhaust()
                LOGGER.warning(
                    "Scenario %s reached max_duration with %d iteration(s) unclaimed",
                    self.spec.name,
                    left,
                )
                return
            self._clock.sleep(self._tick_s, self._abort)

    def _run_constant_concurrency(self) -> None:
        for _ in range(self.spec.concurrency or 0):
            self._spawn(_always)
        self._wait(self.spec.duration or 0.0)

    def _run_ramping_concurrency(self) -> None:
        previous = self.spec.start_concurrency
        self._adjust(previous)
        stage_start = self._started_at
        for index, stage in enumerate(self.spec.stages):
            stage_end = stage_start + stage.duration
            LOGGER.debug(
                "Scenario %s stage %d: %d -> %d over %.2fs",
                self.spec.name,
                index,
                previous,
                stage.target,
                stage.duration,
            )
            while stage.duration > 0:
                now = self._clock.now()
                if now >= stage_end:
                    break
                fraction = (now - stage_start) / stage.duration
                self._adjust(interpolate_target(previous, stage.target, fraction))
                if self._wait(min(self._tick_s, stage_end - now)):
                    return
            self._adjust(stage.target)
            previous = stage.target
            stage_start = stage_end

    # -- lifecycle helpers ----------------------------------------------------

    def _adjust(self, target: int) -> None:
        with self._lock:
            active = [vu for vu in self._live.values() if not vu.retiring]
            excess = len(active) - target
            if excess > 0:
                for vu in sorted(active, key=lambda item: item.id, reverse=True)[:excess]:
                    vu.retire()
                LOGGER.debug("Retired %d VU(s) from %s", excess, self.spec.name)
                return
            # Retiring VUs still count as live, so never spawn past the target.
            to_spawn = min(target - len(active), target - len(self._live))

        for _ in range(max(to_spawn, 0)):
            self._spawn(_always)

    def _spawn(self, claim: Callable[[], bool]) -> VirtualUser:
        vu_id = next(self._ids)
        seed = None if self._seed is None else f"{self._seed}:{self.spec.name}:{vu_id}"
        vu = VirtualUser(
            vu_id=vu_id,
            groups=self._groups,
            dispatcher=self._dispatcher,
            aggregator=self._aggregator,
            pacing=self._pacing,
            randomizer=Randomizer(seed),
            clock=self._clock,
            claim=claim,
            base_tags=self._base_tags,
        )
        thread = threading.Thread(
            target=self._run_vu,
            args=(vu,),
            name=f"{self.spec.name}-vu-{vu_id}",
            daemon=True,
        )
        with self._lock:
            self._live[vu_id] = vu
            self._threads.append(thread)
            self._mark_locked()
        try:
            thread.start()
        except RuntimeError:
            with self._lock:
                self._live.pop(vu_id, None)
                self._threads.remove(thread)
                self._mark_locked()
            raise
        LOGGER.debug("Spawned VU %d for %s", vu_id, self.spec.name)
        return vu

    def _run_vu(self, vu: VirtualUser) -> None:
        try:
            vu.run()
        except Exception:  # noqa: BLE001
            LOGGER.exception("VU %d of %s crashed", vu.id, self.spec.name)
            with self._lock:
                self._crashed += 1
        finally:
            with self._lock:
                self._live.pop(vu.id, None)
                self._finished.append(vu)
                self._mark_locked()

    def _mark_locked(self) -> None:
        live = len(self._live)
        self._peak = max(self._peak, live)
        self._timeline.append((self._clock.now() - (self._started_at or 0.0), live))

    def _halted(self) -> bool:
        return self._abort.is_set() or self._stop_event.is_set()

    def _interrupt_overdue(self) -> None:
        now = self._clock.now()
        with self._lock:
            overdue = [
                vu
                for vu in self._live.values()
                if vu.retired_at is not None and now - vu.retired_at >= self.spec.graceful_stop
            ]
        for vu in overdue:
            LOGGER.debug("Interrupting VU %d of %s after graceful stop", vu.id, self.spec.name)
            vu.interrupt()

    def _wait(self, seconds: float) -> bool:
        """Sleep in ticks; return ``True`` if the scenario was halted meanwhile."""
        deadline = self._clock.now() + seconds
        while True:
            if self._halted():
                return True
            self._interrupt_overdue()
            remaining = deadline - self._clock.now()
            if remaining <= 0:
                return False
            self._clock.sleep(min(self._tick_s, remaining), self._abort)

    def _wind_down(self) -> None:
        with self._lock:
            live = list(self._live.values())
        for vu in live:
            vu.retire()

        while self.live_count() > 0:
            if self._abort.is_set():
                with self._lock:
                    live = list(self._live.values())
                for vu in live:
                    vu.interrupt()
                break
            self._interrupt_overdue()
            self._clock.sleep(self._tick_s, self._abort)

        with self._lock:
            threads = list(self._threads)
        for thread in threads:
            thread.join()

    def _result(self) -> ScenarioResult:
        with self._lock:
            finished = list(self._finished)
            spawned = len(self._threads)
            peak = self._peak
            crashed = self._crashed
        return ScenarioResult(
            name=self.spec.name,
            executor=self.spec.executor.value,
            iterations=sum(vu.iterations for vu in finished),
            interrupted_iterations=sum(vu.interrupted_iterations for vu in finished),
            vus_spawned=spawned,
            peak_concurrency=peak,
            duration_s=self._clock.now() - (self._started_at or self._clock.now()),
            aborted=self._abort.is_set(),
            crashed_vus=crashed,
        )
