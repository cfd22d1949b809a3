from __future__ import annotations

import logging
import threading
from typing import Callable, Mapping, Sequence

from .clock import Clock
from .collector import MetricSample, MetricsAggregator, Outcome
from .config import Pacing, RequestSpec, WorkloadGroup
from .dispatcher import Dispatcher
from .randomizer import Randomizer

LOGGER = logging.getLogger("loadreplay.engine.runtime")


class VirtualUser:
    """One simulated client replaying the workload groups iteration by iteration.

    ``claim`` is consulted before every iteration; returning ``False`` ends
    the virtual user. Retirement is graceful (the running iteration is
    finished), interruption stops between requests and skips any pending
    sleep.
    """

    def __init__(
        self,
        vu_id: int,
        groups: Sequence[WorkloadGroup],
        dispatcher: Dispatcher,
        aggregator: MetricsAggregator,
        pacing: Pacing,
        randomizer: Randomizer,
        clock: Clock,
        claim: Callable[[], bool],
        base_tags: Mapping[str, str] | None = None,
    ) -> None:
        self.id = vu_id
        self.iterations = 0
        self.interrupted_iterations = 0
        self.retired_at: float | None = None

        self._groups = tuple(groups)
        self._dispatcher = dispatcher
        self._aggregator = aggregator
        self._pacing = pacing
        self._randomizer = randomizer
        self._clock = clock
        self._claim = claim
        self._base_tags = dict(base_tags or {})
        self._retire = threading.Event()
        self._interrupt = threading.Event()

    @property
    def retiring(self) -> bool:
        return self._retire.is_set()

    def retire(self) -> None:
        if not self._retire.is_set():
            self.retired_at = self._clock.now()
            self._retire.set()

    def interrupt(self) -> None:
        self.retire()
        self._interrupt.set()

    def run(self) -> None:
        while not self._retire.is_set():
            if not self._claim():
                break
            if self.run_iteration():
                self.iterations += 1
            else:
                self.interrupted_iterations += 1
                break
        LOGGER.debug(
            "VU %d finished after %d iteration(s)", self.id, self.iterations
        )

    def run_iteration(self) -> bool:
        """Replay every group once. Returns ``False`` when interrupted."""
        if self._sleep(self._randomizer.uniform(0.0, self._pacing.startup_jitter)):
            return False

        first = True
        for group in self._groups:
            if group.shuffle:
                order = self._randomizer.shuffled(group.requests)
            else:
                order = list(group.requests)
            for request in order:
                if not first:
                    pause = self._randomizer.uniform(
                        self._pacing.min_sleep, self._pacing.max_sleep
                    )
                    if self._sleep(pause):
                        return False
                first = False
                if self._interrupt.is_set():
                    return False
                self._issue(group, request)

        return not self._sleep(self._pacing.iteration_sleep)

    def _issue(self, group: WorkloadGroup, request: RequestSpec) -> None:
        started = self._clock.now()
        result = self._dispatcher.dispatch(request)
        finished = self._clock.now()
        if not result.ok and self._interrupt.is_set():
            # Cut short by an abort; not a property of the target.
            return

        tags = dict(self._base_tags)
        tags["group"] = group.label
        tags.update(request.tags)
        self._aggregator.record(
            MetricSample(
                tags=tags,
                timestamp=started,
                latency_ms=max(finished - started, 0.0) * 1000.0,
                outcome=Outcome.SUCCESS if result.ok else Outcome.FAILURE,
                vu_id=self.id,
                path=request.target,
                status_code=result.status_code,
                error=result.error,
            )
        )

    def _sleep(self, seconds: float) -> bool:
        if self._interrupt.is_set():
            return True
        if seconds <= 0:
            return False
        return self._clock.sleep(seconds, self._interrupt)
