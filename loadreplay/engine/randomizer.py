from __future__ import annotations

import random
from typing import Sequence, TypeVar

T = TypeVar("T")


class Randomizer:
    """Per virtual user random source.

    Seeded instances are fully deterministic, which keeps test runs
    reproducible; production runs pass ``seed=None``.
    """

    def __init__(self, seed: int | str | None = None) -> None:
        self._random = random.Random(seed)

    def shuffled(self, items: Sequence[T]) -> list[T]:
        """Return a uniformly random permutation of a copy of ``items``."""
        result = list(items)
        for i in range(len(result) - 1, 0, -1):
            j = self._random.randint(0, i)
            result[i], result[j] = result[j], result[i]
        return result

    def uniform(self, low: float, high: float) -> float:
        if high <= low:
            return low
        return self._random.uniform(low, high)
