from __future__ import annotations

import threading
import time
from typing import Protocol


class Clock(Protocol):
    def now(self) -> float:
        ...

    def sleep(self, seconds: float, cancel: threading.Event | None = None) -> bool:
        """Suspend for ``seconds``; return ``True`` if ``cancel`` fired first."""
        ...


class SystemClock:
    def now(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float, cancel: threading.Event | None = None) -> bool:
        if cancel is None:
            if seconds > 0:
                time.sleep(seconds)
            return False
        if seconds <= 0:
            return cancel.is_set()
        return cancel.wait(timeout=seconds)
