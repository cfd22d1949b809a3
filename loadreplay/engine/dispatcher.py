from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Iterable, Protocol

import httpx

from .config import RequestSpec

LOGGER = logging.getLogger("loadreplay.engine.dispatcher")


@dataclass(frozen=True)
class DispatchResult:
    ok: bool
    status_code: int | None = None
    error: str | None = None


class Dispatcher(Protocol):
    """Issues one request; failures are returned, never raised."""

    def dispatch(self, request: RequestSpec) -> DispatchResult:
        ...

    def abort(self) -> None:
        ...

    def close(self) -> None:
        ...


class HttpxDispatcher:
    """Replays catalog requests as GETs against ``base_url`` with httpx."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        expected_statuses: Iterable[int] = (200,),
        transport: httpx.BaseTransport | None = None,
        max_connections: int = 100,
    ) -> None:
        self._expected = frozenset(expected_statuses)
        self._aborted = threading.Event()
        self._client = httpx.Client(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
            limits=httpx.Limits(max_connections=max_connections),
            follow_redirects=True,
        )

    def dispatch(self, request: RequestSpec) -> DispatchResult:
        if self._aborted.is_set():
            return DispatchResult(ok=False, error="aborted")
        try:
            response = self._client.get(request.target)
        except httpx.HTTPError as exc:
            return DispatchResult(ok=False, error=f"{type(exc).__name__}: {exc}")
        except RuntimeError:
            # httpx refuses to send once the client is closed by abort().
            if not self._aborted.is_set():
                raise
            return DispatchResult(ok=False, error="aborted")

        if response.status_code in self._expected:
            return DispatchResult(ok=True, status_code=response.status_code)
        return DispatchResult(
            ok=False,
            status_code=response.status_code,
            error=f"unexpected status {response.status_code}",
        )

    def abort(self) -> None:
        if self._aborted.is_set():
            return
        LOGGER.info("Aborting in-flight requests")
        self._aborted.set()
        self._client.close()

    def close(self) -> None:
        self._client.close()
