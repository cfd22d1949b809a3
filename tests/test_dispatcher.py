"""
HTTP dispatcher tests against an in-process httpx transport.
"""

from __future__ import annotations

import httpx

from loadreplay.engine.config import RequestSpec
from loadreplay.engine.dispatcher import HttpxDispatcher


def _dispatcher(handler, **kwargs) -> HttpxDispatcher:
    return HttpxDispatcher("http://registry.local:8080", transport=httpx.MockTransport(handler), **kwargs)


def test_expected_status_is_success():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, text="ok")

    dispatcher = _dispatcher(handler)
    result = dispatcher.dispatch(RequestSpec(path="/search", query="package=aws&all=true"))
    dispatcher.close()

    assert result.ok is True
    assert result.status_code == 200
    assert result.error is None
    assert seen[0].method == "GET"
    assert seen[0].url.path == "/search"
    assert seen[0].url.params["package"] == "aws"
    assert seen[0].url.params["all"] == "true"


def test_unexpected_status_is_failure():
    dispatcher = _dispatcher(lambda request: httpx.Response(500))

    result = dispatcher.dispatch(RequestSpec(path="/health"))

    assert result.ok is False
    assert result.status_code == 500
    assert "500" in result.error


def test_expected_statuses_are_configurable():
    dispatcher = _dispatcher(lambda request: httpx.Response(204), expected_statuses=(200, 204))

    assert dispatcher.dispatch(RequestSpec(path="/")).ok is True


def test_transport_errors_are_returned_not_raised():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    dispatcher = _dispatcher(handler)

    result = dispatcher.dispatch(RequestSpec(path="/"))

    assert result.ok is False
    assert result.status_code is None
    assert result.error.startswith("ConnectError")


def test_requests_after_abort_fail_fast():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200)

    dispatcher = _dispatcher(handler)
    dispatcher.abort()
    dispatcher.abort()

    result = dispatcher.dispatch(RequestSpec(path="/"))

    assert result.ok is False
    assert result.error == "aborted"
    assert calls == []
