import asyncio
import json

import httpx
import pytest

from obitwatch_worker.services.run_client import RunClient, RunRejectedError


def _call(handler, action):
    async def _inner():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            run_client = RunClient("http://api.test/", "s3cret", client=client)
            return await action(run_client)

    return asyncio.run(_inner())


def test_scan_posts_run_with_bearer() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"ok": True, "scanned": 3, "inserted": 1})

    result = _call(handler, lambda client: client.scan(pending_limit=20))

    assert result["inserted"] == 1
    assert seen["url"] == "http://api.test/run"
    assert seen["auth"] == "Bearer s3cret"
    assert seen["body"] == {"pending_limit": 20}


def test_drain_sets_retry_pending() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"ok": True, "mode": "drain"})

    _call(handler, lambda client: client.drain(drain_all=True))

    assert seen["body"] == {"retry_pending": True, "drain_all": True}


def test_rate_limited_run_carries_retry_after() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, headers={"Retry-After": "42"}, json={"detail": "Too Many Requests"})

    with pytest.raises(RunRejectedError) as exc_info:
        _call(handler, lambda client: client.scan())

    assert exc_info.value.status_code == 429
    assert exc_info.value.retry_after == 42.0


def test_server_error_raises_http_error() -> None:
    with pytest.raises(httpx.HTTPStatusError):
        _call(lambda request: httpx.Response(500, json={"ok": False}), lambda client: client.scan())
