from __future__ import annotations

from typing import Any

import httpx


class RunRejectedError(Exception):
    """Raised when the API refuses a trigger, e.g. rate limited or unauthorized."""

    def __init__(self, status_code: int, detail: str, *, retry_after: float | None = None) -> None:
        super().__init__(f"run rejected status={status_code}: {detail}")
        self.status_code = status_code
        self.retry_after = retry_after


class RunClient:
    def __init__(
        self,
        base_url: str,
        run_secret: str | None,
        *,
        timeout_seconds: float = 300.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {"Authorization": f"Bearer {run_secret}"} if run_secret else {}
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def scan(self, *, pending_limit: int | None = None, drain_all: bool = False) -> dict[str, Any]:
        return await self._trigger(_body(pending_limit=pending_limit, drain_all=drain_all))

    async def drain(self, *, pending_limit: int | None = None, drain_all: bool = False) -> dict[str, Any]:
        return await self._trigger(_body(retry_pending=True, pending_limit=pending_limit, drain_all=drain_all))

    async def _trigger(self, body: dict[str, Any]) -> dict[str, Any]:
        if self._client is not None:
            return await self._post(self._client, body)
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            return await self._post(client, body)

    async def _post(self, client: httpx.AsyncClient, body: dict[str, Any]) -> dict[str, Any]:
        response = await client.post(f"{self.base_url}/run", json=body, headers=self.headers)
        if response.status_code in (401, 403, 429):
            raise RunRejectedError(
                response.status_code,
                response.text[:200],
                retry_after=_retry_after(response.headers.get("Retry-After")),
            )
        response.raise_for_status()
        return response.json()


def _body(**fields: Any) -> dict[str, Any]:
    return {key: value for key, value in fields.items() if value is not None and value is not False}


def _retry_after(raw: str | None) -> float | None:
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None
