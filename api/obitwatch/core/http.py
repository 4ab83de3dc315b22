from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class UpstreamError(Exception):
    """Raised when an outbound call fails after the retry budget is spent."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


async def request_with_retry(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    retries: int = 2,
    backoff_seconds: float = 0.4,
    **kwargs: Any,
) -> httpx.Response:
    """Send a request, retrying transport errors and 5xx responses only.

    4xx responses are returned to the caller untouched. The delay before retry
    ``n`` is ``backoff_seconds * n``.
    """
    attempts = max(0, retries) + 1
    last_error: str = "no attempt made"
    last_status: int | None = None
    for attempt in range(attempts):
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            last_error = f"{type(exc).__name__}: {exc}"
            last_status = None
        else:
            if response.status_code < 500:
                return response
            last_error = f"upstream returned {response.status_code}"
            last_status = response.status_code

        if attempt + 1 < attempts:
            delay = backoff_seconds * (attempt + 1)
            logger.warning(
                "request failed method=%s url=%s attempt=%s error=%s; retry in %.2fs",
                method,
                url,
                attempt + 1,
                last_error,
                delay,
            )
            if delay > 0:
                await asyncio.sleep(delay)

    raise UpstreamError(f"{method} {url} failed after {attempts} attempts: {last_error}", status_code=last_status)
