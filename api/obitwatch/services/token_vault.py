from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from obitwatch.core.http import UpstreamError, request_with_retry
from obitwatch.core.keys import KeyManager

logger = logging.getLogger(__name__)


class TokenVault:
    """Encrypted OAuth token storage with refresh ahead of expiry."""

    def __init__(
        self,
        repository,
        key_manager: KeyManager,
        *,
        provider: str = "x",
        token_url: str,
        client_id: str | None,
        client_secret: str | None = None,
        refresh_margin_seconds: int = 60,
        timeout_seconds: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.repository = repository
        self.key_manager = key_manager
        self.provider = provider
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_margin = timedelta(seconds=max(0, refresh_margin_seconds))
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def store_token_response(self, payload: dict[str, Any], *, now: datetime | None = None) -> datetime:
        current = now or datetime.now(timezone.utc)
        expires_in = payload.get("expires_in")
        seconds = int(expires_in) if isinstance(expires_in, (int, float)) and expires_in > 0 else 3600
        expires_at = current + timedelta(seconds=seconds)
        ciphertext, iv = self.key_manager.encrypt(json.dumps(payload))
        await self.repository.save_oauth_token(self.provider, ciphertext=ciphertext, iv=iv, expires_at=expires_at)
        return expires_at

    async def get_access_token(self, *, now: datetime | None = None) -> str | None:
        """Return a usable access token, refreshing it first when it is close to expiry."""
        if not self.key_manager.enabled:
            return None
        stored = await self.repository.get_oauth_token(self.provider)
        if stored is None:
            return None

        token = json.loads(self.key_manager.decrypt(stored["ciphertext"], stored["iv"]))
        current = now or datetime.now(timezone.utc)
        access_token = token.get("access_token")
        if access_token and current < stored["expires_at"] - self.refresh_margin:
            return access_token

        refresh_token = token.get("refresh_token")
        if not refresh_token:
            logger.warning("oauth token expired without refresh token provider=%s", self.provider)
            return None
        refreshed = await self._refresh(refresh_token)
        if refreshed is None:
            return None
        # Providers may omit the refresh token when it is unchanged.
        refreshed.setdefault("refresh_token", refresh_token)
        await self.store_token_response(refreshed, now=current)
        return refreshed.get("access_token")

    async def _refresh(self, refresh_token: str) -> dict[str, Any] | None:
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.client_id or "",
        }
        auth = (self.client_id, self.client_secret) if self.client_id and self.client_secret else None
        try:
            if self._client is not None:
                response = await request_with_retry(self._client, "POST", self.token_url, retries=1, data=data, auth=auth)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await request_with_retry(client, "POST", self.token_url, retries=1, data=data, auth=auth)
        except UpstreamError as exc:
            logger.warning("oauth refresh failed provider=%s error=%s", self.provider, exc)
            return None
        if response.status_code != 200:
            logger.warning("oauth refresh rejected provider=%s status=%s", self.provider, response.status_code)
            return None
        return response.json()
