from __future__ import annotations

import html
import logging
import re
from collections.abc import Sequence
from typing import Any, Protocol
from urllib.parse import quote

import httpx

from obitwatch.core.http import UpstreamError, request_with_retry
from obitwatch.services.repository import RepositoryError
from obitwatch.services.subscriptions import TELEGRAM_CHANNEL
from obitwatch.services.token_vault import TokenVault

logger = logging.getLogger(__name__)

MAX_TELEGRAM_LEN = 4096
TWEET_MAX = 280
TCO_LINK_WEIGHT = 23
CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


class Notifier(Protocol):
    async def notify(self, record: dict[str, Any]) -> None: ...


def record_url(record: dict[str, Any]) -> str:
    external_id = str(record.get("external_id") or "").strip()
    if not external_id:
        return "https://en.wikipedia.org/"
    if record.get("link_kind") == "unresolved_stub":
        return f"https://en.wikipedia.org/w/index.php?title={quote(external_id, safe='_%')}"
    return f"https://en.wikipedia.org/wiki/{quote(external_id, safe='_%()')}"


def _cause(record: dict[str, Any]) -> str:
    cause = str(record.get("cause") or "").strip()
    return "" if cause.lower() == "unknown" else cause


def _escape(value: Any) -> str:
    return html.escape(CONTROL_CHARS_RE.sub("", str(value or "")), quote=False)


def build_telegram_message(record: dict[str, Any]) -> str:
    href = html.escape(record_url(record), quote=True)
    parts = [f'<a href="{href}">{_escape(record.get("name"))}</a>']
    if record.get("age") is not None:
        parts.append(f" ({_escape(record.get('age'))})")
    if record.get("description"):
        parts.append(f" : {_escape(record.get('description'))}")
    if _cause(record):
        parts.append(f" - {_escape(_cause(record))}")
    return truncate_html("".join(parts), MAX_TELEGRAM_LEN)


def truncate_html(message: str, max_len: int = MAX_TELEGRAM_LEN) -> str:
    """Cut at a word boundary without splitting the leading link or an entity."""
    if len(message) <= max_len:
        return message
    allowed = max_len - 1
    anchor_end = message.find("</a>")
    if anchor_end != -1 and allowed <= anchor_end + 4:
        return message[: anchor_end + 4] + "…"
    cut = message.rfind(" ", 0, allowed)
    if cut <= anchor_end + 4:
        cut = allowed
    amp = message.rfind("&", 0, cut)
    if amp != -1 and ";" not in message[amp:cut]:
        cut = amp
    return message[:cut] + "…"


def build_x_status(record: dict[str, Any]) -> str:
    head = str(record.get("name") or "").strip()
    if record.get("age") is not None:
        head = f"{head} ({record['age']})"
    details = [str(record.get("description") or "").strip(), _cause(record)]
    text = " - ".join(part for part in [head, *details] if part)
    room = TWEET_MAX - TCO_LINK_WEIGHT - 1
    if len(text) > room:
        text = text[: room - 1].rstrip() + "…"
    return f"{text} {record_url(record)}"


class TelegramNotifier:
    """Sends alerts to the configured chats plus every enabled subscriber.

    ``subscribers`` is anything with ``list_subscriber_chat_ids(channel)``,
    normally the repository.
    """

    def __init__(
        self,
        *,
        bot_token: str,
        chat_ids: Sequence[str] = (),
        subscribers=None,
        api_base_url: str = "https://api.telegram.org",
        timeout_seconds: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.bot_token = bot_token
        self.chat_ids = [chat_id for chat_id in chat_ids if chat_id]
        self.subscribers = subscribers
        self.api_base_url = api_base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._client = client

    @property
    def send_url(self) -> str:
        return f"{self.api_base_url}/bot{self.bot_token}/sendMessage"

    async def recipients(self) -> list[str]:
        chat_ids = list(self.chat_ids)
        if self.subscribers is not None:
            try:
                chat_ids.extend(await self.subscribers.list_subscriber_chat_ids(TELEGRAM_CHANNEL))
            except RepositoryError as exc:
                logger.warning("telegram subscriber lookup failed; using static chats only error=%s", exc)
        return list(dict.fromkeys(chat_id for chat_id in chat_ids if chat_id))

    async def notify(self, record: dict[str, Any]) -> None:
        recipients = await self.recipients()
        if not recipients:
            logger.info("telegram alert skipped; no recipients id=%s", record.get("external_id"))
            return
        message = build_telegram_message(record)
        if self._client is not None:
            await self._send_all(self._client, recipients, message)
            return
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            await self._send_all(client, recipients, message)

    async def send_text(self, chat_id: str, text: str) -> bool:
        """Send one plain-text reply, escaped for HTML parse mode."""
        message = truncate_html(_escape(text))
        if self._client is not None:
            return await self._send(self._client, chat_id, message)
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            return await self._send(client, chat_id, message)

    async def _send_all(self, client: httpx.AsyncClient, recipients: Sequence[str], message: str) -> None:
        for chat_id in recipients:
            await self._send(client, chat_id, message)

    async def _send(self, client: httpx.AsyncClient, chat_id: str, message: str) -> bool:
        try:
            response = await request_with_retry(
                client,
                "POST",
                self.send_url,
                retries=1,
                json={"chat_id": chat_id, "text": message, "parse_mode": "HTML"},
            )
        except UpstreamError as exc:
            logger.warning("telegram send failed chat_id=%s error=%s", chat_id, exc)
            return False
        if response.status_code >= 400:
            logger.warning("telegram send rejected chat_id=%s status=%s", chat_id, response.status_code)
            return False
        return True


class XNotifier:
    def __init__(
        self,
        *,
        vault: TokenVault,
        tweet_url: str = "https://api.x.com/2/tweets",
        timeout_seconds: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.vault = vault
        self.tweet_url = tweet_url
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def notify(self, record: dict[str, Any]) -> None:
        access_token = await self.vault.get_access_token()
        if not access_token:
            logger.info("x posting skipped; no usable token id=%s", record.get("external_id"))
            return
        payload = {"text": build_x_status(record)}
        headers = {"Authorization": f"Bearer {access_token}"}
        try:
            if self._client is not None:
                response = await request_with_retry(
                    self._client, "POST", self.tweet_url, retries=1, json=payload, headers=headers
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await request_with_retry(
                        client, "POST", self.tweet_url, retries=1, json=payload, headers=headers
                    )
        except UpstreamError as exc:
            logger.warning("x post failed id=%s error=%s", record.get("external_id"), exc)
            return
        if response.status_code >= 400:
            logger.warning("x post rejected id=%s status=%s", record.get("external_id"), response.status_code)


class CompositeNotifier:
    """Fan a record out to every channel; one channel failing never blocks the rest."""

    def __init__(self, notifiers: Sequence[Notifier]) -> None:
        self.notifiers = list(notifiers)

    async def notify(self, record: dict[str, Any]) -> None:
        for notifier in self.notifiers:
            try:
                await notifier.notify(record)
            except Exception:
                logger.exception("notifier %s failed id=%s", type(notifier).__name__, record.get("external_id"))


def parse_chat_ids(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]
