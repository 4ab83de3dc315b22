from __future__ import annotations

import calendar
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any
from urllib.parse import parse_qs, urlparse
from zoneinfo import ZoneInfo

import httpx
from bs4 import BeautifulSoup, Comment, NavigableString, Tag

from obitwatch.core.http import UpstreamError, request_with_retry
from obitwatch.core.ids import canonical_external_id
from obitwatch.services.dedup import bucket_key, previous_bucket

logger = logging.getLogger(__name__)

ENTRY_TAIL_RE = re.compile(r"^,\s*(\d{1,3})\s*,\s*(.*?)(?:\.\s*)?$", re.DOTALL)
WHITESPACE_RE = re.compile(r"\s+")


class SourceFetchError(Exception):
    """Raised when a source page cannot be fetched within the retry budget."""


@dataclass(slots=True, frozen=True)
class SourceBucket:
    year: int
    month: int

    @property
    def key(self) -> str:
        return bucket_key(self.year, self.month)


def buckets_to_scan(today: date, *, lookback_days: int) -> list[SourceBucket]:
    """Current month, plus the previous month during the first ``lookback_days`` days."""
    buckets = [SourceBucket(year=today.year, month=today.month)]
    if lookback_days > 0 and today.day <= lookback_days:
        year, month = previous_bucket(today)
        buckets.append(SourceBucket(year=year, month=month))
    return buckets


def local_today(timezone_name: str, now: datetime | None = None) -> date:
    zone = ZoneInfo(timezone_name)
    current = now.astimezone(zone) if now is not None else datetime.now(zone)
    return current.date()


def source_url(template: str, bucket: SourceBucket) -> str:
    return template.format(
        year=bucket.year,
        month=bucket.month,
        month_name=calendar.month_name[bucket.month],
    )


def _collapse(value: str) -> str:
    return WHITESPACE_RE.sub(" ", value).strip()


def _link_identity(href: str) -> tuple[str, str] | None:
    parsed = urlparse(href)
    if parsed.path.startswith("/wiki/"):
        external_id = canonical_external_id(parsed.path[len("/wiki/") :])
        return (external_id, "resolvable") if external_id else None
    if parsed.path.startswith("/w/index.php"):
        query = parse_qs(parsed.query)
        titles = query.get("title")
        if not titles or not titles[0].strip():
            return None
        link_kind = "unresolved_stub" if query.get("redlink") else "resolvable"
        return canonical_external_id(titles[0]), link_kind
    return None


def _text_after(item: Tag, anchor: Tag) -> str:
    parts: list[str] = []
    passed_anchor = False
    for node in item.descendants:
        if node is anchor:
            passed_anchor = True
            continue
        if not passed_anchor or not isinstance(node, NavigableString) or isinstance(node, Comment):
            continue
        if any(parent is anchor for parent in node.parents):
            continue
        parts.append(str(node))
    return _collapse("".join(parts))


def parse_source_page(html: str) -> list[dict[str, Any]]:
    """Extract ``<li><a href=...>Name</a>, age, description.</li>`` entries.

    Anything that does not match that shape is skipped.
    """
    soup = BeautifulSoup(html, "html.parser")
    for footnote in soup.find_all("sup"):
        footnote.decompose()

    records: list[dict[str, Any]] = []
    for item in soup.find_all("li"):
        anchor = item.find("a", href=True)
        if anchor is None:
            continue
        identity = _link_identity(anchor["href"])
        if identity is None:
            continue
        name = _collapse(anchor.get_text())
        match = ENTRY_TAIL_RE.match(_text_after(item, anchor))
        if not name or not match:
            continue
        external_id, link_kind = identity
        records.append(
            {
                "name": name,
                "external_id": external_id,
                "link_kind": link_kind,
                "age": int(match.group(1)),
                "description": _collapse(match.group(2)) or None,
                "cause": None,
            }
        )
    return records


class SourceClient:
    def __init__(
        self,
        *,
        url_template: str,
        user_agent: str,
        timeout_seconds: float = 15.0,
        retries: int = 2,
        backoff_seconds: float = 0.4,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url_template = url_template
        self.user_agent = user_agent
        self.timeout_seconds = timeout_seconds
        self.retries = retries
        self.backoff_seconds = backoff_seconds
        self._client = client

    async def fetch_bucket(self, bucket: SourceBucket) -> list[dict[str, Any]]:
        url = source_url(self.url_template, bucket)
        if self._client is not None:
            html = await self._fetch(self._client, url)
        else:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, follow_redirects=True) as client:
                html = await self._fetch(client, url)
        records = parse_source_page(html)
        logger.info("source parsed bucket=%s url=%s records=%s", bucket.key, url, len(records))
        return records

    async def _fetch(self, client: httpx.AsyncClient, url: str) -> str:
        try:
            response = await request_with_retry(
                client,
                "GET",
                url,
                retries=self.retries,
                backoff_seconds=self.backoff_seconds,
                headers={"User-Agent": self.user_agent},
            )
        except UpstreamError as exc:
            raise SourceFetchError(str(exc)) from exc
        if response.status_code == 404:
            # Month pages are created lazily; an absent page has no entries yet.
            logger.info("source page missing url=%s", url)
            return ""
        if response.status_code >= 400:
            raise SourceFetchError(f"source fetch failed {response.status_code}: {url}")
        return response.text
