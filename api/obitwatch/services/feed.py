from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from obitwatch.services.notifier import build_telegram_message, record_url


class InvalidCursorError(ValueError):
    """Raised when a ``before`` cursor cannot be decoded."""


def encode_cursor(verdict_at: datetime, record_id: int) -> str:
    raw = f"{verdict_at.isoformat()}|{record_id}".encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_cursor(cursor: str) -> tuple[datetime, int]:
    padded = cursor.strip() + "=" * (-len(cursor.strip()) % 4)
    try:
        decoded = base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
        stamp, _, record_id = decoded.rpartition("|")
        verdict_at = datetime.fromisoformat(stamp)
        parsed_id = int(record_id)
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise InvalidCursorError("invalid cursor") from exc
    if verdict_at.tzinfo is None:
        verdict_at = verdict_at.replace(tzinfo=timezone.utc)
    return verdict_at, parsed_id


def to_post(record: dict[str, Any]) -> dict[str, Any]:
    return {
        "name": record["name"],
        "external_id": record["external_id"],
        "age": record.get("age"),
        "description": record.get("description"),
        "cause": record.get("cause"),
        "posted_at": record["verdict_at"],
        "url": record_url(record),
        "html": build_telegram_message(record),
    }


@dataclass(slots=True)
class FeedPage:
    items: list[dict[str, Any]] = field(default_factory=list)
    next_before: str | None = None

    @property
    def has_more(self) -> bool:
        return self.next_before is not None


class RecentPostsFeed:
    """Approved records, newest first, paged by an opaque ``(verdict_at, id)`` cursor."""

    def __init__(self, repository, page_size: int = 25) -> None:
        self.repository = repository
        self.page_size = max(1, page_size)

    async def page(self, before: str | None = None) -> FeedPage:
        position = decode_cursor(before) if before else None
        # One extra row tells whether another page exists.
        rows = await self.repository.list_approved_records(limit=self.page_size + 1, before=position)
        visible = rows[: self.page_size]
        next_before = None
        if len(rows) > self.page_size and visible:
            last = visible[-1]
            next_before = encode_cursor(last["verdict_at"], last["id"])
        return FeedPage(items=[to_post(row) for row in visible], next_before=next_before)
