from __future__ import annotations

import os
import uuid
from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

# Keep the tracer provider out of route tests.
os.environ.setdefault("OW_OTEL_ENABLED", "false")

from obitwatch.core.ids import id_variants  # noqa: E402
from obitwatch.services.repository import (  # noqa: E402
    BatchInsertResult,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
)


class FakeRecordRepository:
    """In-memory stand-in for PostgresRepository with the same guarded verdict writes."""

    def __init__(self) -> None:
        self.records: dict[int, dict[str, Any]] = {}
        self.rate_counters: dict[tuple[str, str, int], tuple[int, int]] = {}
        self.buckets: dict[str, list[str]] = {}
        self.locks: dict[str, str] = {}
        self.tokens: dict[str, dict[str, Any]] = {}
        self.subscribers: dict[tuple[str, str], bool] = {}
        self.subscribers_unavailable = False
        self.fail_insert_ids: set[str] = set()
        self.locked_buckets: set[str] = set()
        self._next_id = 1

    def seed(self, external_id: str, *, name: str | None = None, verdict: str = "pending", **fields: Any) -> dict[str, Any]:
        now = datetime.now(timezone.utc) + timedelta(microseconds=self._next_id)
        row = {
            "id": self._next_id,
            "name": name or external_id.replace("_", " "),
            "external_id": external_id,
            "link_kind": fields.get("link_kind", "resolvable"),
            "age": fields.get("age"),
            "description": fields.get("description"),
            "cause": fields.get("cause"),
            "verdict": verdict,
            "rejection_reason": fields.get("rejection_reason"),
            "verdict_at": None if verdict == "pending" else now,
            "created_at": now,
        }
        self.records[row["id"]] = row
        self._next_id += 1
        return dict(row)

    def by_external_id(self, external_id: str) -> dict[str, Any] | None:
        for row in self.records.values():
            if row["external_id"] == external_id:
                return row
        return None

    def verdict_of(self, external_id: str) -> str | None:
        row = self.by_external_id(external_id)
        return row["verdict"] if row else None

    async def close(self) -> None:
        return None

    async def insert_records(self, candidates: Sequence[Mapping[str, Any]]) -> BatchInsertResult:
        result = BatchInsertResult(attempted=len(candidates))
        for candidate in candidates:
            external_id = candidate["external_id"]
            if external_id in self.fail_insert_ids:
                result.failed_chunks += 1
                result.failed_rows += 1
                continue
            if self.by_external_id(external_id) is not None:
                continue
            row = self.seed(
                external_id,
                name=candidate["name"],
                link_kind=candidate.get("link_kind", "resolvable"),
                age=candidate.get("age"),
                description=candidate.get("description"),
                cause=candidate.get("cause"),
            )
            result.inserted.append(row)
        return result

    async def get_record(self, record_id: int) -> dict[str, Any]:
        if record_id not in self.records:
            raise RepositoryNotFoundError("record not found")
        return dict(self.records[record_id])

    async def list_records(self, *, verdict: str | None, limit: int, offset: int) -> list[dict[str, Any]]:
        rows = [row for row in self.records.values() if verdict is None or row["verdict"] == verdict]
        rows.sort(key=lambda row: (row["created_at"], row["id"]), reverse=True)
        return [dict(row) for row in rows[offset : offset + limit]]

    async def get_records_by_ids(self, record_ids: Iterable[int]) -> list[dict[str, Any]]:
        return [dict(self.records[record_id]) for record_id in sorted(set(record_ids)) if record_id in self.records]

    async def get_records_by_external_ids(self, raw_ids: Iterable[str]) -> list[dict[str, Any]]:
        lookup = {variant for raw_id in raw_ids for variant in id_variants(raw_id)}
        return [dict(row) for row in sorted(self.records.values(), key=lambda row: row["id"]) if row["external_id"] in lookup]

    async def list_pending_records(
        self,
        *,
        limit: int,
        exclude_external_ids: Iterable[str] = (),
    ) -> list[dict[str, Any]]:
        excluded = set(exclude_external_ids)
        rows = [
            row
            for row in sorted(self.records.values(), key=lambda row: (row["created_at"], row["id"]))
            if row["verdict"] == "pending" and row["external_id"] not in excluded
        ]
        return [dict(row) for row in rows[: max(0, limit)]]

    async def list_approved_records(
        self,
        *,
        limit: int,
        before: tuple[datetime, int] | None = None,
    ) -> list[dict[str, Any]]:
        rows = [
            row
            for row in self.records.values()
            if row["verdict"] == "approved"
            and row["verdict_at"] is not None
            and (before is None or (row["verdict_at"], row["id"]) < before)
        ]
        rows.sort(key=lambda row: (row["verdict_at"], row["id"]), reverse=True)
        return [dict(row) for row in rows[: max(0, limit)]]

    async def mark_approved(
        self,
        external_id: str,
        *,
        age: int | None = None,
        description: str | None = None,
        cause: str | None = None,
    ) -> dict[str, Any] | None:
        row = self.by_external_id(external_id)
        if row is None or row["verdict"] != "pending":
            return None
        row.update(verdict="approved", verdict_at=datetime.now(timezone.utc), rejection_reason=None)
        if age is not None:
            row["age"] = age
        if description:
            row["description"] = description
        if cause:
            row["cause"] = cause
        return dict(row)

    async def mark_rejected(self, external_id: str, reason: str | None = None) -> bool:
        row = self.by_external_id(external_id)
        if row is None or row["verdict"] != "pending":
            return False
        row.update(verdict="rejected", verdict_at=datetime.now(timezone.utc), rejection_reason=reason)
        return True

    async def mark_errored(self, external_ids: Iterable[str]) -> list[str]:
        changed: list[str] = []
        for external_id in dict.fromkeys(external_ids):
            row = self.by_external_id(external_id)
            if row is None or row["verdict"] != "pending":
                continue
            row.update(verdict="errored", verdict_at=datetime.now(timezone.utc))
            changed.append(external_id)
        return changed

    async def reject_record(self, record_id: int, reason: str | None) -> dict[str, Any]:
        row = self.records.get(record_id)
        if row is None:
            raise RepositoryNotFoundError("record not found")
        if row["verdict"] != "pending":
            raise RepositoryConflictError(f"record verdict is already {row['verdict']}")
        row.update(verdict="rejected", verdict_at=datetime.now(timezone.utc), rejection_reason=reason)
        return dict(row)

    async def increment_rate_counter(
        self,
        *,
        scope: str,
        identifier: str,
        window_seconds: int,
        window_start: int,
    ) -> int:
        key = (scope, identifier, window_seconds)
        stored_start, count = self.rate_counters.get(key, (window_start, 0))
        count = count + 1 if stored_start == window_start else 1
        self.rate_counters[key] = (window_start, count)
        return count

    async def get_dedup_bucket(self, bucket_key: str) -> list[str]:
        return list(self.buckets.get(bucket_key, []))

    async def put_dedup_bucket(self, bucket_key: str, members: Sequence[str]) -> None:
        self.buckets[bucket_key] = sorted(set(self.buckets.get(bucket_key, [])) | set(members))

    async def acquire_lock(self, bucket_key: str, *, ttl_seconds: int) -> str | None:
        if bucket_key in self.locked_buckets or bucket_key in self.locks:
            return None
        holder = str(uuid.uuid4())
        self.locks[bucket_key] = holder
        return holder

    async def release_lock(self, bucket_key: str, holder: str) -> None:
        if self.locks.get(bucket_key) == holder:
            del self.locks[bucket_key]

    async def get_oauth_token(self, provider: str) -> dict[str, Any] | None:
        stored = self.tokens.get(provider)
        return dict(stored) if stored else None

    async def save_oauth_token(self, provider: str, *, ciphertext: bytes, iv: bytes, expires_at: datetime) -> None:
        self.tokens[provider] = {
            "provider": provider,
            "ciphertext": ciphertext,
            "iv": iv,
            "expires_at": expires_at,
            "updated_at": datetime.now(timezone.utc),
        }

    async def list_subscriber_chat_ids(self, channel: str) -> list[str]:
        if self.subscribers_unavailable:
            raise RepositoryUnavailableError("database unavailable")
        return [chat_id for (kind, chat_id), enabled in self.subscribers.items() if kind == channel and enabled]

    async def get_subscriber_status(self, channel: str, chat_id: str) -> bool | None:
        if self.subscribers_unavailable:
            raise RepositoryUnavailableError("database unavailable")
        return self.subscribers.get((channel, chat_id))

    async def subscribe(self, channel: str, chat_id: str) -> None:
        self.subscribers[(channel, chat_id)] = True

    async def unsubscribe(self, channel: str, chat_id: str) -> None:
        self.subscribers.pop((channel, chat_id), None)


@pytest.fixture
def fake_repo() -> FakeRecordRepository:
    return FakeRecordRepository()
