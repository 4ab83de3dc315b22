from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from obitwatch.core.config import get_settings
from obitwatch.core.ids import id_variants

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


VERDICTS = {"pending", "approved", "rejected", "skipped", "errored"}
LINK_KINDS = {"resolvable", "unresolved_stub"}
FIELDS_PER_ROW = 6
MAX_REASON_CHARS = 200

RECORD_COLUMNS = """
  id,
  name,
  external_id,
  link_kind,
  age,
  description,
  cause,
  verdict,
  rejection_reason,
  verdict_at,
  created_at
"""


@dataclass(slots=True)
class BatchInsertResult:
    inserted: list[dict[str, Any]] = field(default_factory=list)
    attempted: int = 0
    failed_chunks: int = 0
    failed_rows: int = 0

    @property
    def partial(self) -> bool:
        return self.failed_chunks > 0


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        parameter_limit: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.parameter_limit = max(FIELDS_PER_ROW, parameter_limit)
        self._pool: asyncpg.Pool | None = None

    @property
    def chunk_size(self) -> int:
        return max(1, self.parameter_limit // FIELDS_PER_ROW)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def insert_records(self, candidates: Sequence[Mapping[str, Any]]) -> BatchInsertResult:
        """Insert records whose external id is new and return exactly the inserted rows.

        Each chunk runs as its own statement so a failing chunk is counted in
        ``failed_chunks`` while the others still land.
        """
        rows = self.normalize_candidates(candidates)
        result = BatchInsertResult(attempted=len(rows))
        if not rows:
            return result

        pool = await self._get_pool()
        chunk_size = self.chunk_size
        async with pool.acquire() as conn:
            for offset in range(0, len(rows), chunk_size):
                chunk = rows[offset : offset + chunk_size]
                statement, params = self._build_insert_statement(chunk)
                try:
                    async with conn.transaction():
                        inserted = await conn.fetch(statement, *params)
                except (pg_exc.PostgresError, pg_exc.InterfaceError, OSError):
                    result.failed_chunks += 1
                    result.failed_rows += len(chunk)
                    logger.exception(
                        "record insert chunk failed offset=%s size=%s",
                        offset,
                        len(chunk),
                    )
                    continue
                result.inserted.extend(self._record_row_to_dict(row) for row in inserted)

        logger.info(
            "record insert attempted=%s inserted=%s failed_chunks=%s",
            result.attempted,
            len(result.inserted),
            result.failed_chunks,
        )
        return result

    def normalize_candidates(self, candidates: Sequence[Mapping[str, Any]]) -> list[dict[str, Any]]:
        rows: list[dict[str, Any]] = []
        seen: set[str] = set()
        for candidate in candidates:
            external_id = self._coerce_text(candidate.get("external_id"))
            name = self._coerce_text(candidate.get("name"))
            if not external_id or not name or external_id in seen:
                continue
            seen.add(external_id)
            link_kind = self._coerce_text(candidate.get("link_kind")) or "resolvable"
            if link_kind not in LINK_KINDS:
                raise RepositoryValidationError(f"unsupported link_kind: {link_kind}")
            rows.append(
                {
                    "name": name,
                    "external_id": external_id,
                    "link_kind": link_kind,
                    "age": self._coerce_int(candidate.get("age")),
                    "description": self._coerce_text(candidate.get("description")),
                    "cause": self._coerce_text(candidate.get("cause")),
                }
            )
        return rows

    @staticmethod
    def _build_insert_statement(chunk: Sequence[Mapping[str, Any]]) -> tuple[str, list[Any]]:
        placeholders: list[str] = []
        params: list[Any] = []
        for index, row in enumerate(chunk):
            base = index * FIELDS_PER_ROW
            placeholders.append(
                f"(${base + 1}, ${base + 2}, ${base + 3}, ${base + 4}::int, ${base + 5}, ${base + 6}, 'pending')"
            )
            params.extend(
                [
                    row["name"],
                    row["external_id"],
                    row["link_kind"],
                    row["age"],
                    row["description"],
                    row["cause"],
                ]
            )
        statement = f"""
            insert into records (name, external_id, link_kind, age, description, cause, verdict)
            values {", ".join(placeholders)}
            on conflict (external_id) do nothing
            returning {RECORD_COLUMNS}
            """
        return statement, params

    async def get_record(self, record_id: int) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(f"select {RECORD_COLUMNS} from records where id = $1", record_id)
        if not row:
            raise RepositoryNotFoundError("record not found")
        return self._record_row_to_dict(row)

    async def list_records(self, *, verdict: str | None, limit: int, offset: int) -> list[dict[str, Any]]:
        if verdict is not None and verdict not in VERDICTS:
            raise RepositoryValidationError(f"unsupported verdict filter: {verdict}")
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {RECORD_COLUMNS}
            from records
            where ($1::text is null or verdict = $1)
            order by created_at desc, id desc
            limit $2 offset $3
            """,
            verdict,
            limit,
            offset,
        )
        return [self._record_row_to_dict(row) for row in rows]

    async def get_records_by_ids(self, record_ids: Iterable[int]) -> list[dict[str, Any]]:
        ids = sorted({int(record_id) for record_id in record_ids})
        if not ids:
            return []
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"select {RECORD_COLUMNS} from records where id = any($1::bigint[]) order by id",
            ids,
        )
        return [self._record_row_to_dict(row) for row in rows]

    async def get_records_by_external_ids(self, raw_ids: Iterable[str]) -> list[dict[str, Any]]:
        """Look up records by any spelling variant of their external id."""
        lookup: list[str] = []
        for raw_id in raw_ids:
            for variant in id_variants(raw_id):
                if variant not in lookup:
                    lookup.append(variant)
        if not lookup:
            return []
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"select {RECORD_COLUMNS} from records where external_id = any($1::text[]) order by id",
            lookup,
        )
        seen: set[int] = set()
        records: list[dict[str, Any]] = []
        for row in rows:
            if row["id"] in seen:
                continue
            seen.add(row["id"])
            records.append(self._record_row_to_dict(row))
        return records

    async def list_pending_records(
        self,
        *,
        limit: int,
        exclude_external_ids: Iterable[str] = (),
    ) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {RECORD_COLUMNS}
            from records
            where verdict = 'pending'
              and not (external_id = any($2::text[]))
            order by created_at asc, id asc
            limit $1
            """,
            max(0, limit),
            list(exclude_external_ids),
        )
        return [self._record_row_to_dict(row) for row in rows]

    async def list_approved_records(
        self,
        *,
        limit: int,
        before: tuple[datetime, int] | None = None,
    ) -> list[dict[str, Any]]:
        """Newest approvals first; ``before`` is the ``(verdict_at, id)`` of the last row already seen."""
        before_at, before_id = before if before is not None else (None, None)
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {RECORD_COLUMNS}
            from records
            where verdict = 'approved'
              and verdict_at is not null
              and ($2::timestamptz is null or (verdict_at, id) < ($2::timestamptz, $3::bigint))
            order by verdict_at desc, id desc
            limit $1
            """,
            max(0, limit),
            before_at,
            before_id,
        )
        return [self._record_row_to_dict(row) for row in rows]

    async def mark_approved(
        self,
        external_id: str,
        *,
        age: int | None = None,
        description: str | None = None,
        cause: str | None = None,
    ) -> dict[str, Any] | None:
        """Approve a pending record; returns the updated row, or None if it had already left pending."""
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update records
            set
              verdict = 'approved',
              verdict_at = now(),
              rejection_reason = null,
              age = coalesce($2::int, age),
              description = coalesce($3, description),
              cause = coalesce($4, cause)
            where external_id = $1
              and verdict = 'pending'
            returning {RECORD_COLUMNS}
            """,
            external_id,
            age,
            self._coerce_text(description),
            self._coerce_text(cause),
        )
        return self._record_row_to_dict(row) if row else None

    async def mark_rejected(self, external_id: str, reason: str | None = None) -> bool:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            update records
            set
              verdict = 'rejected',
              verdict_at = now(),
              rejection_reason = $2
            where external_id = $1
              and verdict = 'pending'
            returning id
            """,
            external_id,
            self._truncate_reason(reason),
        )
        return row is not None

    async def mark_errored(self, external_ids: Iterable[str]) -> list[str]:
        ids = [item for item in dict.fromkeys(external_ids) if item]
        if not ids:
            return []
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            update records
            set
              verdict = 'errored',
              verdict_at = now()
            where external_id = any($1::text[])
              and verdict = 'pending'
            returning external_id
            """,
            ids,
        )
        return [row["external_id"] for row in rows]

    async def reject_record(self, record_id: int, reason: str | None) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                current = await conn.fetchrow(
                    "select verdict from records where id = $1 for update",
                    record_id,
                )
                if not current:
                    raise RepositoryNotFoundError("record not found")
                if current["verdict"] != "pending":
                    raise RepositoryConflictError(f"record verdict is already {current['verdict']}")
                row = await conn.fetchrow(
                    f"""
                    update records
                    set
                      verdict = 'rejected',
                      verdict_at = now(),
                      rejection_reason = $2
                    where id = $1
                    returning {RECORD_COLUMNS}
                    """,
                    record_id,
                    self._truncate_reason(reason),
                )
        return self._record_row_to_dict(row)

    async def increment_rate_counter(
        self,
        *,
        scope: str,
        identifier: str,
        window_seconds: int,
        window_start: int,
    ) -> int:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            insert into rate_counters (scope, identifier, window_seconds, window_start, count)
            values ($1, $2, $3, $4, 1)
            on conflict (scope, identifier, window_seconds) do update
            set
              count = case
                when rate_counters.window_start = excluded.window_start then rate_counters.count + 1
                else 1
              end,
              window_start = excluded.window_start
            returning count
            """,
            scope,
            identifier,
            window_seconds,
            window_start,
        )
        return int(row["count"])

    async def get_dedup_bucket(self, bucket_key: str) -> list[str]:
        pool = await self._get_pool()
        row = await pool.fetchrow("select members from dedup_buckets where bucket_key = $1", bucket_key)
        if not row:
            return []
        return list(row["members"] or [])

    async def put_dedup_bucket(self, bucket_key: str, members: Sequence[str]) -> None:
        """Store the union of ``members`` and whatever the bucket already holds."""
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into dedup_buckets (bucket_key, members, updated_at)
            values ($1, $2::text[], now())
            on conflict (bucket_key) do update
            set
              members = (
                select coalesce(array_agg(merged.member order by merged.member collate "C"), '{}'::text[])
                from (
                  select distinct member
                  from unnest(dedup_buckets.members || excluded.members) as item(member)
                ) as merged
              ),
              updated_at = now()
            """,
            bucket_key,
            list(members),
        )

    async def acquire_lock(self, bucket_key: str, *, ttl_seconds: int) -> str | None:
        """Take the advisory marker for a bucket; returns a holder token or None when it is held."""
        holder = str(uuid.uuid4())
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            insert into dedup_locks (bucket_key, holder, acquired_at, expires_at)
            values ($1, $2::uuid, now(), now() + make_interval(secs => $3))
            on conflict (bucket_key) do update
            set
              holder = excluded.holder,
              acquired_at = excluded.acquired_at,
              expires_at = excluded.expires_at
            where dedup_locks.expires_at <= now()
            returning holder::text as holder
            """,
            bucket_key,
            holder,
            float(ttl_seconds),
        )
        return row["holder"] if row else None

    async def release_lock(self, bucket_key: str, holder: str) -> None:
        pool = await self._get_pool()
        await pool.execute(
            "delete from dedup_locks where bucket_key = $1 and holder = $2::uuid",
            bucket_key,
            holder,
        )

    async def get_oauth_token(self, provider: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select provider, ciphertext, iv, expires_at, updated_at
            from oauth_tokens
            where provider = $1
            """,
            provider,
        )
        if not row:
            return None
        return {
            "provider": row["provider"],
            "ciphertext": bytes(row["ciphertext"]),
            "iv": bytes(row["iv"]),
            "expires_at": row["expires_at"],
            "updated_at": row["updated_at"],
        }

    async def save_oauth_token(self, provider: str, *, ciphertext: bytes, iv: bytes, expires_at: datetime) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into oauth_tokens (provider, ciphertext, iv, expires_at, updated_at)
            values ($1, $2, $3, $4, now())
            on conflict (provider) do update
            set
              ciphertext = excluded.ciphertext,
              iv = excluded.iv,
              expires_at = excluded.expires_at,
              updated_at = now()
            """,
            provider,
            ciphertext,
            iv,
            expires_at,
        )

    async def list_subscriber_chat_ids(self, channel: str) -> list[str]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            "select chat_id from subscribers where channel = $1 and enabled order by id",
            channel,
        )
        return [str(row["chat_id"]).strip() for row in rows if str(row["chat_id"]).strip()]

    async def get_subscriber_status(self, channel: str, chat_id: str) -> bool | None:
        """``None`` when the chat never subscribed, else whether alerts are enabled."""
        pool = await self._get_pool()
        row = await pool.fetchrow(
            "select enabled from subscribers where channel = $1 and chat_id = $2",
            channel,
            chat_id,
        )
        return None if row is None else bool(row["enabled"])

    async def subscribe(self, channel: str, chat_id: str) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into subscribers (channel, chat_id, enabled)
            values ($1, $2, true)
            on conflict (channel, chat_id) do update set enabled = true
            """,
            channel,
            chat_id,
        )

    async def unsubscribe(self, channel: str, chat_id: str) -> None:
        pool = await self._get_pool()
        await pool.execute(
            "delete from subscribers where channel = $1 and chat_id = $2",
            channel,
            chat_id,
        )

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("OW_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _record_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": int(row["id"]),
            "name": row["name"],
            "external_id": row["external_id"],
            "link_kind": row["link_kind"],
            "age": row["age"],
            "description": row["description"],
            "cause": row["cause"],
            "verdict": row["verdict"],
            "rejection_reason": row["rejection_reason"],
            "verdict_at": row["verdict_at"],
            "created_at": row["created_at"],
        }

    @staticmethod
    def _truncate_reason(reason: str | None) -> str | None:
        if reason is None:
            return None
        collapsed = " ".join(reason.split())
        return collapsed[:MAX_REASON_CHARS] or None

    @staticmethod
    def _coerce_text(value: Any) -> str | None:
        if value is None:
            return None
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return str(value)

    @staticmethod
    def _coerce_int(value: Any) -> int | None:
        if value is None or isinstance(value, bool):
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        parameter_limit=settings.database_parameter_limit,
    )
