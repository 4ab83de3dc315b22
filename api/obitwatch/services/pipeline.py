from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from opentelemetry import trace

from obitwatch.core.config import Settings
from obitwatch.services.classifier import ClassificationOrchestrator, DispatchOutcome
from obitwatch.services.dedup import DedupCache, unique_sorted
from obitwatch.services.drain import DrainSummary, PendingDrain
from obitwatch.services.providers import ClassificationProvider, normalize_provider_name
from obitwatch.services.source import SourceBucket, SourceClient, buckets_to_scan, local_today

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class RunOptions:
    ids: list[int] = field(default_factory=list)
    external_ids: list[str] = field(default_factory=list)
    retry_pending: bool = False
    pending_limit: int | None = None
    drain_all: bool = False
    provider: str | None = None
    model: str | None = None

    @property
    def targeted(self) -> bool:
        return bool(self.ids or self.external_ids)


@dataclass(slots=True)
class BucketScan:
    bucket: str
    scraped: int = 0
    new: int = 0
    inserted: int = 0
    failed_chunks: int = 0
    cache_updated: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "bucket": self.bucket,
            "scraped": self.scraped,
            "new": self.new,
            "inserted": self.inserted,
            "failed_chunks": self.failed_chunks,
            "cache_updated": self.cache_updated,
        }


@dataclass(slots=True)
class RunResult:
    mode: str
    provider: str
    model: str
    buckets: list[BucketScan] = field(default_factory=list)
    matched: int = 0
    dispatch: DispatchOutcome | None = None
    drain: DrainSummary | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "ok": True,
            "mode": self.mode,
            "provider": self.provider,
            "model": self.model,
            "scanned": sum(item.scraped for item in self.buckets),
            "inserted": sum(item.inserted for item in self.buckets),
            "matched": self.matched,
            "buckets": [item.as_dict() for item in self.buckets],
            "dispatch": self.dispatch.as_dict() if self.dispatch else None,
            "drain": self.drain.as_dict() if self.drain else None,
        }


class Pipeline:
    """Scan source buckets, persist what is new, classify it, then drain leftovers."""

    def __init__(
        self,
        *,
        settings: Settings,
        repository,
        source: SourceClient,
        dedup: DedupCache,
        providers: dict[str, ClassificationProvider],
        orchestrator: ClassificationOrchestrator,
        drain: PendingDrain,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.source = source
        self.dedup = dedup
        self.providers = providers
        self.orchestrator = orchestrator
        self.drainer = drain

    def provider_for(self, name: str | None) -> ClassificationProvider:
        return self.providers[normalize_provider_name(name, self.settings.llm_provider)]

    async def run(self, options: RunOptions, *, now: datetime | None = None) -> RunResult:
        provider = self.provider_for(options.provider)
        model = provider.normalize_model(options.model)
        if options.targeted:
            return await self.reprocess(options, provider=provider, model=model)
        if options.retry_pending:
            result = RunResult(mode="drain", provider=provider.name, model=model)
            result.drain = await self._drain(options, provider=provider, model=model, exclude=())
            return result
        return await self.scan(options, provider=provider, model=model, now=now)

    async def scan(
        self,
        options: RunOptions,
        *,
        provider: ClassificationProvider,
        model: str,
        now: datetime | None = None,
    ) -> RunResult:
        result = RunResult(mode="scan", provider=provider.name, model=model)
        today = local_today(self.settings.source_timezone, now)
        inserted: list[dict[str, Any]] = []
        for bucket in buckets_to_scan(today, lookback_days=self.settings.lookback_days):
            scan, rows = await self._scan_bucket(bucket)
            result.buckets.append(scan)
            inserted.extend(rows)

        result.dispatch = await self.orchestrator.classify(inserted, provider=provider, model=model)
        result.drain = await self._drain(
            options,
            provider=provider,
            model=model,
            exclude=[row["external_id"] for row in inserted],
        )
        return result

    async def _scan_bucket(self, bucket: SourceBucket) -> tuple[BucketScan, list[dict[str, Any]]]:
        with tracer.start_as_current_span("pipeline.scan_bucket") as span:
            span.set_attribute("pipeline.bucket", bucket.key)
            scraped = await self.source.fetch_bucket(bucket)
            scan = BucketScan(bucket=bucket.key, scraped=len(scraped))

            new_ids = await self.dedup.newly_seen(bucket.key, (row["external_id"] for row in scraped))
            scan.new = len(new_ids)
            if not new_ids:
                return scan, []

            wanted = set(new_ids)
            batch = await self.repository.insert_records([row for row in scraped if row["external_id"] in wanted])
            scan.inserted = len(batch.inserted)
            scan.failed_chunks = batch.failed_chunks
            if batch.partial:
                logger.warning(
                    "skipping dedup update after partial insert bucket=%s failed_rows=%s",
                    bucket.key,
                    batch.failed_rows,
                )
            else:
                scan.cache_updated = await self.dedup.remember(bucket.key, new_ids)
            span.set_attribute("pipeline.inserted", scan.inserted)
            return scan, batch.inserted

    async def reprocess(
        self,
        options: RunOptions,
        *,
        provider: ClassificationProvider,
        model: str,
    ) -> RunResult:
        """Re-send specific records with all of them in the forced-include set."""
        result = RunResult(mode="reprocess", provider=provider.name, model=model)
        records: list[dict[str, Any]] = []
        if options.ids:
            records.extend(await self.repository.get_records_by_ids(options.ids))
        if options.external_ids:
            records.extend(await self.repository.get_records_by_external_ids(options.external_ids))
        records = _dedupe_records(records)
        result.matched = len(records)
        forced = unique_sorted(record["external_id"] for record in records)
        result.dispatch = await self.orchestrator.classify(records, provider=provider, model=model, forced_ids=forced)
        return result

    async def _drain(
        self,
        options: RunOptions,
        *,
        provider: ClassificationProvider,
        model: str,
        exclude: Sequence[str],
    ) -> DrainSummary:
        limit = options.pending_limit if options.pending_limit is not None else self.settings.pending_limit
        return await self.drainer.drain(
            provider=provider,
            limit=limit,
            batch_size=self.settings.pending_batch_size,
            exclude_ids=exclude,
            model=model,
            drain_all=options.drain_all,
        )


def _dedupe_records(records: Sequence[dict[str, Any]]) -> list[dict[str, Any]]:
    seen: set[int] = set()
    unique: list[dict[str, Any]] = []
    for record in records:
        if record["id"] in seen:
            continue
        seen.add(record["id"])
        unique.append(record)
    return unique
