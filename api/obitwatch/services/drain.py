from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from obitwatch.services.classifier import ClassificationOrchestrator
from obitwatch.services.providers import ClassificationProvider

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DrainSummary:
    queued: int = 0
    approved: int = 0
    rejected: int = 0
    errored: int = 0
    notified: int = 0
    batches: int = 0
    failed_batches: int = 0
    passes: int = 0
    selected: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "queued": self.queued,
            "approved": self.approved,
            "rejected": self.rejected,
            "errored": self.errored,
            "notified": self.notified,
            "batches": self.batches,
            "failed_batches": self.failed_batches,
            "passes": self.passes,
            "selected": self.selected,
        }


class PendingDrain:
    """Re-dispatch records still waiting for a verdict."""

    def __init__(self, repository, orchestrator: ClassificationOrchestrator) -> None:
        self.repository = repository
        self.orchestrator = orchestrator

    async def drain(
        self,
        *,
        provider: ClassificationProvider,
        limit: int,
        batch_size: int,
        exclude_ids: Iterable[str] = (),
        model: str | None = None,
        drain_all: bool = False,
    ) -> DrainSummary:
        summary = DrainSummary()
        batch_size = max(1, min(batch_size, provider.max_batch_size))
        limit = max(0, min(limit, provider.max_drain_total))
        if drain_all and not provider.is_inline:
            logger.warning("drain_all ignored for queued provider=%s", provider.name)
            drain_all = False
        if limit == 0 and not drain_all:
            return summary
        if drain_all:
            limit = provider.max_drain_total

        attempted: set[str] = {item for item in exclude_ids if item}
        while True:
            pending = await self.repository.list_pending_records(
                limit=limit,
                exclude_external_ids=sorted(attempted),
            )
            if not pending:
                break

            summary.passes += 1
            summary.selected += len(pending)
            attempted.update(record["external_id"] for record in pending)
            outcome = await self.orchestrator.classify(pending, provider=provider, model=model, batch_size=batch_size)
            summary.queued += outcome.queued
            summary.approved += outcome.reconcile.approved
            summary.rejected += outcome.reconcile.rejected
            summary.errored += outcome.reconcile.errored
            summary.notified += outcome.reconcile.notified
            summary.batches += outcome.batches
            summary.failed_batches += outcome.failed_batches

            # Queued providers answer by webhook; another pass would duplicate in-flight jobs.
            if not provider.is_inline or not drain_all:
                break
            if not outcome.dispatched_ids:
                logger.warning("drain pass made no progress; stopping provider=%s", provider.name)
                break

        logger.info(
            "pending drain provider=%s passes=%s selected=%s queued=%s approved=%s rejected=%s errored=%s",
            provider.name,
            summary.passes,
            summary.selected,
            summary.queued,
            summary.approved,
            summary.rejected,
            summary.errored,
        )
        return summary
