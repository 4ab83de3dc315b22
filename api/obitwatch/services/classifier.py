from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from opentelemetry import trace

from obitwatch.core.ids import build_alias_map, resolve_alias
from obitwatch.services.prompts import build_prompt
from obitwatch.services.providers import ClassificationProvider, ProviderError
from obitwatch.services.verdicts import ReconcileSummary, VerdictReconciler

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class DispatchOutcome:
    """Result of dispatching records through one provider.

    ``mode`` is ``skipped`` (nothing to send), ``inline`` (verdict applied in
    this call), ``queued`` (verdict arrives by webhook) or ``failed`` (no batch
    was accepted; records stay pending).
    """

    provider: str
    model: str
    mode: str = "skipped"
    queued: int = 0
    batches: int = 0
    failed_batches: int = 0
    dispatched_ids: list[str] = field(default_factory=list)
    job_ids: list[str] = field(default_factory=list)
    reconcile: ReconcileSummary = field(default_factory=ReconcileSummary)

    def as_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "model": self.model,
            "mode": self.mode,
            "queued": self.queued,
            "batches": self.batches,
            "failed_batches": self.failed_batches,
            "job_ids": list(self.job_ids),
            **self.reconcile.as_dict(),
        }


def chunked(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    step = max(1, size)
    for offset in range(0, len(items), step):
        yield items[offset : offset + step]


class ClassificationOrchestrator:
    def __init__(self, reconciler: VerdictReconciler) -> None:
        self.reconciler = reconciler

    async def classify(
        self,
        records: Sequence[Mapping[str, Any]],
        *,
        provider: ClassificationProvider,
        model: str | None = None,
        forced_ids: Iterable[str] = (),
        batch_size: int | None = None,
    ) -> DispatchOutcome:
        resolved_model = provider.normalize_model(model)
        outcome = DispatchOutcome(provider=provider.name, model=resolved_model)
        usable = [record for record in records if record.get("external_id")]
        if not usable:
            return outcome

        forced = [item.strip() for item in forced_ids if item and item.strip()]
        size = min(batch_size or provider.max_batch_size, provider.max_batch_size)
        for batch in chunked(usable, size):
            await self._dispatch_batch(batch, provider=provider, model=resolved_model, forced=forced, outcome=outcome)

        if outcome.batches == outcome.failed_batches:
            outcome.mode = "failed"
        else:
            outcome.mode = provider.mode
        return outcome

    async def _dispatch_batch(
        self,
        batch: Sequence[Mapping[str, Any]],
        *,
        provider: ClassificationProvider,
        model: str,
        forced: list[str],
        outcome: DispatchOutcome,
    ) -> None:
        candidate_ids = [str(record["external_id"]) for record in batch]
        aliases = build_alias_map(candidate_ids)
        resolved = (resolve_alias(aliases, item) for item in forced)
        batch_forced = list(dict.fromkeys(match for match in resolved if match))
        prompt = build_prompt(batch, batch_forced)
        outcome.batches += 1

        with tracer.start_as_current_span("classifier.dispatch") as span:
            span.set_attribute("classifier.provider", provider.name)
            span.set_attribute("classifier.model", model)
            span.set_attribute("classifier.batch_size", len(candidate_ids))
            try:
                dispatch = await provider.dispatch(prompt, candidate_ids, batch_forced, model)
            except ProviderError as exc:
                # Not retried here; the records stay pending for the next drain.
                outcome.failed_batches += 1
                logger.warning(
                    "classifier dispatch failed provider=%s model=%s batch=%s error=%s",
                    provider.name,
                    model,
                    len(candidate_ids),
                    exc,
                )
                return

        outcome.dispatched_ids.extend(candidate_ids)
        if dispatch.job_id:
            outcome.job_ids.append(dispatch.job_id)
        if dispatch.mode == "queued":
            outcome.queued += len(candidate_ids)
            return

        summary = await self.reconciler.apply(dispatch.output_text, candidate_ids, batch_forced)
        outcome.reconcile.add(summary)
