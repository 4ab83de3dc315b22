from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from obitwatch.core.ids import build_alias_map, resolve_alias

logger = logging.getLogger(__name__)

CODE_FENCE_RE = re.compile(r"^```(?:json)?\s*([\s\S]*?)\s*```$", re.IGNORECASE)
MAX_REASON_CHARS = 200
ID_KEYS = ("external_id", "wiki_path", "wikiPath", "wiki_id", "wikiId", "wiki", "id")
CAUSE_KEYS = ("cause of death", "cause_of_death", "causeOfDeath", "cause")


@dataclass(slots=True)
class ReconcileSummary:
    approved: int = 0
    rejected: int = 0
    errored: int = 0
    notified: int = 0
    unmatched: int = 0

    def add(self, other: ReconcileSummary) -> None:
        self.approved += other.approved
        self.rejected += other.rejected
        self.errored += other.errored
        self.notified += other.notified
        self.unmatched += other.unmatched

    def as_dict(self) -> dict[str, int]:
        return {
            "approved": self.approved,
            "rejected": self.rejected,
            "errored": self.errored,
            "notified": self.notified,
            "unmatched": self.unmatched,
        }


def strip_code_fences(text: str) -> str:
    match = CODE_FENCE_RE.match(text.strip())
    return match.group(1) if match else text


def extract_json(text: str) -> Any | None:
    """Parse model output: whole text, then the outermost object, then the outermost array."""
    trimmed = strip_code_fences(text or "").strip()
    if not trimmed:
        return None
    try:
        return json.loads(trimmed)
    except json.JSONDecodeError:
        pass

    for opener, closer in (("{", "}"), ("[", "]")):
        start = trimmed.find(opener)
        end = trimmed.rfind(closer)
        if start != -1 and end > start:
            try:
                return json.loads(trimmed[start : end + 1])
            except json.JSONDecodeError:
                continue
    return None


def coalesce_output(raw: Any) -> str:
    """Flatten string or nested-list-of-strings provider output into one string."""
    if isinstance(raw, str):
        return raw
    if isinstance(raw, list):
        return "".join(coalesce_output(item) for item in raw)
    return ""


def normalize_items(value: Any) -> list[dict[str, Any]]:
    if isinstance(value, list):
        return [item for item in value if isinstance(item, dict)]
    if isinstance(value, dict) and value:
        return [value]
    return []


def split_verdict(parsed: Any) -> tuple[list[dict[str, Any]], list[Any]]:
    """Return (selected, rejected) from a flat list or a ``{selected, rejected}`` object."""
    if isinstance(parsed, list):
        return normalize_items(parsed), []
    if isinstance(parsed, dict):
        if "selected" in parsed or "rejected" in parsed:
            rejected = parsed.get("rejected")
            if isinstance(rejected, dict):
                rejected = [rejected]
            return normalize_items(parsed.get("selected")), rejected if isinstance(rejected, list) else []
        return normalize_items(parsed), []
    return [], []


def sanitize_reason(value: Any) -> str | None:
    if value is None:
        return None
    collapsed = " ".join(str(value).split())
    return collapsed[:MAX_REASON_CHARS] or None


def _text(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def _age(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    text = _text(value)
    if text and text.isdigit():
        return int(text)
    return None


def _item_id(item: dict[str, Any]) -> str | None:
    for key in ID_KEYS:
        text = _text(item.get(key))
        if text:
            return text
    return None


def _item_cause(item: dict[str, Any]) -> str | None:
    for key in CAUSE_KEYS:
        text = _text(item.get(key))
        if text:
            return None if text.lower() == "unknown" else text
    return None


class VerdictReconciler:
    """Apply a classifier verdict to pending records.

    Every write is guarded on ``verdict = 'pending'`` so an approval, rejection
    or error never overwrites a verdict another delivery already applied.
    """

    def __init__(self, repository, notifier=None) -> None:
        self.repository = repository
        self.notifier = notifier

    async def apply(
        self,
        output_text: str | None,
        candidate_ids: Iterable[str],
        forced_ids: Iterable[str] = (),
    ) -> ReconcileSummary:
        candidates = list(dict.fromkeys(item.strip() for item in candidate_ids if item and item.strip()))
        summary = ReconcileSummary()
        if not candidates:
            return summary

        parsed = extract_json(output_text or "")
        if parsed is None:
            logger.warning(
                "classifier output unparseable; marking candidates errored candidates=%s output=%r",
                len(candidates),
                (output_text or "")[:500],
            )
            return await self.mark_errored(candidates)

        aliases = build_alias_map(candidates)
        forced = {resolve_alias(aliases, item) or item.strip() for item in forced_ids if item and item.strip()}
        selected_items, rejected_items = split_verdict(parsed)

        selected: set[str] = set()
        for item in selected_items:
            raw_id = _item_id(item)
            external_id = resolve_alias(aliases, raw_id) if raw_id else None
            if external_id is None:
                summary.unmatched += 1
                logger.warning("selected item did not match any candidate id=%r", raw_id)
                continue
            selected.add(external_id)
            await self._approve(external_id, item, summary)

        explicitly_rejected: set[str] = set()
        for item in rejected_items:
            if isinstance(item, str):
                raw_id, reason = item, None
            elif isinstance(item, dict):
                raw_id, reason = _item_id(item), sanitize_reason(item.get("reason"))
            else:
                continue
            external_id = resolve_alias(aliases, raw_id) if raw_id else None
            if external_id is None:
                summary.unmatched += 1
                continue
            if external_id in selected or external_id in explicitly_rejected:
                continue
            explicitly_rejected.add(external_id)
            await self._reject(external_id, reason, summary)

        for external_id in candidates:
            if external_id in selected or external_id in explicitly_rejected:
                continue
            if external_id in forced:
                # Omitted forced records stay pending for a later retry.
                logger.info("forced record omitted from verdict; leaving pending id=%s", external_id)
                continue
            await self._reject(external_id, None, summary)

        logger.info(
            "verdict applied candidates=%s approved=%s rejected=%s notified=%s unmatched=%s",
            len(candidates),
            summary.approved,
            summary.rejected,
            summary.notified,
            summary.unmatched,
        )
        return summary

    async def mark_errored(self, candidate_ids: Iterable[str]) -> ReconcileSummary:
        ids = [item for item in candidate_ids if item]
        errored = await self.repository.mark_errored(ids) if ids else []
        return ReconcileSummary(errored=len(errored))

    async def _approve(self, external_id: str, item: dict[str, Any], summary: ReconcileSummary) -> None:
        try:
            record = await self.repository.mark_approved(
                external_id,
                age=_age(item.get("age")),
                description=_text(item.get("description")),
                cause=_item_cause(item),
            )
        except Exception:
            logger.exception("approval failed id=%s", external_id)
            return
        if record is None:
            logger.info("approval skipped; record already left pending id=%s", external_id)
            return
        summary.approved += 1
        if self.notifier is None:
            return
        try:
            await self.notifier.notify(record)
        except Exception:
            logger.exception("notifier failed id=%s", external_id)
            return
        summary.notified += 1

    async def _reject(self, external_id: str, reason: str | None, summary: ReconcileSummary) -> None:
        try:
            changed = await self.repository.mark_rejected(external_id, reason)
        except Exception:
            logger.exception("rejection failed id=%s", external_id)
            return
        if changed:
            summary.rejected += 1
