from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import date

logger = logging.getLogger(__name__)


def bucket_key(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


def previous_bucket(day: date) -> tuple[int, int]:
    if day.month == 1:
        return day.year - 1, 12
    return day.year, day.month - 1


def unique_sorted(items: Iterable[str]) -> list[str]:
    """Strip, drop empties, dedupe and sort by code point."""
    return sorted({item.strip() for item in items if item and item.strip()})


def diff_sorted(existing: Sequence[str], scraped: Sequence[str]) -> list[str]:
    """Members of ``scraped`` missing from ``existing``; both inputs sorted and unique."""
    newly_seen: list[str] = []
    i = j = 0
    while j < len(scraped):
        if i >= len(existing):
            newly_seen.extend(scraped[j:])
            break
        current = existing[i]
        candidate = scraped[j]
        if current == candidate:
            i += 1
            j += 1
        elif current < candidate:
            i += 1
        else:
            newly_seen.append(candidate)
            j += 1
    return newly_seen


def merge_sorted(existing: Sequence[str], delta: Sequence[str]) -> list[str]:
    """Sorted union of two sorted unique sequences."""
    merged: list[str] = []
    i = j = 0
    while i < len(existing) and j < len(delta):
        left = existing[i]
        right = delta[j]
        if left == right:
            merged.append(left)
            i += 1
            j += 1
        elif left < right:
            merged.append(left)
            i += 1
        else:
            merged.append(right)
            j += 1
    merged.extend(existing[i:])
    merged.extend(delta[j:])
    return merged


class DedupCache:
    """Month-bucketed set of external ids already processed.

    The bucket lock is advisory: writers that miss it skip the cache update and
    rely on idempotent record inserts instead.
    """

    def __init__(self, repository, *, lock_ttl_seconds: int = 300) -> None:
        self.repository = repository
        self.lock_ttl_seconds = lock_ttl_seconds

    async def load(self, key: str) -> list[str]:
        return unique_sorted(await self.repository.get_dedup_bucket(key))

    async def newly_seen(self, key: str, scraped_ids: Iterable[str]) -> list[str]:
        return diff_sorted(await self.load(key), unique_sorted(scraped_ids))

    async def remember(self, key: str, delta: Iterable[str]) -> bool:
        delta_sorted = unique_sorted(delta)
        if not delta_sorted:
            return True

        holder = await self.repository.acquire_lock(key, ttl_seconds=self.lock_ttl_seconds)
        if holder is None:
            logger.info("dedup bucket locked; skipping cache update bucket=%s delta=%s", key, len(delta_sorted))
            return False

        try:
            current = await self.load(key)
            merged = merge_sorted(current, delta_sorted)
            await self.repository.put_dedup_bucket(key, merged)
        finally:
            await self.repository.release_lock(key, holder)

        logger.info("dedup bucket updated bucket=%s size=%s added=%s", key, len(merged), len(merged) - len(current))
        return True
