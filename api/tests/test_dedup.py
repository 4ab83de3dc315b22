import asyncio
from datetime import date

from obitwatch.services.dedup import (
    DedupCache,
    bucket_key,
    diff_sorted,
    merge_sorted,
    previous_bucket,
    unique_sorted,
)

EXISTING = ["Alice", "Carol", "Eve"]
SCRAPED = ["Alice", "Bob", "Dave", "Eve", "Zed"]


def test_unique_sorted_strips_dedupes_and_sorts_by_code_point() -> None:
    assert unique_sorted([" b ", "a", "", "B", "a"]) == ["B", "a", "b"]


def test_diff_returns_only_unseen_ids_in_order() -> None:
    assert diff_sorted(EXISTING, SCRAPED) == ["Bob", "Dave", "Zed"]
    assert diff_sorted([], SCRAPED) == SCRAPED
    assert diff_sorted(SCRAPED, SCRAPED) == []


def test_merge_then_diff_is_empty() -> None:
    merged = merge_sorted(EXISTING, diff_sorted(EXISTING, SCRAPED))
    assert diff_sorted(merged, SCRAPED) == []


def test_merge_is_sorted_union() -> None:
    merged = merge_sorted(EXISTING, ["Bob", "Carol", "Zed"])
    assert merged == ["Alice", "Bob", "Carol", "Eve", "Zed"]
    assert merge_sorted(EXISTING, []) == EXISTING
    assert merge_sorted([], EXISTING) == EXISTING


def test_bucket_helpers() -> None:
    assert bucket_key(2025, 3) == "2025-03"
    assert previous_bucket(date(2025, 1, 2)) == (2024, 12)
    assert previous_bucket(date(2025, 7, 2)) == (2025, 6)


def test_remember_merges_into_stored_bucket_and_releases_lock(fake_repo) -> None:
    fake_repo.buckets["2025-03"] = ["Alice"]
    cache = DedupCache(fake_repo)

    assert asyncio.run(cache.remember("2025-03", ["Bob", " Alice "])) is True
    assert fake_repo.buckets["2025-03"] == ["Alice", "Bob"]
    assert fake_repo.locks == {}
    assert asyncio.run(cache.newly_seen("2025-03", ["Bob", "Carol"])) == ["Carol"]


def test_remember_skips_update_when_lock_is_held(fake_repo) -> None:
    fake_repo.locked_buckets.add("2025-03")
    cache = DedupCache(fake_repo)

    assert asyncio.run(cache.remember("2025-03", ["Bob"])) is False
    assert "2025-03" not in fake_repo.buckets
