from __future__ import annotations


def is_due(last_run_at: float | None, interval_seconds: float, now: float) -> bool:
    if last_run_at is None:
        return True
    return now - last_run_at >= interval_seconds


def next_action(
    *,
    now: float,
    last_scan_at: float | None,
    last_drain_at: float | None,
    scan_interval_seconds: float,
    drain_interval_seconds: float,
) -> str | None:
    """Pick ``scan`` or ``drain`` for this tick, or None when nothing is due.

    A scan drains pending records as well, so a due scan wins over a due drain.
    """
    if is_due(last_scan_at, scan_interval_seconds, now):
        return "scan"
    if drain_interval_seconds > 0 and is_due(last_drain_at, drain_interval_seconds, now):
        return "drain"
    return None


def backoff_delay(previous: float, *, base: float, ceiling: float, jitter: float) -> float:
    """Grow the retry delay roughly 2x per failure with jitter, capped at ``ceiling``."""
    start = max(previous, base)
    return min(start * (2.0 + jitter), ceiling)
