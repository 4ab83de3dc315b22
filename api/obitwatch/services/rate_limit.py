from __future__ import annotations

import math
import time
from collections.abc import Sequence
from dataclasses import dataclass


@dataclass(slots=True, frozen=True)
class RateWindow:
    window_seconds: int
    limit: int


@dataclass(slots=True)
class ExceededWindow:
    window_seconds: int
    limit: int
    count: int
    reset_seconds: int


@dataclass(slots=True)
class RateLimitResult:
    allowed: bool
    exceeded: ExceededWindow | None = None
    retry_after: int | None = None


def parse_rate_windows(raw: str) -> list[RateWindow]:
    """Parse ``"60:3,3600:20"`` into windows; malformed pairs are ignored."""
    windows: list[RateWindow] = []
    for item in raw.split(","):
        seconds, separator, limit = item.partition(":")
        if not separator:
            continue
        try:
            window = RateWindow(window_seconds=int(seconds.strip()), limit=int(limit.strip()))
        except ValueError:
            continue
        if window.window_seconds > 0 and window.limit >= 0:
            windows.append(window)
    return windows


def window_start_for(now: float, window_seconds: int) -> int:
    return int(math.floor(now / window_seconds) * window_seconds)


class RateLimiter:
    """Fixed-window counters keyed by scope, identifier and window length."""

    def __init__(self, repository) -> None:
        self.repository = repository

    async def check(
        self,
        scope: str,
        identifier: str,
        windows: Sequence[RateWindow],
        *,
        now: float | None = None,
    ) -> RateLimitResult:
        current = time.time() if now is None else now
        exceeded: list[ExceededWindow] = []
        # Every window is counted, even after one is already exceeded.
        for window in windows:
            start = window_start_for(current, window.window_seconds)
            count = await self.repository.increment_rate_counter(
                scope=scope,
                identifier=identifier,
                window_seconds=window.window_seconds,
                window_start=start,
            )
            if count > window.limit:
                exceeded.append(
                    ExceededWindow(
                        window_seconds=window.window_seconds,
                        limit=window.limit,
                        count=count,
                        reset_seconds=max(0, math.ceil(start + window.window_seconds - current)),
                    )
                )

        if not exceeded:
            return RateLimitResult(allowed=True)
        return RateLimitResult(
            allowed=False,
            exceeded=exceeded[0],
            retry_after=min(item.reset_seconds for item in exceeded),
        )
