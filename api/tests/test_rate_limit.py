import asyncio

from obitwatch.services.rate_limit import RateLimiter, RateWindow, parse_rate_windows, window_start_for

WINDOWS = [RateWindow(window_seconds=60, limit=3), RateWindow(window_seconds=3600, limit=20)]


def test_parse_rate_windows_ignores_malformed_pairs() -> None:
    assert parse_rate_windows("60:3, 3600:20,bogus,10:x") == WINDOWS


def test_window_start_is_floor_aligned() -> None:
    assert window_start_for(125.5, 60) == 120
    assert window_start_for(3599.0, 3600) == 0


def test_fourth_request_in_minute_is_limited_with_retry_after(fake_repo) -> None:
    limiter = RateLimiter(fake_repo)
    now = 1_000_020.0

    for _ in range(3):
        assert asyncio.run(limiter.check("run", "1.2.3.4", WINDOWS, now=now)).allowed

    result = asyncio.run(limiter.check("run", "1.2.3.4", WINDOWS, now=now))
    assert not result.allowed
    assert result.exceeded is not None
    assert result.exceeded.window_seconds == 60
    assert result.exceeded.count == 4
    assert result.retry_after == 60 - (int(now) % 60)


def test_counter_resets_when_window_rolls_over(fake_repo) -> None:
    limiter = RateLimiter(fake_repo)
    start = 1_000_020.0
    for _ in range(4):
        asyncio.run(limiter.check("run", "1.2.3.4", WINDOWS, now=start))

    assert asyncio.run(limiter.check("run", "1.2.3.4", WINDOWS, now=start + 60)).allowed


def test_every_window_is_counted_even_when_one_is_exceeded(fake_repo) -> None:
    limiter = RateLimiter(fake_repo)
    for _ in range(5):
        asyncio.run(limiter.check("run", "5.6.7.8", WINDOWS, now=1_000_020.0))

    assert fake_repo.rate_counters[("run", "5.6.7.8", 3600)][1] == 5


def test_identifiers_are_limited_independently(fake_repo) -> None:
    limiter = RateLimiter(fake_repo)
    for _ in range(4):
        asyncio.run(limiter.check("run", "a", WINDOWS, now=1_000_020.0))

    assert asyncio.run(limiter.check("run", "b", WINDOWS, now=1_000_020.0)).allowed
