from obitwatch_worker.jobs.schedule import backoff_delay, is_due, next_action


def test_first_tick_runs_a_scan() -> None:
    action = next_action(
        now=10.0,
        last_scan_at=None,
        last_drain_at=None,
        scan_interval_seconds=900.0,
        drain_interval_seconds=300.0,
    )
    assert action == "scan"


def test_drain_runs_between_scans() -> None:
    action = next_action(
        now=400.0,
        last_scan_at=0.0,
        last_drain_at=0.0,
        scan_interval_seconds=900.0,
        drain_interval_seconds=300.0,
    )
    assert action == "drain"


def test_nothing_due() -> None:
    action = next_action(
        now=100.0,
        last_scan_at=0.0,
        last_drain_at=0.0,
        scan_interval_seconds=900.0,
        drain_interval_seconds=300.0,
    )
    assert action is None


def test_drain_disabled_with_zero_interval() -> None:
    assert not is_due(0.0, 900.0, 899.0)
    action = next_action(
        now=500.0,
        last_scan_at=0.0,
        last_drain_at=0.0,
        scan_interval_seconds=900.0,
        drain_interval_seconds=0.0,
    )
    assert action is None


def test_backoff_grows_and_caps() -> None:
    assert backoff_delay(5.0, base=5.0, ceiling=120.0, jitter=0.0) == 10.0
    assert backoff_delay(100.0, base=5.0, ceiling=120.0, jitter=0.5) == 120.0
    assert backoff_delay(0.0, base=5.0, ceiling=120.0, jitter=0.0) == 10.0
