from __future__ import annotations

import asyncio
import logging
import random
import time

from opentelemetry import trace

from obitwatch_worker.core.config import get_settings
from obitwatch_worker.core.telemetry import setup_worker_telemetry, shutdown_worker_telemetry
from obitwatch_worker.jobs.schedule import backoff_delay, next_action
from obitwatch_worker.services.run_client import RunClient, RunRejectedError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def run_worker() -> None:
    settings = get_settings()
    telemetry_runtime = setup_worker_telemetry(settings)
    client = RunClient(
        settings.api_base_url,
        settings.run_secret,
        timeout_seconds=settings.request_timeout_seconds,
    )

    backoff = settings.poll_interval_seconds
    last_scan_at: float | None = None
    last_drain_at: float | None = None

    try:
        while True:
            try:
                with tracer.start_as_current_span("worker.tick") as span:
                    now = time.monotonic()
                    action = next_action(
                        now=now,
                        last_scan_at=last_scan_at,
                        last_drain_at=last_drain_at,
                        scan_interval_seconds=settings.scan_interval_seconds,
                        drain_interval_seconds=settings.drain_interval_seconds,
                    )
                    if action is None:
                        await asyncio.sleep(settings.poll_interval_seconds)
                        continue

                    span.set_attribute("worker.action", action)
                    if action == "scan":
                        result = await client.scan(pending_limit=settings.pending_limit, drain_all=settings.drain_all)
                        last_scan_at = now
                        last_drain_at = now
                        logger.info(
                            "scan finished scanned=%s inserted=%s",
                            result.get("scanned"),
                            result.get("inserted"),
                        )
                    else:
                        result = await client.drain(pending_limit=settings.pending_limit, drain_all=settings.drain_all)
                        last_drain_at = now
                        logger.info("drain finished drain=%s", result.get("drain"))

                    backoff = settings.poll_interval_seconds
            except RunRejectedError as exc:
                sleep_for = min(exc.retry_after or settings.max_backoff_seconds, settings.max_backoff_seconds)
                logger.warning("%s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
            except Exception as exc:  # pragma: no cover - loop robustness
                sleep_for = backoff_delay(
                    backoff,
                    base=settings.poll_interval_seconds,
                    ceiling=settings.max_backoff_seconds,
                    jitter=random.uniform(0.0, 0.5),
                )
                logger.exception("worker tick failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        shutdown_worker_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())
