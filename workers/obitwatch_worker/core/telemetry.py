from __future__ import annotations

from obitwatch_common.telemetry import (
    HTTPX_INSTRUMENTOR,
    TelemetryRuntime,
    build_tracer_provider,
    configure_logging,
    shutdown_telemetry,
)
from obitwatch_worker.core.config import Settings


def setup_worker_telemetry(settings: Settings) -> TelemetryRuntime:
    configure_logging(settings)
    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False, provider=None)

    provider = build_tracer_provider(settings)
    HTTPX_INSTRUMENTOR.instrument(tracer_provider=provider)
    return TelemetryRuntime(enabled=True, provider=provider)


def shutdown_worker_telemetry(runtime: TelemetryRuntime) -> None:
    shutdown_telemetry(runtime)
