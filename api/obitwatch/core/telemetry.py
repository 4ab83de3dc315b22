from __future__ import annotations

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from obitwatch.core.config import Settings
from obitwatch_common.telemetry import (
    HTTPX_INSTRUMENTOR,
    TelemetryRuntime,
    build_tracer_provider,
    configure_logging,
    shutdown_telemetry,
)


def setup_api_telemetry(app: FastAPI, settings: Settings) -> TelemetryRuntime:
    configure_logging(settings)
    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False, provider=None)

    provider = build_tracer_provider(settings)
    FastAPIInstrumentor.instrument_app(app, tracer_provider=provider)
    HTTPX_INSTRUMENTOR.instrument(tracer_provider=provider)
    return TelemetryRuntime(enabled=True, provider=provider)


def shutdown_api_telemetry(app: FastAPI, runtime: TelemetryRuntime) -> None:
    if runtime.enabled:
        FastAPIInstrumentor.uninstrument_app(app)
    shutdown_telemetry(runtime)
