from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "dev"
    api_base_url: str = "http://localhost:8000"
    run_secret: str | None = None
    request_timeout_seconds: float = 300.0
    scan_interval_seconds: float = 900.0
    drain_interval_seconds: float = 300.0
    pending_limit: int | None = None
    drain_all: bool = False
    poll_interval_seconds: float = 5.0
    max_backoff_seconds: float = 120.0
    otel_enabled: bool = True
    otel_service_name: str = "obitwatch-worker"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="OW_WORKER_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
