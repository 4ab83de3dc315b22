from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "obitwatch-api"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    database_parameter_limit: int = 32767
    run_secret: str | None = None
    run_rate_limits: str = "60:3,3600:20"
    base_url: str = "http://localhost:8000"
    source_url_template: str = "https://en.wikipedia.org/wiki/Deaths_in_{month_name}_{year}"
    source_user_agent: str = "obitwatch/0.1 (+https://github.com/obitwatch/obitwatch)"
    source_timezone: str = "America/New_York"
    lookback_days: int = 5
    fetch_timeout_seconds: float = 15.0
    fetch_retries: int = 2
    fetch_backoff_seconds: float = 0.4
    llm_provider: str = "openai"
    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-5-mini"
    openai_background: bool = False
    openai_timeout_seconds: float = 120.0
    openai_webhook_secret: str | None = None
    replicate_api_token: str | None = None
    replicate_base_url: str = "https://api.replicate.com/v1"
    replicate_model: str = "openai/gpt-5-mini"
    replicate_timeout_seconds: float = 30.0
    replicate_webhook_secret: str | None = None
    webhook_max_age_seconds: int = 300
    pending_limit: int = 50
    pending_batch_size: int = 25
    lock_ttl_seconds: int = 300
    telegram_bot_token: str | None = None
    telegram_chat_ids: str | None = None
    telegram_webhook_secret: str | None = None
    telegram_api_base_url: str = "https://api.telegram.org"
    feed_page_size: int = 25
    x_client_id: str | None = None
    x_client_secret: str | None = None
    x_token_url: str = "https://api.x.com/2/oauth2/token"
    x_tweet_url: str = "https://api.x.com/2/tweets"
    token_encryption_key: str | None = None
    token_refresh_margin_seconds: int = 60
    otel_enabled: bool = True
    otel_service_name: str = "obitwatch-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="OW_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
