from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "jobchat-api"
    environment: str = "dev"
    log_level: str = "INFO"
    store_backend: Literal["postgres", "memory"] = "postgres"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    supabase_url: str | None = None
    supabase_anon_key: str | None = None
    auth_timeout_seconds: float = 5.0
    store_timeout_seconds: float = 10.0
    reconcile_debounce_seconds: float = 0.05
    feed_channel: str = "jobchat_changes"
    feed_reconnect_base_seconds: float = 1.0
    feed_reconnect_max_seconds: float = 30.0
    notifications_limit: int = 20
    recent_messages_limit: int = 5
    otel_enabled: bool = True
    otel_service_name: str = "jobchat-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="JC_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
