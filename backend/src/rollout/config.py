"""Release engine settings: backends, platform credentials, observability."""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration pulled from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        populate_by_name=True,
    )

    environment: str = Field(default="local", alias="ENVIRONMENT")
    default_connection_id: str = Field(default="default", alias="DEFAULT_CONNECTION_ID")

    lock_backend: str = Field(default="local", alias="LOCK_BACKEND")
    event_backend: str = Field(default="local", alias="EVENT_BACKEND")
    workflow_backend: str = Field(default="thread", alias="WORKFLOW_BACKEND")
    redis_url: str = Field(default="redis://redis:6379/0", alias="REDIS_URL")
    lock_ttl_seconds: int = Field(default=60, alias="LOCK_TTL_SECONDS")
    lock_wait_seconds: float = Field(default=10.0, alias="LOCK_WAIT_SECONDS")

    tick_interval_seconds: float = Field(default=1.0, alias="TICK_INTERVAL_SECONDS")
    ledger_max_releases: int = Field(default=100, alias="LEDGER_MAX_RELEASES")
    stall_timeout_minutes: int = Field(default=10, alias="STALL_TIMEOUT_MINUTES")
    plan_defaults_path: Optional[str] = Field(default=None, alias="PLAN_DEFAULTS_PATH")

    platform_api_base: str = Field(
        default="https://api.cloudflare.com/client/v4", alias="PLATFORM_API_BASE"
    )
    platform_account_id: str = Field(default="", alias="PLATFORM_ACCOUNT_ID")
    platform_api_token: SecretStr = Field(default=SecretStr(""), alias="PLATFORM_API_TOKEN")
    http_timeout_seconds: float = Field(default=30.0, alias="HTTP_TIMEOUT_SECONDS")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    metrics_port: int = Field(default=0, alias="METRICS_PORT")
    otel_service_name: str = Field(default="progressive-rollout", alias="OTEL_SERVICE_NAME")
    otel_sampling_ratio: float = Field(default=1.0, alias="OTEL_SAMPLING_RATIO")
    otel_exporter_endpoint: Optional[str] = Field(default=None, alias="OTEL_EXPORTER_OTLP_ENDPOINT")
    otel_console_export: bool = Field(default=False, alias="OTEL_TRACING_CONSOLE")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()
