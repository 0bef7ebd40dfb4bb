from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "Mug Funnel API"
    environment: str = "dev"
    api_prefix: str = "/v1"
    log_level: str = "INFO"

    database_dsn: str = "sqlite:///./mugfunnel.db"
    db_pool_size: int = Field(default=20, ge=1, le=200)
    db_max_overflow: int = Field(default=40, ge=0, le=400)
    db_pool_timeout_seconds: int = Field(default=30, ge=1, le=600)
    db_pool_recycle_seconds: int = Field(default=1800, ge=30, le=86400)

    redis_url: str = "redis://redis:6379/0"
    queue_mode: str = "redis"
    queue_retry_max: int = Field(default=3, ge=0, le=10)
    queue_retry_interval_seconds: int = Field(default=120, ge=5, le=3600)

    funnel_store_backend: str = "memory"
    funnel_session_idle_seconds: int = Field(default=3600, ge=60, le=86400)
    funnel_reaper_interval_seconds: int = Field(default=3600, ge=1, le=86400)
    funnel_reaper_enabled: bool = True

    # Free tier of the texture model is 1500/day; global limit keeps a buffer.
    session_limit: int = Field(default=5, ge=0, le=1000)
    identity_limit: int = Field(default=15, ge=0, le=10000)
    global_limit: int = Field(default=1400, ge=0, le=1_000_000)
    rate_limit_disabled: bool = False

    email_window_hours: int = Field(default=24, ge=0, le=24 * 30)
    session_window_minutes: int = Field(default=30, ge=0, le=24 * 60)
    allow_merge_updates: bool = True

    ip_hash_salt: str = "default-salt-change-in-production"

    ga_measurement_id: str = ""
    ga_api_secret: str = ""
    ga_endpoint: str = "https://www.google-analytics.com/mp/collect"
    analytics_timeout_seconds: float = Field(default=5.0, gt=0, le=60)
    analytics_max_workers: int = Field(default=4, ge=1, le=32)

    ai_mode_enabled: bool = False
    legacy_3d_mode_enabled: bool = True
    ai_mode_rollout_percent: int = Field(default=100, ge=0, le=100)

    admin_api_token: str = ""
    cors_allow_origins: str = "http://localhost:3000,http://127.0.0.1:3000"

    data_cleanup_enabled: bool = True
    data_retention_leads_days: int = Field(default=2555, ge=1)
    data_retention_quota_days: int = Field(default=30, ge=1)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
