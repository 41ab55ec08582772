"""
Application settings using Pydantic.

Provides environment-based configuration loading with APIHUB_ prefix.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="APIHUB_",
    )

    # Database
    database_url: str = "postgresql+asyncpg://localhost/apihub"
    db_pool_size: int = 5
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    db_pool_recycle: int = 1800

    # Debug
    debug: bool = False

    # Environment
    environment: str = "development"

    # API
    api_prefix: str = "/api/v2"
    cors_origins: list[str] = []

    # Redis
    redis_url: str = "redis://localhost:6379/0"
    redis_max_connections: int = 10

    # Build queue
    build_keepalive_timeout_sec: int = 600
    build_restart_limit: int = 2
    build_success_retention_hours: int = 168
    build_failure_retention_hours: int = 336

    # Workers
    worker_poll_interval_sec: float = 1.0
    worker_max_backoff_sec: float = 30.0
    worker_heartbeat_interval_sec: float = 60.0

    # Publishing
    migration_audit_enabled: bool = False
    search_text_config: str = "english"

    # Submission rate limiting (per principal)
    submission_rate_limit: int = 100
    submission_rate_window_sec: int = 60


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
