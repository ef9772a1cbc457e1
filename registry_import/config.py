"""Application configuration."""
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = "development"
    log_level: str = "INFO"
    database_url: str

    # Redis (for Celery and progress pub/sub)
    redis_url: str = "redis://localhost:6379/0"

    # Supabase object storage
    supabase_url: str
    supabase_service_role_key: str

    # Resource governance per invocation
    import_time_budget_seconds: float = 45.0
    import_memory_ceiling_mb: int = 400
    batch_pause_seconds: float = 0.025

    # Object storage download
    download_window_bytes: int = 2 * 1024 * 1024
    storage_settle_seconds: float = 3.0
    signed_url_ttl_seconds: int = 3600
    storage_max_attempts: int = 5
    storage_retry_initial_delay: float = 2.0
    storage_retry_multiplier: float = 1.5
    source_fallback_encoding: str = "cp1252"

    # Batching
    processing_batch_size: int = 200
    staging_batch_size: int = 100
    promote_limit: int = 1000

    # Mapping defaults
    home_country_code: str = "NOR"

    # Worker scheduling
    queue_poll_interval_seconds: float = 60.0
    resume_delay_seconds: float = 5.0
    # An invocation silent for this long has died; its claim and lease may be taken
    claim_timeout_seconds: float = 120.0


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
