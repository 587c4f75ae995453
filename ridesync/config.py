"""
Application Configuration

Uses Pydantic Settings for type-safe configuration.
"""

from typing import Optional
from pydantic_settings import BaseSettings
from pydantic import Field, field_validator, ConfigDict


class Settings(BaseSettings):
    """Application settings with validation."""

    # === Core ===
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Logging level")

    # === Storage ===
    database_url: str = Field(
        default="sqlite:///./ridesync.db",
        description="Database connection URL"
    )
    redis_url: str = Field(
        default="redis://localhost:6379",
        description="Redis URL (locks and shared refresh results)"
    )

    # === Garmin ===
    garmin_client_id: Optional[str] = Field(default=None)
    garmin_client_secret: Optional[str] = Field(default=None)
    garmin_token_url: Optional[str] = Field(default=None)
    garmin_api_base: str = Field(default="https://apis.garmin.com/wellness-api")

    # === WHOOP ===
    whoop_client_id: Optional[str] = Field(default=None)
    whoop_client_secret: Optional[str] = Field(default=None)

    # === Strava ===
    strava_client_id: Optional[str] = Field(default=None)
    strava_client_secret: Optional[str] = Field(
        default=None,
        validation_alias="strava_secret"  # Also accept STRAVA_SECRET
    )
    strava_webhook_verify_token: Optional[str] = Field(default=None)

    # === Token lifecycle ===
    token_refresh_skew_seconds: int = Field(default=300)
    token_refresh_timeout_seconds: float = Field(default=30.0)
    token_cache_sweep_interval_seconds: float = Field(default=60.0)
    single_flight_backend: str = Field(
        default="memory",
        description="'memory' (per process) or 'redis' (shared across workers)"
    )

    # === Locks ===
    lock_ttl_sync_seconds: int = Field(default=5 * 60)
    lock_ttl_backfill_seconds: int = Field(default=10 * 60)

    # === Backfill ===
    backfill_chunk_days: int = Field(default=30)
    backfill_min_year: int = Field(default=2000)
    backfill_max_batch_years: int = Field(default=10)

    # === Workers ===
    sync_worker_concurrency: int = Field(default=1)
    backfill_worker_concurrency: int = Field(default=5)
    job_max_attempts: int = Field(default=3)
    job_retry_delay_seconds: float = Field(default=60.0)
    lock_retry_delay_seconds: float = Field(default=30.0)

    # === Import sessions ===
    import_idle_minutes: int = Field(default=10)
    import_stale_minutes: int = Field(default=30)
    import_check_interval_seconds: float = Field(default=60.0)

    @field_validator('database_url')
    @classmethod
    def fix_postgres_url(cls, v: str) -> str:
        """Fix Render/Railway postgres:// URL to postgresql://"""
        if v.startswith("postgres://"):
            return v.replace("postgres://", "postgresql://", 1)
        return v

    @field_validator('single_flight_backend')
    @classmethod
    def check_single_flight_backend(cls, v: str) -> str:
        if v not in ("memory", "redis"):
            raise ValueError("single_flight_backend must be 'memory' or 'redis'")
        return v

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )


# Global settings instance
settings = Settings()
