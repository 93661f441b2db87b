"""
Configuration settings for ingestflow
Loads from environment variables and an optional .env file.
"""

from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Pipeline configuration settings.

    Every field can be overridden by an environment variable of the same
    name (case-insensitive), e.g. ``CHUNK_SIZE=500``.
    """

    # Logging
    log_level: str = "INFO"

    # Database (pipeline state + destination store)
    database_url: str = "sqlite:///./ingestflow.db"
    db_pool_size: int = 5
    db_max_overflow: int = 10

    # Redis (broker, leases, progress fan-out)
    redis_url: str = "redis://localhost:6379/0"
    celery_broker_url: Optional[str] = None
    celery_result_backend: Optional[str] = None

    # Storage areas
    upload_dir: Path = Path("uploads")
    working_dir: Path = Path("temp")
    chunk_dir: Path = Path("temp/chunks")

    # Decomposition
    chunk_size: int = Field(default=1000, ge=1)

    # Leases
    lock_ttl_seconds: float = 30.0
    lock_heartbeat_seconds: float = 10.0
    lock_key_prefix: str = "lock"

    # Progress channel
    progress_channel_prefix: str = "progress"

    # Worker pools (row-processing pool size) and retry policy
    row_worker_concurrency: int = 3
    row_rate_limit: str = "10/s"
    max_retries: int = 3
    retry_backoff_seconds: int = 1
    retry_backoff_max_seconds: int = 10

    # Progress channel server
    api_host: str = "0.0.0.0"
    api_port: int = 8080

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore extra fields in .env file
    )

    @field_validator("log_level")
    @classmethod
    def normalise_log_level(cls, v: str) -> str:
        """Accept lower-case level names."""
        return v.upper()

    @model_validator(mode="after")
    def check_lease_timing(self) -> "Settings":
        """Renewal must happen well before the lease runs out."""
        if self.lock_heartbeat_seconds >= self.lock_ttl_seconds:
            raise ValueError(
                f"lock_heartbeat_seconds ({self.lock_heartbeat_seconds}) must be "
                f"smaller than lock_ttl_seconds ({self.lock_ttl_seconds})"
            )
        return self

    @property
    def broker_url(self) -> str:
        return self.celery_broker_url or self.redis_url

    @property
    def result_backend(self) -> str:
        return self.celery_result_backend or self.redis_url


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get global settings (singleton)."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Reset settings (useful for testing)."""
    global _settings
    _settings = None
