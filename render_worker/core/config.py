"""
Worker Configuration

Settings class using pydantic-settings for environment variable loading.
Covers queue, database, object storage and process limits.

Encoding parameters (resolution, frame rate, codec) and timeline limits are
process-wide constants, not settings; see tasks/timeline_compiler.py and
schemas/timeline.py.
"""

import math
from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Worker settings loaded from environment variables.

    All settings can be overridden via environment variables.
    For example, MAX_ATTEMPTS can be set via the MAX_ATTEMPTS env var.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="Render Worker", description="Application name")
    log_level: str = Field(default="INFO", description="Root logging level")

    # Database
    database_url: str = Field(
        default="sqlite:///./render_jobs.db",
        description="Database connection URL (sync driver)",
    )
    sql_echo: bool = Field(default=False, description="Echo SQL statements")

    # Redis / queue
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL",
    )
    queue_name: str = Field(default="render-queue", description="RQ queue name")
    worker_concurrency: int = Field(
        default=2,
        ge=1,
        description="Number of concurrent job slots per worker process",
    )
    result_ttl_seconds: int = Field(
        default=3600,  # 1 hour
        description="How long finished queue records are kept",
    )
    failure_ttl_seconds: int = Field(
        default=86400,  # 24 hours
        description="How long failed queue records are kept",
    )

    # Retry policy
    max_attempts: int = Field(
        default=3,
        ge=1,
        description="Total number of attempts per job (first try included)",
    )
    initial_backoff_ms: int = Field(
        default=1000,
        description="Delay before the first retry in milliseconds",
    )
    backoff_multiplier: int = Field(
        default=2,
        description="Exponential backoff multiplier",
    )

    # Timeouts
    job_timeout_seconds: int = Field(
        default=300,  # 5 minutes
        description="Hard wall-clock limit for one ffmpeg run",
    )
    image_download_timeout_seconds: float = Field(
        default=30.0,
        description="Timeout for fetching one clip image",
    )
    webhook_timeout_seconds: float = Field(
        default=10.0,
        description="Timeout for one webhook delivery",
    )

    # Rendering
    work_dir_base: str = Field(
        default="/tmp/video-render",
        description="Base directory for per-job workspaces",
    )
    ffmpeg_binary: str = Field(default="ffmpeg", description="ffmpeg executable")
    font_file: Optional[str] = Field(
        default=None,
        description="Optional font file for text overlays (fontconfig default otherwise)",
    )

    # Object storage (S3 / MinIO)
    s3_endpoint: Optional[str] = Field(default=None, description="Custom S3 endpoint URL")
    s3_region: str = Field(default="us-east-1", description="S3 region")
    s3_access_key: Optional[str] = Field(default=None, description="S3 access key id")
    s3_secret_key: Optional[str] = Field(default=None, description="S3 secret access key")
    s3_bucket: str = Field(default="video-outputs", description="Output bucket")
    output_prefix: str = Field(default="outputs/", description="Key prefix for rendered files")
    signed_url_expiry_seconds: int = Field(
        default=3600,  # 1 hour
        description="Validity window of returned output URLs",
    )

    @property
    def backoff_intervals(self) -> List[int]:
        """Retry delays in whole seconds, one per retry (exponential)."""
        intervals = []
        for retry in range(self.max_attempts - 1):
            delay_ms = self.initial_backoff_ms * (self.backoff_multiplier ** retry)
            intervals.append(max(1, math.ceil(delay_ms / 1000)))
        return intervals


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once per process.

    Returns:
        Settings: Worker settings instance

    Example:
        >>> settings = get_settings()
        >>> print(settings.max_attempts)
        3
    """
    return Settings()
