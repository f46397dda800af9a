"""Configuration management using Pydantic Settings."""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: Literal["json", "console"] = Field(
        default="json", description="structlog renderer: json for services, console for local runs"
    )

    # Metrics
    metrics_port: Optional[int] = Field(
        default=None,
        description="Port for the worker's Prometheus /metrics endpoint (disabled when unset)",
    )

    # Database
    database_url: Optional[str] = Field(
        default=None,
        description="PostgreSQL connection URL. When unset the in-process store is used",
    )
    db_pool_min_size: int = Field(default=1, description="Minimum connection pool size")
    db_pool_max_size: int = Field(default=10, description="Maximum connection pool size")
    db_command_timeout_s: float = Field(default=30.0, description="Query timeout in seconds")

    # Scheduling
    global_max_concurrent: int = Field(
        default=10, ge=1, description="Jobs allowed in processing across all tiers"
    )
    dispatch_candidate_window: int = Field(
        default=10, ge=1, description="Waiting jobs inspected per dispatch pass"
    )
    dispatch_poll_interval_s: float = Field(
        default=2.0, description="Sleep between dispatch passes when nothing was claimed"
    )
    worker_concurrency: int = Field(
        default=4, ge=1, description="Executions one worker process runs at once"
    )
    eager_dispatch: bool = Field(
        default=True, description="Run a dispatch pass right after a successful submit"
    )

    # Recovery
    job_timeout_minutes: int = Field(
        default=15, ge=1, description="Processing deadline before the watchdog reclaims a job"
    )
    watchdog_interval_s: int = Field(
        default=300, ge=1, description="Seconds between watchdog scans"
    )
    watchdog_batch_size: int = Field(
        default=100, ge=1, description="Stale jobs handled per watchdog scan"
    )

    # Generation backend
    generation_backend_url: Optional[str] = Field(
        default=None, description="Base URL of the generation service"
    )
    generation_timeout_s: float = Field(
        default=600.0, description="Per-call timeout for the generation service"
    )

    # Artifact storage
    artifact_dir: str = Field(
        default="./artifacts", description="Root directory for raw generation outputs"
    )
    artifact_base_url: Optional[str] = Field(
        default=None,
        description="Public URL prefix for stored artifacts (file:// URLs when unset)",
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
