"""Configuration management using Pydantic Settings."""

import logging
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Scheduler settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="BACKUP_SCHEDULER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Job store
    database_url: str = "sqlite+aiosqlite:///./backup_jobs.db"

    # Scheduler
    tick_interval_seconds: float = 30.0
    watchdog_interval_seconds: float = 60.0
    max_parallel_executions: int = 4

    # Job defaults
    default_max_execution_seconds: int = 4 * 60 * 60
    default_dependency_freshness_seconds: int = 24 * 60 * 60

    # History
    history_page_size: int = 20
    stats_window_days: int = 7

    # Notifications
    notification_webhook_url: Optional[str] = None
    notification_timeout_seconds: float = 10.0

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: str = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Reset settings (for testing)."""
    global _settings
    _settings = None


def configure_logging(settings: Optional[Settings] = None) -> None:
    settings = settings or get_settings()
    logging.basicConfig(level=settings.log_level, format=settings.log_format)
