"""
Application configuration module.

Manages all configuration settings using Pydantic settings management.
Configuration can be overridden via environment variables.
"""

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings.

    All settings can be overridden via environment variables
    matching the field name (case-insensitive).

    Attributes:
        app_name: Name of the application.
        app_version: Current version of the application.
        debug: Enable debug mode.
        environment: Current environment (development, staging, production).

        database_url: SQLite database holding cooldowns and job history.

        max_concurrent_training: Global ceiling on simultaneously active jobs.
        training_cooldown_ms: Minimum interval between successful trainings
            of the same (subject, variant).
        processing_interval_ms: Scheduler loop tick.

        storage_dir: Root of the on-disk model storage.
        save_interval_ms: Period of the background force-save.
        max_age_hours: Default retention window used by cleanup.
        enable_cache: Whether the storage keeps an in-memory read cache.
        cache_ttl_seconds: Lifetime of a cached asset document.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application settings
    app_name: str = "Model Retraining Manager"
    app_version: str = "1.0.0"
    debug: bool = False
    environment: Literal["development", "staging", "production"] = "development"

    # Database settings
    database_url: str = "sqlite:///./retrainer.db"

    # Scheduler settings
    max_concurrent_training: int = 1
    training_cooldown_ms: int = 1_800_000  # 30 minutes
    processing_interval_ms: int = 5_000
    default_max_attempts: int = 2
    retry_delay_seconds: float = 30.0
    job_timeout_seconds: float = 0.0  # 0 disables the watchdog
    job_history_limit: int = 50

    # Priority bands (lower number = higher priority)
    manual_priority_min: int = 1
    manual_priority_max: int = 7
    manual_priority_default: int = 3
    periodic_priority_min: int = 8
    periodic_priority_max: int = 10
    periodic_priority_default: int = 8

    # Periodic training settings
    periodic_training_enabled: bool = False
    periodic_training_interval_ms: int = 3_600_000
    periodic_max_subjects: int = 4
    periodic_max_in_flight: int = 5
    enabled_variants: list[str] = ["lstm", "gru", "cnn", "transformer"]

    # Storage settings
    storage_dir: Path = Path("./data/ml")
    save_interval_ms: int = 300_000  # 5 minutes
    max_age_hours: int = 168  # 7 days
    enable_cache: bool = True
    cache_ttl_seconds: float = 60.0
    training_history_limit: int = 100
    prediction_history_limit: int = 1000
    retained_training_sessions: int = 10
    migrate_on_startup: bool = True

    def get_storage_path(self) -> Path:
        """Get and ensure the storage root exists."""
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        return self.storage_dir


settings = Settings()
