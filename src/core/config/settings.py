# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Application configuration settings using Pydantic Settings.

This module provides centralized configuration management for the
Heroes in Waiting analytics client. Settings are loaded from environment
variables (and an optional .env file) with sensible defaults.

The Settings class is the main entry point and aggregates all subsettings.
A cached instance is provided via get_settings(); components never read it
themselves, it is passed to them at construction.

Example:
    >>> from src.core.config.settings import get_settings
    >>> settings = get_settings()
    >>> print(settings.analytics.max_batch_events)
    50
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Self

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Upper bound on retention recommended for child data under COPPA.
MAX_COPPA_RETENTION_DAYS = 90


class LocalDatabaseSettings(BaseSettings):
    """Local on-device database configuration.

    Pending events and batch metadata live in a single SQLite file
    accessed through SQLAlchemy's async engine (aiosqlite driver).

    Attributes:
        path: Location of the SQLite database file.
        echo: Log every SQL statement (debugging only).
    """

    model_config = SettingsConfigDict(
        env_prefix="LOCAL_DB_",
        extra="ignore",
    )

    path: Path = Path("heroes_analytics.db")
    echo: bool = False

    @property
    def url(self) -> str:
        """Build the async SQLAlchemy URL from the file path."""
        return f"sqlite+aiosqlite:///{self.path}"


class AnalyticsSettings(BaseSettings):
    """Analytics batching and ingest configuration.

    Batching thresholds are deliberately configuration rather than
    constants; they can be tuned per deployment.

    Attributes:
        ingest_url: Analytics-ingest endpoint receiving sealed batches.
        auth_token: Optional bearer token sent with each batch.
        request_timeout: HTTP timeout in seconds for one send.
        max_batch_events: Upper bound on events per batch.
        min_batch_events: Fewest pending events that trigger formation.
        max_batch_age_seconds: Age of the oldest pending event that
            triggers formation regardless of count.
        backoff_base_seconds: Delay after the first failed attempt.
        backoff_max_seconds: Cap on any backoff delay.
        backoff_jitter_ratio: Fraction of random jitter added to a delay.
        max_attempts: Failed attempts before a batch is marked failed.
        batch_retention_days: Age after which finished batches are purged.
    """

    model_config = SettingsConfigDict(
        env_prefix="ANALYTICS_",
        extra="ignore",
    )

    ingest_url: str = "https://api.heroesinwaiting.org/api/analytics/events"
    auth_token: SecretStr | None = None
    request_timeout: float = 30.0

    max_batch_events: int = Field(default=50, ge=1)
    min_batch_events: int = Field(default=10, ge=1)
    max_batch_age_seconds: float = Field(default=300.0, gt=0)

    backoff_base_seconds: float = Field(default=30.0, gt=0)
    backoff_max_seconds: float = Field(default=3600.0, gt=0)
    backoff_jitter_ratio: float = Field(default=0.1, ge=0, lt=1)
    max_attempts: int = Field(default=3, ge=1)

    batch_retention_days: int = Field(default=7, ge=1)

    @model_validator(mode="after")
    def validate_thresholds(self) -> Self:
        """Validate that thresholds are mutually consistent.

        Raises:
            ValueError: If the minimum exceeds the maximum batch size or the
                backoff base exceeds its cap.
        """
        if self.min_batch_events > self.max_batch_events:
            raise ValueError("min_batch_events cannot exceed max_batch_events")
        if self.backoff_base_seconds > self.backoff_max_seconds:
            raise ValueError("backoff_base_seconds cannot exceed backoff_max_seconds")
        return self


class SyncPolicySettings(BaseSettings):
    """Policy deciding when network sync may run.

    Attributes:
        allow_metered: Permit syncing over metered (cellular) connections.
        min_battery_percent: Suspend sync below this battery level unless
            the device is charging.
        require_wifi: Only sync over Wi-Fi.
    """

    model_config = SettingsConfigDict(
        env_prefix="SYNC_POLICY_",
        extra="ignore",
    )

    allow_metered: bool = False
    min_battery_percent: int = Field(default=20, ge=0, le=100)
    require_wifi: bool = False


class ComplianceSettings(BaseSettings):
    """Child-privacy (COPPA) compliance configuration.

    Attributes:
        facilitator_consent: Whether the facilitator granted consent for
            anonymous analytics collection. Nothing is recorded without it.
        extra_disallowed_fields: Additional property keywords always removed.
        extra_allowed_fields: Additional property keys passed through.
        data_retention_days: How long analytics data may be kept on device.
    """

    model_config = SettingsConfigDict(
        env_prefix="COPPA_",
        extra="ignore",
    )

    facilitator_consent: bool = True
    extra_disallowed_fields: list[str] = Field(default_factory=list)
    extra_allowed_fields: list[str] = Field(default_factory=list)
    data_retention_days: int = Field(default=MAX_COPPA_RETENTION_DAYS, ge=1, le=MAX_COPPA_RETENTION_DAYS)


class Settings(BaseSettings):
    """Main application settings aggregating all subsettings.

    Use get_settings() to obtain a cached instance.

    Attributes:
        environment: Current environment (development, staging, production).
        debug: Enable debug mode.
        log_level: Logging level.
        local_db: Local database settings.
        analytics: Batching and ingest settings.
        sync_policy: Sync suspension policy.
        compliance: COPPA compliance settings.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # Environment
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "DEBUG"

    # Subsettings - loaded with their own env prefixes
    local_db: LocalDatabaseSettings = Field(default_factory=LocalDatabaseSettings)
    analytics: AnalyticsSettings = Field(default_factory=AnalyticsSettings)
    sync_policy: SyncPolicySettings = Field(default_factory=SyncPolicySettings)
    compliance: ComplianceSettings = Field(default_factory=ComplianceSettings)

    @model_validator(mode="after")
    def validate_production_settings(self) -> Self:
        """Validate that production settings are properly configured.

        Raises:
            ValueError: If running in production against a plain-HTTP
                ingest endpoint.
        """
        if self.environment == "production":
            if not self.analytics.ingest_url.startswith("https://"):
                raise ValueError(
                    "Analytics ingest URL must use HTTPS in production. "
                    "Set ANALYTICS_INGEST_URL environment variable."
                )
        return self

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    Call clear_settings_cache() if you need to reload settings.

    Returns:
        Cached Settings instance.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Call this if you need to reload settings from environment.
    Useful for testing or dynamic configuration updates.
    """
    get_settings.cache_clear()
