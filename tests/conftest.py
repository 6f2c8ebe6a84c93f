# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Pytest configuration and shared fixtures.

This module provides fixtures used across all test types:
- Unit tests (pure components, mocked collaborators)
- Integration tests (local SQLite store, mocked ingest endpoint)
"""

from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any
from uuid import uuid4

import pytest
import pytest_asyncio

from src.core.config.settings import (
    AnalyticsSettings,
    ComplianceSettings,
    LocalDatabaseSettings,
    Settings,
    SyncPolicySettings,
)
from src.domains.analytics.compliance import ComplianceGate
from src.domains.analytics.models import AnalyticsEvent, DeviceConditions
from src.domains.analytics.repository import AnalyticsStore
from src.infrastructure.database import LocalDatabase

INGEST_URL = "https://ingest.test/api/analytics/events"


# =============================================================================
# Marker Configuration
# =============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test (uses a local SQLite file)"
    )


# =============================================================================
# Settings Fixtures
# =============================================================================


@pytest.fixture
def analytics_settings() -> AnalyticsSettings:
    """Provide analytics settings pointing at a test ingest URL."""
    return AnalyticsSettings(
        ingest_url=INGEST_URL,
        max_batch_events=50,
        min_batch_events=10,
        max_batch_age_seconds=300,
        backoff_base_seconds=30,
        backoff_max_seconds=3600,
        backoff_jitter_ratio=0.1,
        max_attempts=3,
    )


@pytest.fixture
def settings(tmp_path: Path, analytics_settings: AnalyticsSettings) -> Settings:
    """Provide application settings with a per-test database file."""
    return Settings(
        environment="development",
        debug=True,
        log_level="DEBUG",
        local_db=LocalDatabaseSettings(path=tmp_path / "analytics.db"),
        analytics=analytics_settings,
        sync_policy=SyncPolicySettings(),
        compliance=ComplianceSettings(),
    )


# =============================================================================
# Storage Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def database(settings: Settings) -> AsyncGenerator[LocalDatabase, None]:
    """Provide an initialized local database in a temporary file."""
    db = LocalDatabase(settings.local_db)
    await db.init()
    yield db
    await db.close()


@pytest.fixture
def store(database: LocalDatabase) -> AnalyticsStore:
    """Provide an analytics store over the test database."""
    return AnalyticsStore(database)


@pytest.fixture
def gate() -> ComplianceGate:
    """Provide a compliance gate with default field lists."""
    return ComplianceGate()


# =============================================================================
# Helper Fixtures
# =============================================================================


@pytest.fixture
def sample_classroom_id() -> str:
    """Provide a sample classroom ID for testing."""
    return "classroom-7b"


@pytest.fixture
def make_event(sample_classroom_id: str) -> Callable[..., AnalyticsEvent]:
    """Provide a factory for recorded events.

    ``age_seconds`` backdates created_at relative to now.
    """
    base = datetime.now(timezone.utc)

    def _make(
        event_type: str = "lesson_start",
        properties: dict[str, Any] | None = None,
        age_seconds: float = 0,
        **overrides: Any,
    ) -> AnalyticsEvent:
        fields: dict[str, Any] = {
            "id": str(uuid4()),
            "classroom_id": sample_classroom_id,
            "session_id": "a1b2c3d4e5f60718",
            "event_type": event_type,
            "created_at": base - timedelta(seconds=age_seconds),
            "properties": properties if properties is not None else {"lesson_number": 1},
        }
        fields.update(overrides)
        return AnalyticsEvent(**fields)

    return _make


@pytest.fixture
def wifi_conditions() -> DeviceConditions:
    """Provide unmetered Wi-Fi conditions with a full battery."""
    return DeviceConditions(
        is_connected=True,
        is_wifi=True,
        is_metered=False,
        battery_percent=90,
    )
