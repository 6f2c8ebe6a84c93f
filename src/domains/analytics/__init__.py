# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Offline-first classroom analytics.

This module records behavioral and interaction events on the device,
groups them into COPPA-redacted batches and delivers the batches to the
analytics ingest endpoint when connectivity and power allow:
- Event recording (EventRecorder, AnalyticsTracker)
- Batch formation and sealing (BatchManager, ComplianceGate)
- Network-aware delivery with backoff (SyncCoordinator)

Events survive offline periods in the local SQLite store and are sent at
most once per successful acknowledgement.

Usage:
    from src.domains.analytics import create_pipeline

    pipeline = await create_pipeline(get_settings())
    await pipeline.start()

    await pipeline.tracker.track_emotional_checkin(
        classroom_id="class-7",
        mood="happy",
        energy_level=4,
    )

    pipeline.sync.notify_conditions_changed(
        DeviceConditions(is_connected=True, is_wifi=True, is_metered=False)
    )
"""

from src.domains.analytics.batching import BatchManager
from src.domains.analytics.compliance import ComplianceGate, ComplianceReport, RedactionReport
from src.domains.analytics.exceptions import (
    AnalyticsError,
    ComplianceViolation,
    EventValidationError,
    NetworkError,
    ServerRejection,
    StorageError,
)
from src.domains.analytics.ingest import AnalyticsIngestClient
from src.domains.analytics.models import (
    AnalyticsEvent,
    AnalyticsEventCreate,
    BatchHealthReport,
    BatchStatus,
    DeviceConditions,
    SyncAttempt,
    SyncBatch,
    SyncResult,
    SyncState,
)
from src.domains.analytics.pipeline import AnalyticsPipeline, create_pipeline
from src.domains.analytics.recorder import EventRecorder
from src.domains.analytics.repository import AnalyticsStore
from src.domains.analytics.sync import (
    BackoffPolicy,
    SyncCoordinator,
    SyncStrategy,
    select_strategy,
)
from src.domains.analytics.tracker import AnalyticsTracker, EventCategory, EventTypes

__all__ = [
    # Pipeline
    "AnalyticsPipeline",
    "create_pipeline",
    # Recording
    "EventRecorder",
    "AnalyticsTracker",
    "EventTypes",
    "EventCategory",
    # Batching
    "BatchManager",
    "ComplianceGate",
    "ComplianceReport",
    "RedactionReport",
    "AnalyticsStore",
    # Sync
    "SyncCoordinator",
    "SyncStrategy",
    "BackoffPolicy",
    "AnalyticsIngestClient",
    "select_strategy",
    # Models
    "AnalyticsEvent",
    "AnalyticsEventCreate",
    "SyncBatch",
    "BatchStatus",
    "SyncAttempt",
    "SyncResult",
    "SyncState",
    "DeviceConditions",
    "BatchHealthReport",
    # Errors
    "AnalyticsError",
    "EventValidationError",
    "StorageError",
    "NetworkError",
    "ServerRejection",
    "ComplianceViolation",
]
