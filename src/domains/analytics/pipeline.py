# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Construction and lifecycle of the analytics pipeline.

All components are built explicitly from settings and handed to each
other at construction time; nothing is held in module globals. The host
application owns the returned pipeline and passes it (or its tracker)
to feature code.

Usage:
    settings = get_settings()
    pipeline = await create_pipeline(settings)
    await pipeline.start()

    await pipeline.tracker.track_lesson_started(...)
    pipeline.sync.notify_conditions_changed(conditions)

    await pipeline.stop()
"""

import logging
import random
from datetime import timedelta
from typing import Any

import httpx

from src.core.config.settings import Settings
from src.domains.analytics.batching import BatchManager
from src.domains.analytics.compliance import ComplianceGate
from src.domains.analytics.ingest import AnalyticsIngestClient
from src.domains.analytics.models import DeviceConditions
from src.domains.analytics.recorder import EventRecorder
from src.domains.analytics.repository import AnalyticsStore
from src.domains.analytics.sync import BackoffPolicy, SyncCoordinator
from src.domains.analytics.tracker import AnalyticsTracker
from src.infrastructure.database import LocalDatabase
from src.utils.datetime import days_ago

logger = logging.getLogger(__name__)


class AnalyticsPipeline:
    """Handles to every analytics component, plus start/stop.

    Attributes:
        settings: Settings the pipeline was built from.
        database: Local database handle.
        store: Local analytics store.
        gate: Compliance gate.
        recorder: Event recorder.
        tracker: Tracking facade for feature code.
        batches: Batch manager.
        client: Ingest HTTP client.
        sync: Sync coordinator.
    """

    def __init__(
        self,
        settings: Settings,
        database: LocalDatabase,
        client: AnalyticsIngestClient,
        conditions: DeviceConditions | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """Wire the components together.

        Args:
            settings: Application settings.
            database: Initialized local database handle.
            client: Ingest HTTP client.
            conditions: Initial device conditions.
            rng: Random source for backoff jitter.
        """
        analytics = settings.analytics

        self.settings = settings
        self.database = database
        self.client = client
        self.store = AnalyticsStore(database)
        self.gate = ComplianceGate(
            extra_disallowed=settings.compliance.extra_disallowed_fields,
            extra_allowed=settings.compliance.extra_allowed_fields,
        )
        self.recorder = EventRecorder(
            self.store,
            consent_granted=settings.compliance.facilitator_consent,
        )
        self.tracker = AnalyticsTracker(self.recorder)
        self.batches = BatchManager(
            self.store,
            self.gate,
            max_batch_events=analytics.max_batch_events,
            min_batch_events=analytics.min_batch_events,
            max_batch_age=timedelta(seconds=analytics.max_batch_age_seconds),
        )
        self.sync = SyncCoordinator(
            self.store,
            self.batches,
            client,
            backoff=BackoffPolicy.from_settings(analytics, rng=rng),
            policy=settings.sync_policy,
            max_attempts=analytics.max_attempts,
            conditions=conditions,
        )

    async def start(self) -> None:
        """Clean up expired data and start background sync."""
        await self.batches.cleanup_old_batches(self.settings.analytics.batch_retention_days)
        expired = await self.store.delete_expired_pending(
            days_ago(self.settings.compliance.data_retention_days)
        )
        if expired:
            logger.info("Deleted %d pending events past the retention period", expired)
        await self.sync.start()

    async def stop(self) -> None:
        """Stop background sync and release resources."""
        await self.sync.stop()
        await self.client.close()
        await self.database.close()

    async def withdraw_consent(self) -> int:
        """Stop recording and delete all locally stored analytics data.

        Returns:
            Number of events deleted.
        """
        self.recorder.consent_granted = False
        deleted = await self.store.delete_all_events()
        logger.info("Analytics consent withdrawn, deleted %d local events", deleted)
        return deleted

    def grant_consent(self) -> None:
        """Resume recording after the facilitator grants consent."""
        self.recorder.consent_granted = True

    async def get_health_status(self) -> dict[str, Any]:
        """Health of the local backlog and sync coordinator."""
        status = await self.sync.get_health_status()
        status["database_connected"] = await self.database.check_connection()
        return status


async def create_pipeline(
    settings: Settings,
    database: LocalDatabase | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    conditions: DeviceConditions | None = None,
    rng: random.Random | None = None,
) -> AnalyticsPipeline:
    """Build an analytics pipeline from settings.

    Args:
        settings: Application settings.
        database: Optional database handle; one is created from
            ``settings.local_db`` if omitted.
        transport: Optional HTTP transport for the ingest client.
        conditions: Initial device conditions.
        rng: Random source for backoff jitter.

    Returns:
        Pipeline with an initialized database. Call start() to begin
        background sync.
    """
    if database is None:
        database = LocalDatabase(settings.local_db)
    await database.init()

    client = AnalyticsIngestClient(settings.analytics, transport=transport)
    logger.info(
        "Analytics pipeline created: db=%s, ingest=%s",
        settings.local_db.path,
        settings.analytics.ingest_url,
    )
    return AnalyticsPipeline(settings, database, client, conditions=conditions, rng=rng)
