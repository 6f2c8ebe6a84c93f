# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Batch manager: groups pending events into sealed batches.

Formation runs under a single asyncio.Lock, so at most one batch is ever
open. A batch is opened with the oldest pending events, its events are
passed through the compliance gate, the redacted properties are written
back, and only then is the batch sealed. Once sealed, membership and
event contents never change.

Formation is a no-op while fewer than the minimum number of events are
pending and the oldest of them is younger than the maximum age.

Usage:
    manager = BatchManager(store, gate, max_batch_events=50,
                           min_batch_events=10,
                           max_batch_age=timedelta(minutes=5))

    batch = await manager.form_batch()
    if batch is not None:
        print(batch.status)  # BatchStatus.SEALED
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable
from uuid import uuid4

from src.domains.analytics.compliance import ComplianceGate
from src.domains.analytics.exceptions import ComplianceViolation
from src.domains.analytics.models import BatchHealthReport, BatchStatus, SyncBatch
from src.domains.analytics.repository import AnalyticsStore
from src.utils.datetime import utc_now

logger = logging.getLogger(__name__)


class BatchManager:
    """Forms, seals and maintains sync batches.

    Attributes:
        max_batch_events: Default upper bound on events per batch.
        min_batch_events: Default count that triggers formation.
        max_batch_age: Default age of the oldest pending event that
            triggers formation.
    """

    def __init__(
        self,
        store: AnalyticsStore,
        gate: ComplianceGate,
        max_batch_events: int = 50,
        min_batch_events: int = 10,
        max_batch_age: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the batch manager.

        Args:
            store: Local analytics store.
            gate: Compliance gate run before sealing.
            max_batch_events: Default upper bound on events per batch.
            min_batch_events: Default count that triggers formation.
            max_batch_age: Default age that triggers formation.
            clock: Source of the current time.
        """
        self._store = store
        self._gate = gate
        self._clock = clock
        self._lock = asyncio.Lock()
        self.max_batch_events = max_batch_events
        self.min_batch_events = min_batch_events
        self.max_batch_age = max_batch_age

    async def form_batch(
        self,
        max_events: int | None = None,
        max_age: timedelta | None = None,
    ) -> SyncBatch | None:
        """Form and seal one batch from pending events.

        An open batch left behind by an interrupted formation is sealed
        first and returned instead of forming a new one.

        Args:
            max_events: Upper bound on events in the batch.
            max_age: Pending-event age that triggers formation.

        Returns:
            The sealed batch, or None if formation was a no-op.

        Raises:
            ValueError: If max_events is less than 1.
            StorageError: If the local store fails.
        """
        if max_events is None:
            max_events = self.max_batch_events
        elif max_events < 1:
            raise ValueError(f"max_events must be at least 1, got {max_events}")
        max_age = max_age if max_age is not None else self.max_batch_age

        async with self._lock:
            leftover = await self._store.list_batches(BatchStatus.OPEN, limit=1)
            if leftover:
                logger.info("Resuming open batch %s", leftover[0].id)
                return await self._seal(leftover[0])

            pending = await self._store.count_pending()
            if pending == 0:
                return None

            now = self._clock()
            oldest = await self._store.oldest_pending_created_at()
            age = now - oldest if oldest is not None else timedelta(0)
            threshold = min(self.min_batch_events, max_events)

            if pending < threshold and age < max_age:
                logger.debug(
                    "Batch formation skipped: pending=%d (threshold %d), oldest age=%.1fs",
                    pending,
                    threshold,
                    age.total_seconds(),
                )
                return None

            batch = await self._store.open_batch(
                SyncBatch(
                    id=str(uuid4()),
                    status=BatchStatus.OPEN,
                    event_ids=[],
                    created_at=now,
                ),
                limit=max_events,
            )
            if batch is None:
                return None

            return await self._seal(batch)

    async def form_all_batches(
        self,
        max_events: int | None = None,
        max_age: timedelta | None = None,
    ) -> list[SyncBatch]:
        """Form batches until formation becomes a no-op.

        Returns:
            Sealed batches in formation order.
        """
        batches = []
        while True:
            batch = await self.form_batch(max_events=max_events, max_age=max_age)
            if batch is None:
                return batches
            batches.append(batch)

    async def _seal(self, batch: SyncBatch) -> SyncBatch | None:
        """Redact an open batch's events and seal it.

        Returns:
            The sealed batch, or None if the redacted events still failed
            the compliance check (the batch then stays open).
        """
        events = await self._store.get_events(batch.event_ids)
        redacted, _ = self._gate.apply(events)
        await self._store.replace_properties(redacted, batch.id)

        try:
            self._gate.assert_clean(redacted)
        except ComplianceViolation as e:
            logger.error("Batch %s not sealed: %s", batch.id, e)
            return None

        sealed_at = self._clock()
        sealed = await self._store.transition_batch(
            batch.id,
            (BatchStatus.OPEN,),
            BatchStatus.SEALED,
            sealed_at=sealed_at,
        )
        if not sealed:
            return None

        batch.status = BatchStatus.SEALED
        batch.sealed_at = sealed_at
        logger.info("Sealed batch %s with %d events", batch.id, batch.event_count)
        return batch

    async def retry_failed_batch(self, batch_id: str) -> bool:
        """Make a failed batch eligible for sending again.

        Args:
            batch_id: Batch to retry.

        Returns:
            True if the batch was failed and is now sealed.
        """
        retried = await self._store.transition_batch(
            batch_id,
            (BatchStatus.FAILED,),
            BatchStatus.SEALED,
            attempt_count=0,
            next_attempt_at=None,
            last_error=None,
        )
        if retried:
            logger.info("Failed batch %s re-queued for sync", batch_id)
        return retried

    async def get_health_report(self) -> BatchHealthReport:
        """Summarize the local backlog.

        Returns:
            BatchHealthReport with status and recommendations.
        """
        pending_events = await self._store.count_pending()
        sealed = await self._store.count_batches(BatchStatus.SEALED)
        failed = await self._store.count_batches(BatchStatus.FAILED)

        if failed > 10:
            status = "unhealthy"
        elif sealed > 20:
            status = "concerning"
        elif pending_events > 1000:
            status = "backlog"
        else:
            status = "healthy"

        recommendations = []
        if failed > 5:
            recommendations.append("High failure rate detected. Check network connectivity.")
        if sealed > 15:
            recommendations.append("Large number of unsent batches. Consider increasing sync frequency.")
        if pending_events > 500:
            recommendations.append("Event backlog detected. Enable more aggressive batching.")

        return BatchHealthReport(
            health_status=status,
            pending_events=pending_events,
            sealed_batches=sealed,
            failed_batches=failed,
            recommendations=recommendations,
        )

    async def cleanup_old_batches(self, retention_days: int = 7) -> int:
        """Delete sent and failed batches older than ``retention_days``.

        Returns:
            Number of batches deleted.
        """
        deleted = await self._store.delete_finished_batches(self._clock() - timedelta(days=retention_days))
        if deleted:
            logger.info("Cleaned up %d finished batches", deleted)
        return deleted
