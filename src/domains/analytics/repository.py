# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Local store for pending events and batch metadata.

AnalyticsStore is the only component that touches the analytics tables.
Every mutation goes through LocalDatabase.write(), so mutations are
serialized; batch state changes are compare-and-set on the current
status, which keeps transitions single-writer even when two callers race
for the same batch.

Infrastructure DatabaseError is translated to StorageError here so that
callers only deal with the analytics exception hierarchy.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncConnection

from src.domains.analytics.exceptions import StorageError
from src.domains.analytics.models import AnalyticsEvent, BatchStatus, SyncBatch
from src.domains.analytics.serialization import (
    batch_to_row,
    event_to_row,
    row_to_batch,
    row_to_event,
)
from src.infrastructure.database import (
    DatabaseError,
    LocalDatabase,
    analytics_events,
    analytics_sync_batches,
)
from src.utils.datetime import ensure_utc

logger = logging.getLogger(__name__)


class AnalyticsStore:
    """Repository over the analytics_events and analytics_sync_batches tables.

    Attributes:
        database: Local database handle.
    """

    def __init__(self, database: LocalDatabase) -> None:
        """Initialize the store.

        Args:
            database: Initialized local database handle.
        """
        self.database = database

    @asynccontextmanager
    async def _write(self, operation: str) -> AsyncIterator[AsyncConnection]:
        try:
            async with self.database.write() as conn:
                yield conn
        except DatabaseError as e:
            raise StorageError(f"Failed to {operation}", {"error": str(e)}) from e

    @asynccontextmanager
    async def _read(self, operation: str) -> AsyncIterator[AsyncConnection]:
        try:
            async with self.database.read() as conn:
                yield conn
        except DatabaseError as e:
            raise StorageError(f"Failed to {operation}", {"error": str(e)}) from e

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def add_event(self, event: AnalyticsEvent) -> None:
        """Append an event to the pending store.

        Raises:
            StorageError: If the event cannot be written.
        """
        async with self._write("store analytics event") as conn:
            await conn.execute(analytics_events.insert().values(**event_to_row(event)))

    async def get_events(self, event_ids: list[str]) -> list[AnalyticsEvent]:
        """Load events by id, preserving the order of ``event_ids``."""
        if not event_ids:
            return []

        async with self._read("load analytics events") as conn:
            result = await conn.execute(
                select(analytics_events).where(analytics_events.c.id.in_(event_ids))
            )
            by_id = {row.id: row_to_event(row._mapping) for row in result}

        return [by_id[event_id] for event_id in event_ids if event_id in by_id]

    async def list_pending(self, limit: int | None = None) -> list[AnalyticsEvent]:
        """List events not yet assigned to a batch, oldest first."""
        query = (
            select(analytics_events)
            .where(analytics_events.c.batch_id.is_(None))
            .order_by(analytics_events.c.created_at, analytics_events.c.id)
        )
        if limit is not None:
            query = query.limit(limit)

        async with self._read("list pending events") as conn:
            result = await conn.execute(query)
            return [row_to_event(row._mapping) for row in result]

    async def count_pending(self) -> int:
        """Count events not yet assigned to a batch."""
        async with self._read("count pending events") as conn:
            result = await conn.execute(
                select(func.count())
                .select_from(analytics_events)
                .where(analytics_events.c.batch_id.is_(None))
            )
            return result.scalar_one()

    async def oldest_pending_created_at(self) -> datetime | None:
        """Get the creation time of the oldest pending event."""
        async with self._read("inspect pending events") as conn:
            result = await conn.execute(
                select(func.min(analytics_events.c.created_at)).where(
                    analytics_events.c.batch_id.is_(None)
                )
            )
            return ensure_utc(result.scalar_one_or_none())

    async def replace_properties(self, events: list[AnalyticsEvent], batch_id: str) -> None:
        """Persist redacted properties for events of an open batch.

        Only rows that belong to ``batch_id`` are touched, and only while
        that batch is still open.

        Raises:
            StorageError: If the batch is no longer open or the write fails.
        """
        async with self._write("store redacted events") as conn:
            status = await self._batch_status(conn, batch_id)
            if status != BatchStatus.OPEN.value:
                raise StorageError(
                    "Cannot modify events of a batch that is not open",
                    {"batch_id": batch_id, "status": status},
                )
            for event in events:
                await conn.execute(
                    update(analytics_events)
                    .where(analytics_events.c.id == event.id)
                    .where(analytics_events.c.batch_id == batch_id)
                    .values(properties=dict(event.properties))
                )

    async def delete_all_events(self) -> int:
        """Delete every stored event and batch (consent withdrawal).

        Returns:
            Number of events deleted.
        """
        async with self._write("clear analytics data") as conn:
            result = await conn.execute(delete(analytics_events))
            await conn.execute(delete(analytics_sync_batches))
            return result.rowcount or 0

    async def delete_expired_pending(self, cutoff: datetime) -> int:
        """Delete unbatched events created before ``cutoff``.

        Returns:
            Number of events deleted.
        """
        async with self._write("expire pending events") as conn:
            result = await conn.execute(
                delete(analytics_events)
                .where(analytics_events.c.batch_id.is_(None))
                .where(analytics_events.c.created_at < cutoff)
            )
            return result.rowcount or 0

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    async def open_batch(self, batch: SyncBatch, limit: int) -> SyncBatch | None:
        """Create an open batch holding the oldest pending events.

        Selection, batch insert and event assignment happen in one
        transaction, so an event can never land in two batches.

        Args:
            batch: Empty batch in OPEN state; its event_ids are filled in.
            limit: Maximum number of events to move into the batch.

        Returns:
            The populated batch, or None if nothing was pending.

        Raises:
            StorageError: If the write fails.
        """
        async with self._write("open batch") as conn:
            result = await conn.execute(
                select(analytics_events.c.id)
                .where(analytics_events.c.batch_id.is_(None))
                .order_by(analytics_events.c.created_at, analytics_events.c.id)
                .limit(limit)
            )
            event_ids = list(result.scalars())
            if not event_ids:
                return None

            batch.event_ids = event_ids
            await conn.execute(analytics_sync_batches.insert().values(**batch_to_row(batch)))
            assigned = await conn.execute(
                update(analytics_events)
                .where(analytics_events.c.id.in_(event_ids))
                .where(analytics_events.c.batch_id.is_(None))
                .values(batch_id=batch.id)
            )
            if assigned.rowcount != len(event_ids):
                raise StorageError(
                    "Pending events changed while opening batch",
                    {"batch_id": batch.id, "expected": len(event_ids), "assigned": assigned.rowcount},
                )

        return batch

    async def get_batch(self, batch_id: str) -> SyncBatch | None:
        """Load a batch by id."""
        async with self._read("load batch") as conn:
            result = await conn.execute(
                select(analytics_sync_batches).where(analytics_sync_batches.c.id == batch_id)
            )
            row = result.first()

        return row_to_batch(row._mapping) if row is not None else None

    async def list_batches(
        self,
        status: BatchStatus,
        limit: int | None = None,
    ) -> list[SyncBatch]:
        """List batches in a given state, oldest first."""
        query = (
            select(analytics_sync_batches)
            .where(analytics_sync_batches.c.status == status.value)
            .order_by(analytics_sync_batches.c.created_at, analytics_sync_batches.c.id)
        )
        if limit is not None:
            query = query.limit(limit)

        async with self._read("list batches") as conn:
            result = await conn.execute(query)
            return [row_to_batch(row._mapping) for row in result]

    async def count_batches(self, status: BatchStatus) -> int:
        """Count batches in a given state."""
        async with self._read("count batches") as conn:
            result = await conn.execute(
                select(func.count())
                .select_from(analytics_sync_batches)
                .where(analytics_sync_batches.c.status == status.value)
            )
            return result.scalar_one()

    async def transition_batch(
        self,
        batch_id: str,
        from_statuses: tuple[BatchStatus, ...],
        to_status: BatchStatus,
        **values: Any,
    ) -> bool:
        """Move a batch to a new state if it is in one of ``from_statuses``.

        Event membership is never part of a transition.

        Args:
            batch_id: Batch to update.
            from_statuses: States the batch must currently be in.
            to_status: New state.
            **values: Additional columns to set (sent_at, attempt_count, ...).

        Returns:
            True if the batch was updated, False if it was in another state.

        Raises:
            StorageError: If the write fails.
        """
        if "event_ids" in values:
            raise ValueError("Batch membership cannot change in a transition")

        async with self._write("update batch") as conn:
            result = await conn.execute(
                update(analytics_sync_batches)
                .where(analytics_sync_batches.c.id == batch_id)
                .where(analytics_sync_batches.c.status.in_([s.value for s in from_statuses]))
                .values(status=to_status.value, **values)
            )
            changed = result.rowcount == 1

        if changed:
            logger.debug(
                "Batch %s -> %s (from %s)",
                batch_id,
                to_status.value,
                "/".join(s.value for s in from_statuses),
            )
        return changed

    async def delete_finished_batches(self, cutoff: datetime) -> int:
        """Delete sent and failed batches created before ``cutoff``.

        Events of deleted sent batches are removed with them; events of
        deleted failed batches are removed as well since they were never
        going to be retried automatically.

        Returns:
            Number of batches deleted.
        """
        finished = [BatchStatus.SENT.value, BatchStatus.FAILED.value]
        async with self._write("clean up batches") as conn:
            result = await conn.execute(
                select(analytics_sync_batches.c.id)
                .where(analytics_sync_batches.c.status.in_(finished))
                .where(analytics_sync_batches.c.created_at < cutoff)
            )
            batch_ids = list(result.scalars())
            if not batch_ids:
                return 0

            await conn.execute(
                delete(analytics_events).where(analytics_events.c.batch_id.in_(batch_ids))
            )
            await conn.execute(
                delete(analytics_sync_batches).where(analytics_sync_batches.c.id.in_(batch_ids))
            )

        return len(batch_ids)

    @staticmethod
    async def _batch_status(conn: AsyncConnection, batch_id: str) -> str | None:
        result = await conn.execute(
            select(analytics_sync_batches.c.status).where(analytics_sync_batches.c.id == batch_id)
        )
        return result.scalar_one_or_none()
