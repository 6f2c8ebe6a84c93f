# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Integration tests for the local analytics store on SQLite."""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from src.domains.analytics.exceptions import StorageError
from src.domains.analytics.models import BatchStatus, SyncBatch
from src.domains.analytics.repository import AnalyticsStore
from src.infrastructure.database import LocalDatabase

pytestmark = pytest.mark.integration


def _empty_batch(created_at: datetime | None = None) -> SyncBatch:
    return SyncBatch(
        id=str(uuid4()),
        status=BatchStatus.OPEN,
        event_ids=[],
        created_at=created_at or datetime.now(timezone.utc),
    )


class TestEvents:
    """Tests for event storage."""

    @pytest.mark.asyncio
    async def test_add_and_list_pending(self, store: AnalyticsStore, make_event):
        """Test pending events are listed oldest first."""
        newer = make_event(age_seconds=10)
        older = make_event(age_seconds=60)
        await store.add_event(newer)
        await store.add_event(older)

        pending = await store.list_pending()

        assert [e.id for e in pending] == [older.id, newer.id]
        assert pending[0] == older
        assert await store.count_pending() == 2

    @pytest.mark.asyncio
    async def test_oldest_pending_created_at(self, store: AnalyticsStore, make_event):
        """Test the oldest pending timestamp is returned as aware UTC."""
        assert await store.oldest_pending_created_at() is None

        older = make_event(age_seconds=120)
        await store.add_event(older)
        await store.add_event(make_event(age_seconds=5))

        oldest = await store.oldest_pending_created_at()

        assert oldest == older.created_at
        assert oldest.tzinfo is not None

    @pytest.mark.asyncio
    async def test_get_events_preserves_requested_order(self, store: AnalyticsStore, make_event):
        """Test events are returned in the order of the requested ids."""
        events = [make_event(age_seconds=i) for i in range(3)]
        for event in events:
            await store.add_event(event)

        ids = [events[2].id, events[0].id, events[1].id]

        assert [e.id for e in await store.get_events(ids)] == ids

    @pytest.mark.asyncio
    async def test_write_failure_raises_storage_error(self, store: AnalyticsStore, make_event):
        """Test database failures surface as StorageError."""
        with patch(
            "sqlalchemy.ext.asyncio.AsyncConnection.execute",
            side_effect=OperationalError("INSERT", {}, Exception("disk I/O error")),
        ):
            with pytest.raises(StorageError):
                await store.add_event(make_event())

    @pytest.mark.asyncio
    async def test_uninitialized_database_raises_storage_error(self, settings, make_event):
        """Test using the store before init() fails cleanly."""
        store = AnalyticsStore(LocalDatabase(settings.local_db))

        with pytest.raises(StorageError):
            await store.add_event(make_event())


class TestBatches:
    """Tests for batch storage and transitions."""

    @pytest.mark.asyncio
    async def test_open_batch_takes_oldest(self, store: AnalyticsStore, make_event):
        """Test an open batch takes the oldest pending events up to the limit."""
        events = [make_event(age_seconds=100 - i) for i in range(5)]
        for event in events:
            await store.add_event(event)

        batch = await store.open_batch(_empty_batch(), limit=3)

        assert batch.event_ids == [e.id for e in events[:3]]
        assert await store.count_pending() == 2
        stored = await store.get_batch(batch.id)
        assert stored.status == BatchStatus.OPEN
        assert stored.event_ids == batch.event_ids

    @pytest.mark.asyncio
    async def test_open_batch_with_nothing_pending(self, store: AnalyticsStore):
        """Test no batch is created when nothing is pending."""
        assert await store.open_batch(_empty_batch(), limit=10) is None
        assert await store.count_batches(BatchStatus.OPEN) == 0

    @pytest.mark.asyncio
    async def test_transition_is_compare_and_set(self, store: AnalyticsStore, make_event):
        """Test a transition only applies from the expected state."""
        await store.add_event(make_event())
        batch = await store.open_batch(_empty_batch(), limit=10)

        assert await store.transition_batch(batch.id, (BatchStatus.SEALED,), BatchStatus.SENDING) is False
        assert await store.transition_batch(batch.id, (BatchStatus.OPEN,), BatchStatus.SEALED) is True
        assert (await store.get_batch(batch.id)).status == BatchStatus.SEALED

    @pytest.mark.asyncio
    async def test_transition_cannot_change_membership(self, store: AnalyticsStore):
        """Test event membership is not part of a transition."""
        with pytest.raises(ValueError):
            await store.transition_batch("b", (BatchStatus.OPEN,), BatchStatus.SEALED, event_ids=[])

    @pytest.mark.asyncio
    async def test_replace_properties_requires_open_batch(self, store: AnalyticsStore, make_event):
        """Test event contents are frozen once the batch is sealed."""
        event = make_event(properties={"mood": "happy"})
        await store.add_event(event)
        batch = await store.open_batch(_empty_batch(), limit=10)
        await store.transition_batch(batch.id, (BatchStatus.OPEN,), BatchStatus.SEALED)

        with pytest.raises(StorageError):
            await store.replace_properties([event], batch.id)

    @pytest.mark.asyncio
    async def test_delete_finished_batches(self, store: AnalyticsStore, make_event):
        """Test old sent and failed batches are purged with their events."""
        old = datetime.now(timezone.utc) - timedelta(days=10)
        events = {}
        for status in (BatchStatus.SENT, BatchStatus.FAILED, BatchStatus.SEALED):
            events[status] = make_event()
            await store.add_event(events[status])
            batch = await store.open_batch(_empty_batch(created_at=old), limit=1)
            await store.transition_batch(batch.id, (BatchStatus.OPEN,), status)

        deleted = await store.delete_finished_batches(datetime.now(timezone.utc) - timedelta(days=7))

        assert deleted == 2
        assert await store.count_batches(BatchStatus.SEALED) == 1
        assert await store.count_batches(BatchStatus.SENT) == 0
        sealed = (await store.list_batches(BatchStatus.SEALED))[0]
        assert len(await store.get_events(sealed.event_ids)) == 1
        assert await store.get_events([events[BatchStatus.SENT].id]) == []
        assert await store.get_events([events[BatchStatus.FAILED].id]) == []

    @pytest.mark.asyncio
    async def test_delete_all_events(self, store: AnalyticsStore, make_event):
        """Test consent withdrawal removes every event and batch."""
        for _ in range(3):
            await store.add_event(make_event())
        await store.open_batch(_empty_batch(), limit=2)

        assert await store.delete_all_events() == 3
        assert await store.count_pending() == 0
        assert await store.count_batches(BatchStatus.OPEN) == 0
