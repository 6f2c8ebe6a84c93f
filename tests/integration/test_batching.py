# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Integration tests for batch formation, sealing and maintenance."""

import asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from src.domains.analytics.batching import BatchManager
from src.domains.analytics.compliance import (
    COMPLIANCE_MARKER_KEY,
    ComplianceGate,
    hash_identifier,
)
from src.domains.analytics.models import BatchStatus, SyncBatch
from src.domains.analytics.repository import AnalyticsStore

pytestmark = pytest.mark.integration


@pytest.fixture
def manager(store: AnalyticsStore, gate: ComplianceGate) -> BatchManager:
    """Create a batch manager with default thresholds."""
    return BatchManager(
        store,
        gate,
        max_batch_events=50,
        min_batch_events=10,
        max_batch_age=timedelta(minutes=5),
    )


async def _add_events(store: AnalyticsStore, make_event, count: int, **kwargs) -> list:
    events = [make_event(age_seconds=count - i, **kwargs) for i in range(count)]
    for event in events:
        await store.add_event(event)
    return events


class TestFormBatch:
    """Tests for BatchManager.form_batch."""

    @pytest.mark.asyncio
    async def test_75_pending_yields_one_batch_of_50(self, manager, store, make_event):
        """Test a full batch takes the 50 oldest events and leaves 25 pending."""
        events = await _add_events(store, make_event, 75)

        batch = await manager.form_batch(max_events=50)

        assert batch is not None
        assert batch.status == BatchStatus.SEALED
        assert batch.event_count == 50
        assert batch.event_ids == [e.id for e in events[:50]]
        assert await store.count_pending() == 25
        assert await store.count_batches(BatchStatus.SEALED) == 1

    @pytest.mark.asyncio
    async def test_below_threshold_is_noop(self, manager, store, make_event):
        """Test too few young events do not form a batch."""
        await _add_events(store, make_event, 5)

        assert await manager.form_batch() is None
        assert await store.count_pending() == 5
        assert await store.count_batches(BatchStatus.SEALED) == 0

    @pytest.mark.asyncio
    async def test_nothing_pending_is_noop(self, manager):
        """Test an empty store forms nothing."""
        assert await manager.form_batch() is None

    @pytest.mark.asyncio
    async def test_max_age_triggers_small_batch(self, manager, store, make_event):
        """Test an old event triggers formation below the size threshold."""
        await store.add_event(make_event(age_seconds=600))
        await store.add_event(make_event(age_seconds=10))

        batch = await manager.form_batch()

        assert batch is not None
        assert batch.event_count == 2
        assert await store.count_pending() == 0

    @pytest.mark.asyncio
    async def test_explicit_max_age(self, manager, store, make_event):
        """Test a caller-supplied max age overrides the default."""
        await _add_events(store, make_event, 3)

        batch = await manager.form_batch(max_age=timedelta(0))

        assert batch is not None
        assert batch.event_count == 3

    @pytest.mark.asyncio
    async def test_sealed_batch_is_redacted(self, manager, store, make_event):
        """Test identifying fields never reach a sealed batch."""
        await _add_events(
            store,
            make_event,
            10,
            properties={
                "student_name": "Ada Lovelace",
                "parentEmail": "parent@example.com",
                "free_text": "I felt sad today",
                "session_context": "call 555-123-4567",
                "facilitator_id": "fac-42",
                "mood": "calm",
                "unknown_field": "value",
            },
        )

        batch = await manager.form_batch()
        events = await store.get_events(batch.event_ids)

        assert len(events) == 10
        for event in events:
            assert set(event.properties) == {
                "session_context",
                "facilitator_id",
                "mood",
                COMPLIANCE_MARKER_KEY,
            }
            assert event.properties["session_context"] == "[REDACTED]"
            assert event.properties["facilitator_id"] == hash_identifier("fac-42")
        manager._gate.assert_clean(events)

    @pytest.mark.asyncio
    async def test_each_event_in_exactly_one_batch(self, manager, store, make_event):
        """Test batching assigns every recorded event to exactly one batch."""
        events = await _add_events(store, make_event, 137)

        batches = await manager.form_all_batches(max_age=timedelta(0))

        assert [b.event_count for b in batches] == [50, 50, 37]
        assigned = [event_id for b in batches for event_id in b.event_ids]
        assert sorted(assigned) == sorted(e.id for e in events)
        assert len(set(assigned)) == len(assigned)
        assert await store.count_pending() == 0

    @pytest.mark.asyncio
    async def test_concurrent_formation_never_overlaps(self, manager, store, make_event):
        """Test parallel callers never put one event in two batches."""
        await _add_events(store, make_event, 120)

        results = await asyncio.gather(*[manager.form_batch(max_events=25) for _ in range(6)])

        batches = [b for b in results if b is not None]
        assigned = [event_id for b in batches for event_id in b.event_ids]
        assert len(assigned) == len(set(assigned)) == 120
        assert await store.count_batches(BatchStatus.OPEN) == 0

    @pytest.mark.asyncio
    async def test_resumes_open_batch(self, manager, store, make_event):
        """Test a batch left open by an interrupted formation is sealed first."""
        await _add_events(store, make_event, 3, properties={"student_name": "Ada", "mood": "ok"})
        leftover = await store.open_batch(
            SyncBatch(
                id=str(uuid4()),
                status=BatchStatus.OPEN,
                event_ids=[],
                created_at=datetime.now(timezone.utc),
            ),
            limit=10,
        )

        batch = await manager.form_batch()

        assert batch.id == leftover.id
        assert batch.status == BatchStatus.SEALED
        events = await store.get_events(batch.event_ids)
        assert all("student_name" not in e.properties for e in events)

    @pytest.mark.asyncio
    async def test_resumed_batch_keeps_existing_pseudonyms(self, manager, store, make_event):
        """Test resuming a batch whose events were already redacted hashes nothing twice."""
        await _add_events(store, make_event, 3, properties={"facilitator_id": "fac-42", "mood": "ok"})
        leftover = await store.open_batch(
            SyncBatch(
                id=str(uuid4()),
                status=BatchStatus.OPEN,
                event_ids=[],
                created_at=datetime.now(timezone.utc),
            ),
            limit=10,
        )
        # Formation stopped after the redacted properties were written
        redacted, _ = manager._gate.apply(await store.get_events(leftover.event_ids))
        await store.replace_properties(redacted, leftover.id)

        batch = await manager.form_batch()

        assert batch.id == leftover.id
        assert batch.status == BatchStatus.SEALED
        events = await store.get_events(batch.event_ids)
        assert len(events) == 3
        for event in events:
            assert event.properties["facilitator_id"] == hash_identifier("fac-42")
            assert event.properties["mood"] == "ok"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("max_events", [0, -1])
    async def test_rejects_non_positive_max_events(self, manager, store, make_event, max_events):
        """Test a batch size below one is refused before touching the store."""
        await _add_events(store, make_event, 10)

        with pytest.raises(ValueError):
            await manager.form_batch(max_events=max_events)

        assert await store.count_pending() == 10
        assert await store.count_batches(BatchStatus.OPEN) == 0


class TestMaintenance:
    """Tests for retry, health and cleanup."""

    @pytest.mark.asyncio
    async def test_retry_failed_batch(self, manager, store, make_event):
        """Test a failed batch can be put back in the sync queue."""
        await _add_events(store, make_event, 10)
        batch = await manager.form_batch()
        await store.transition_batch(batch.id, (BatchStatus.SEALED,), BatchStatus.FAILED, attempt_count=3)

        assert await manager.retry_failed_batch(batch.id) is True

        stored = await store.get_batch(batch.id)
        assert stored.status == BatchStatus.SEALED
        assert stored.attempt_count == 0
        assert stored.next_attempt_at is None

    @pytest.mark.asyncio
    async def test_retry_ignores_non_failed(self, manager, store, make_event):
        """Test only failed batches can be retried."""
        await _add_events(store, make_event, 10)
        batch = await manager.form_batch()

        assert await manager.retry_failed_batch(batch.id) is False

    @pytest.mark.asyncio
    async def test_health_report(self, manager, store, make_event):
        """Test the health report counts the backlog."""
        await _add_events(store, make_event, 12)
        await manager.form_batch(max_events=10)

        report = await manager.get_health_report()

        assert report.health_status == "healthy"
        assert report.pending_events == 2
        assert report.sealed_batches == 1
        assert report.failed_batches == 0
        assert report.recommendations == []

    @pytest.mark.asyncio
    async def test_cleanup_old_batches(self, store, gate, make_event):
        """Test finished batches past retention are removed."""
        later = datetime.now(timezone.utc) + timedelta(days=8)
        manager = BatchManager(store, gate, min_batch_events=1, clock=lambda: later)
        await _add_events(store, make_event, 2)
        batch = await manager.form_batch(max_events=1)
        await store.transition_batch(batch.id, (BatchStatus.SEALED,), BatchStatus.SENT)

        manager_now = BatchManager(store, gate, min_batch_events=1, clock=lambda: later + timedelta(days=8))
        deleted = await manager_now.cleanup_old_batches(retention_days=7)

        assert deleted == 1
        assert await store.get_batch(batch.id) is None
        assert await store.count_pending() == 1
