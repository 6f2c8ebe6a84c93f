# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for row and wire mapping of analytics values."""

from datetime import datetime, timezone

from src.domains.analytics.models import BatchStatus, SyncBatch
from src.domains.analytics.serialization import (
    batch_to_row,
    batch_to_wire,
    event_to_row,
    event_to_wire,
    row_to_batch,
    row_to_event,
)


class TestEventMapping:
    """Tests for event row and wire mapping."""

    def test_row_restores_utc_from_naive(self, make_event) -> None:
        """Test naive timestamps read back from SQLite are treated as UTC."""
        event = make_event(lesson_id="lesson-1", event_category="learning")
        row = event_to_row(event)
        row["created_at"] = event.created_at.replace(tzinfo=None)
        row["batch_id"] = None

        restored = row_to_event(row)

        assert restored == event
        assert restored.created_at.tzinfo is not None

    def test_wire_uses_camel_case(self, make_event) -> None:
        """Test the ingest representation uses camelCase keys."""
        created = datetime(2025, 3, 1, 9, 30, tzinfo=timezone.utc)
        event = make_event(
            event_type="emotional_checkin",
            properties={"mood": "calm"},
            created_at=created,
            lesson_id="lesson-5",
        )

        wire = event_to_wire(event)

        assert set(wire) == {
            "id", "classroomId", "lessonId", "sessionId",
            "eventType", "eventCategory", "properties", "createdAt",
        }
        assert wire["eventType"] == "emotional_checkin"
        assert wire["lessonId"] == "lesson-5"
        assert wire["createdAt"].startswith("2025-03-01T09:30:00")

    def test_batch_body_is_array(self, make_event) -> None:
        """Test a batch is sent as a JSON array in event order."""
        events = [make_event(), make_event()]

        body = batch_to_wire(events)

        assert [item["id"] for item in body] == [e.id for e in events]


class TestBatchMapping:
    """Tests for batch row mapping."""

    def test_status_stored_as_value(self) -> None:
        """Test the status enum is persisted by value."""
        batch = SyncBatch(
            id="batch-1",
            status=BatchStatus.SEALED,
            event_ids=["e1", "e2"],
            created_at=datetime(2025, 3, 1, tzinfo=timezone.utc),
            attempt_count=1,
        )

        row = batch_to_row(batch)

        assert row["status"] == "sealed"
        assert row["event_ids"] == ["e1", "e2"]

    def test_row_to_batch(self) -> None:
        """Test rows map back to batches with UTC timestamps."""
        row = {
            "id": "batch-1",
            "status": "failed",
            "event_ids": ["e1"],
            "created_at": datetime(2025, 3, 1),
            "sealed_at": datetime(2025, 3, 1, 0, 1),
            "sent_at": None,
            "attempt_count": 3,
            "next_attempt_at": None,
            "last_error": "[503] Ingest endpoint temporarily unavailable",
        }

        batch = row_to_batch(row)

        assert batch.status is BatchStatus.FAILED
        assert batch.created_at.tzinfo is not None
        assert batch.sealed_at == datetime(2025, 3, 1, 0, 1, tzinfo=timezone.utc)
        assert batch.sent_at is None
        assert batch.event_count == 1
