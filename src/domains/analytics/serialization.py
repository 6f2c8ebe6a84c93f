# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Explicit field-by-field mapping for analytics values.

Rows are the mappings SQLAlchemy Core returns (``row._mapping``) or
accepts in ``insert().values()``. The wire format is the camelCase JSON
object the ingest endpoint expects for each event.
"""

from collections.abc import Mapping
from typing import Any

from src.domains.analytics.models import AnalyticsEvent, BatchStatus, SyncBatch
from src.utils.datetime import ensure_utc, format_iso


def event_to_row(event: AnalyticsEvent) -> dict[str, Any]:
    """Map an event to column values for analytics_events."""
    return {
        "id": event.id,
        "classroom_id": event.classroom_id,
        "lesson_id": event.lesson_id,
        "session_id": event.session_id,
        "event_type": event.event_type,
        "event_category": event.event_category,
        "properties": dict(event.properties),
        "created_at": event.created_at,
    }


def row_to_event(row: Mapping[str, Any]) -> AnalyticsEvent:
    """Map an analytics_events row to an event."""
    return AnalyticsEvent(
        id=row["id"],
        classroom_id=row["classroom_id"],
        lesson_id=row["lesson_id"],
        session_id=row["session_id"],
        event_type=row["event_type"],
        event_category=row["event_category"],
        properties=dict(row["properties"] or {}),
        created_at=ensure_utc(row["created_at"]),
    )


def batch_to_row(batch: SyncBatch) -> dict[str, Any]:
    """Map a batch to column values for analytics_sync_batches."""
    return {
        "id": batch.id,
        "status": batch.status.value,
        "event_ids": list(batch.event_ids),
        "created_at": batch.created_at,
        "sealed_at": batch.sealed_at,
        "sent_at": batch.sent_at,
        "attempt_count": batch.attempt_count,
        "next_attempt_at": batch.next_attempt_at,
        "last_error": batch.last_error,
    }


def row_to_batch(row: Mapping[str, Any]) -> SyncBatch:
    """Map an analytics_sync_batches row to a batch."""
    return SyncBatch(
        id=row["id"],
        status=BatchStatus(row["status"]),
        event_ids=list(row["event_ids"] or []),
        created_at=ensure_utc(row["created_at"]),
        sealed_at=ensure_utc(row["sealed_at"]),
        sent_at=ensure_utc(row["sent_at"]),
        attempt_count=row["attempt_count"] or 0,
        next_attempt_at=ensure_utc(row["next_attempt_at"]),
        last_error=row["last_error"],
    )


def event_to_wire(event: AnalyticsEvent) -> dict[str, Any]:
    """Map an event to its JSON representation for the ingest endpoint."""
    return {
        "id": event.id,
        "classroomId": event.classroom_id,
        "lessonId": event.lesson_id,
        "sessionId": event.session_id,
        "eventType": event.event_type,
        "eventCategory": event.event_category,
        "properties": dict(event.properties),
        "createdAt": format_iso(event.created_at),
    }


def batch_to_wire(events: list[AnalyticsEvent]) -> list[dict[str, Any]]:
    """Map a batch's events to the JSON array body of an ingest request."""
    return [event_to_wire(event) for event in events]
