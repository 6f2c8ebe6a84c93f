# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Table definitions for the local analytics store.

Tables are declared with SQLAlchemy Core. Conversion between rows and
domain values is done by the explicit mapping functions in
src.domains.analytics.serialization.

Tables:
    analytics_events: Recorded events. batch_id is NULL while pending.
    analytics_sync_batches: Batch lifecycle and retry bookkeeping.
"""

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)

metadata = MetaData()

analytics_events = Table(
    "analytics_events",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("classroom_id", String(64), nullable=False),
    Column("lesson_id", String(64), nullable=True),
    Column("session_id", String(64), nullable=False),
    Column("event_type", String(100), nullable=False),
    Column("event_category", String(50), nullable=True),
    Column("properties", JSON, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("batch_id", String(36), nullable=True),
    Index("ix_analytics_events_batch_created", "batch_id", "created_at"),
)

analytics_sync_batches = Table(
    "analytics_sync_batches",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("status", String(16), nullable=False, index=True),
    Column("event_ids", JSON, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("sealed_at", DateTime(timezone=True), nullable=True),
    Column("sent_at", DateTime(timezone=True), nullable=True),
    Column("attempt_count", Integer, nullable=False, default=0),
    Column("next_attempt_at", DateTime(timezone=True), nullable=True),
    Column("last_error", Text, nullable=True),
)
