# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Domain models for the analytics pipeline.

Incoming events are validated with a Pydantic request model; everything
the pipeline stores or passes around internally is a plain dataclass.

Models:
    AnalyticsEventCreate: Validated input from UI/feature code.
    AnalyticsEvent: Recorded event. Immutable.
    SyncBatch: Group of events with its lifecycle state.
    SyncAttempt: One network try against a batch. Never persisted.
    SyncResult: Outcome of one coordinator pass.
    DeviceConditions: Connectivity and power snapshot.
    BatchHealthReport: Backlog summary for ops.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from src.utils.datetime import utc_now


class BatchStatus(str, Enum):
    """Lifecycle states of a sync batch."""

    OPEN = "open"
    SEALED = "sealed"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"


class SyncState(str, Enum):
    """States of the sync coordinator."""

    IDLE = "idle"
    CHECKING = "checking"
    SENDING = "sending"
    BACKOFF = "backoff"


class NetworkQuality(int, Enum):
    """Coarse network quality, ordered from worst to best."""

    NONE = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3


class BatteryLevel(int, Enum):
    """Coarse battery level, ordered from worst to best."""

    CRITICAL = 0
    LOW = 1
    NORMAL = 2
    HIGH = 3


class AnalyticsEventCreate(BaseModel):
    """Event submitted by UI or feature code.

    Attributes:
        classroom_id: Classroom the event belongs to.
        lesson_id: Lesson the event belongs to, if any.
        session_id: Anonymous student session identifier; the recorder
            stamps its own when omitted.
        event_type: Event type (see EventTypes).
        event_category: Optional classification (engagement, learning, ...).
        properties: Free-form event properties.
    """

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    classroom_id: str = Field(min_length=1, max_length=64)
    lesson_id: str | None = Field(default=None, min_length=1, max_length=64)
    session_id: str | None = Field(default=None, min_length=1, max_length=64)
    event_type: str = Field(min_length=1, max_length=100)
    event_category: str | None = Field(default=None, max_length=50)
    properties: dict[str, Any] = Field(default_factory=dict)


@dataclass(frozen=True)
class AnalyticsEvent:
    """A recorded analytics event.

    Attributes:
        id: Event identifier (UUID string).
        classroom_id: Classroom the event belongs to.
        session_id: Anonymous student session identifier.
        event_type: Event type.
        created_at: When the event was recorded (UTC).
        properties: Event properties.
        lesson_id: Lesson the event belongs to, if any.
        event_category: Optional classification.
    """

    id: str
    classroom_id: str
    session_id: str
    event_type: str
    created_at: datetime
    properties: dict[str, Any] = field(default_factory=dict)
    lesson_id: str | None = None
    event_category: str | None = None


@dataclass
class SyncBatch:
    """A bounded group of events transmitted together.

    Attributes:
        id: Batch identifier (UUID string).
        status: Current lifecycle state.
        event_ids: Member events, oldest first.
        created_at: When the batch was opened.
        sealed_at: When membership was frozen.
        sent_at: When the server acknowledged the batch.
        attempt_count: Failed send attempts so far.
        next_attempt_at: Earliest time of the next send attempt.
        last_error: Description of the most recent failure.
    """

    id: str
    status: BatchStatus
    event_ids: list[str]
    created_at: datetime
    sealed_at: datetime | None = None
    sent_at: datetime | None = None
    attempt_count: int = 0
    next_attempt_at: datetime | None = None
    last_error: str | None = None

    @property
    def event_count(self) -> int:
        """Number of events in the batch."""
        return len(self.event_ids)

    def is_due(self, now: datetime) -> bool:
        """Check whether a sealed batch may be sent at ``now``."""
        if self.status != BatchStatus.SEALED:
            return False
        return self.next_attempt_at is None or self.next_attempt_at <= now


@dataclass
class SyncAttempt:
    """One network try against a sealed batch.

    Attributes:
        batch_id: Batch being sent.
        attempt_number: 1-based attempt counter.
        started_at: When the request started.
        finished_at: When the request finished or was aborted.
        outcome: sent, retry, failed, rejected or cancelled.
        status_code: HTTP status code, if the server answered.
        retry_delay_seconds: Backoff scheduled after a transient failure.
    """

    batch_id: str
    attempt_number: int
    started_at: datetime = field(default_factory=utc_now)
    finished_at: datetime | None = None
    outcome: str = "pending"
    status_code: int | None = None
    retry_delay_seconds: float | None = None


@dataclass
class SyncResult:
    """Outcome of one sync coordinator pass."""

    sync_id: str
    skipped_reason: str | None = None
    batches_formed: int = 0
    batches_sent: int = 0
    batches_retrying: int = 0
    batches_failed: int = 0
    events_sent: int = 0
    attempts: list[SyncAttempt] = field(default_factory=list)

    @property
    def skipped(self) -> bool:
        """Whether the pass was suspended before sending anything."""
        return self.skipped_reason is not None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "sync_id": self.sync_id,
            "skipped_reason": self.skipped_reason,
            "batches_formed": self.batches_formed,
            "batches_sent": self.batches_sent,
            "batches_retrying": self.batches_retrying,
            "batches_failed": self.batches_failed,
            "events_sent": self.events_sent,
        }


@dataclass(frozen=True)
class DeviceConditions:
    """Connectivity and power snapshot supplied by the host platform.

    Attributes:
        is_connected: Whether any network is available.
        is_wifi: Whether the active network is Wi-Fi.
        is_metered: Whether the active network is metered.
        battery_percent: Remaining battery, 0-100.
        is_charging: Whether the device is plugged in.
    """

    is_connected: bool = False
    is_wifi: bool = False
    is_metered: bool = True
    battery_percent: int = 100
    is_charging: bool = False

    @property
    def network_quality(self) -> NetworkQuality:
        """Classify the active network."""
        if not self.is_connected:
            return NetworkQuality.NONE
        if self.is_wifi and not self.is_metered:
            return NetworkQuality.HIGH
        if self.is_wifi or self.is_metered:
            return NetworkQuality.MEDIUM
        return NetworkQuality.LOW

    @property
    def battery_level(self) -> BatteryLevel:
        """Classify the battery charge."""
        if self.battery_percent >= 80:
            return BatteryLevel.HIGH
        if self.battery_percent >= 50:
            return BatteryLevel.NORMAL
        if self.battery_percent >= 20:
            return BatteryLevel.LOW
        return BatteryLevel.CRITICAL


@dataclass
class BatchHealthReport:
    """Summary of the local sync backlog."""

    health_status: str
    pending_events: int
    sealed_batches: int
    failed_batches: int
    recommendations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging or display."""
        return {
            "health_status": self.health_status,
            "pending_events": self.pending_events,
            "sealed_batches": self.sealed_batches,
            "failed_batches": self.failed_batches,
            "recommendations": list(self.recommendations),
        }
