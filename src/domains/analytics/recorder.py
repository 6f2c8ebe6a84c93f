# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Event recorder: the entry point for UI and feature code.

record() validates an event, stamps its identifier and creation time,
fills in the anonymous session id unless the caller supplied one, and
appends it to the pending-event store. Malformed events are logged and
dropped; a storage failure is logged and raised as StorageError,
which is the only error a caller ever sees.

Usage:
    recorder = EventRecorder(store=store, consent_granted=True)

    event = await recorder.record({
        "classroom_id": classroom_id,
        "event_type": EventTypes.LESSON_STARTED,
        "properties": {"lesson_category": "empathy"},
    })
"""

import logging
from typing import Any
from uuid import uuid4

from pydantic import ValidationError

from src.domains.analytics.compliance import COMPLIANCE_MARKER_KEY, hash_identifier
from src.domains.analytics.exceptions import EventValidationError, StorageError
from src.domains.analytics.models import AnalyticsEvent, AnalyticsEventCreate
from src.domains.analytics.repository import AnalyticsStore
from src.utils.datetime import utc_now

logger = logging.getLogger(__name__)


class EventRecorder:
    """Validates and persists analytics events.

    Attributes:
        anonymous_session_id: Hashed random session identifier, stable for
            the lifetime of the recorder.
        consent_granted: Whether the facilitator allowed analytics.
    """

    def __init__(
        self,
        store: AnalyticsStore,
        consent_granted: bool = True,
    ) -> None:
        """Initialize the recorder.

        Args:
            store: Local analytics store.
            consent_granted: Whether facilitator consent was granted.
        """
        self._store = store
        self.consent_granted = consent_granted
        self.anonymous_session_id = hash_identifier(uuid4())

    async def record(
        self,
        event: AnalyticsEventCreate | dict[str, Any],
    ) -> AnalyticsEvent | None:
        """Record an event.

        Args:
            event: Event fields, as a request model or a plain dict.

        Returns:
            The stored event, or None if it was dropped (invalid, or no
            consent).

        Raises:
            StorageError: If the local store could not persist the event.
        """
        if not self.consent_granted:
            logger.debug("Analytics consent not granted, dropping event")
            return None

        try:
            request = self._validate(event)
        except EventValidationError as e:
            logger.warning("Dropping malformed analytics event: %s", e)
            return None

        recorded = AnalyticsEvent(
            id=str(uuid4()),
            classroom_id=request.classroom_id,
            lesson_id=request.lesson_id,
            session_id=request.session_id or self.anonymous_session_id,
            event_type=request.event_type,
            event_category=request.event_category,
            # The marker is reserved for properties the compliance gate wrote
            properties={k: v for k, v in request.properties.items() if k != COMPLIANCE_MARKER_KEY},
            created_at=utc_now(),
        )

        try:
            await self._store.add_event(recorded)
        except StorageError as e:
            logger.error(
                "Failed to store analytics event, dropped: type=%s, error=%s",
                recorded.event_type,
                e,
            )
            raise

        logger.debug(
            "Recorded analytics event: id=%s, type=%s, classroom=%s",
            recorded.id,
            recorded.event_type,
            recorded.classroom_id,
        )
        return recorded

    @staticmethod
    def _validate(event: AnalyticsEventCreate | dict[str, Any]) -> AnalyticsEventCreate:
        """Validate raw input into a request model.

        Raises:
            EventValidationError: If required fields are missing or invalid.
        """
        if isinstance(event, AnalyticsEventCreate):
            return event
        if not isinstance(event, dict):
            raise EventValidationError(
                "Event must be a mapping",
                errors=[f"got {type(event).__name__}"],
            )
        try:
            return AnalyticsEventCreate.model_validate(event)
        except ValidationError as e:
            raise EventValidationError(
                "Invalid analytics event",
                errors=[
                    f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
                    for err in e.errors()
                ],
            ) from e
