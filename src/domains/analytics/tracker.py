# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Analytics tracking helpers for lesson and classroom features.

The AnalyticsTracker wraps the EventRecorder with one method per kind of
classroom activity, so feature code never assembles event dicts by hand.
Every helper only emits property keys the compliance gate allows.

Usage:
    from src.domains.analytics import AnalyticsTracker

    tracker = AnalyticsTracker(recorder)

    await tracker.track_lesson_started(
        classroom_id="class-7",
        lesson_id="lesson-3",
        lesson_number=3,
        grade_level="4",
    )
"""

from typing import Any

from src.domains.analytics.models import AnalyticsEvent
from src.domains.analytics.recorder import EventRecorder


class EventTypes:
    """Event type names recorded by the tracker."""

    SESSION_STARTED = "session_start"
    SESSION_ENDED = "session_end"
    LESSON_STARTED = "lesson_start"
    LESSON_COMPLETED = "lesson_completion"
    EMOTIONAL_CHECKIN = "emotional_checkin"
    BEHAVIORAL_INDICATOR = "behavioral_indicator"
    SCENARIO_CHOICE = "scenario_choice"


class EventCategory:
    """Event classifications stored alongside the event type."""

    ENGAGEMENT = "engagement"
    LEARNING = "learning"
    BEHAVIORAL = "behavioral"
    TECHNICAL = "technical"


def engagement_level(time_spent_seconds: int, interaction_count: int) -> str:
    """Classify engagement from interactions per minute.

    Example:
        >>> engagement_level(600, 40)
        'high'
    """
    minutes = time_spent_seconds // 60
    per_minute = interaction_count / minutes if minutes > 0 else 0.0
    if per_minute >= 3.0:
        return "high"
    if per_minute >= 1.5:
        return "medium"
    return "low"


class AnalyticsTracker:
    """Domain-specific tracking methods built on the event recorder.

    Attributes:
        _recorder: Recorder that validates and stores events.
    """

    def __init__(self, recorder: EventRecorder) -> None:
        self._recorder = recorder

    @property
    def session_id(self) -> str:
        """Anonymous session id attached to tracked events."""
        return self._recorder.anonymous_session_id

    async def track(
        self,
        event_type: str,
        classroom_id: str,
        properties: dict[str, Any] | None = None,
        lesson_id: str | None = None,
        event_category: str | None = None,
        session_id: str | None = None,
    ) -> AnalyticsEvent | None:
        """Record an event, defaulting to the anonymous session id.

        Returns:
            The stored event, or None if it was dropped.

        Raises:
            StorageError: If the local store could not persist the event.
        """
        return await self._recorder.record({
            "classroom_id": classroom_id,
            "lesson_id": lesson_id,
            "session_id": session_id or self.session_id,
            "event_type": event_type,
            "event_category": event_category,
            "properties": properties or {},
        })

    async def track_session_started(self, classroom_id: str) -> AnalyticsEvent | None:
        """Track the start of a classroom session."""
        return await self.track(
            EventTypes.SESSION_STARTED,
            classroom_id,
            properties={"event_action": "start"},
            event_category=EventCategory.ENGAGEMENT,
        )

    async def track_session_ended(
        self,
        classroom_id: str,
        duration_seconds: int,
    ) -> AnalyticsEvent | None:
        """Track the end of a classroom session."""
        return await self.track(
            EventTypes.SESSION_ENDED,
            classroom_id,
            properties={"event_action": "end", "duration": duration_seconds},
            event_category=EventCategory.ENGAGEMENT,
        )

    async def track_lesson_started(
        self,
        classroom_id: str,
        lesson_id: str,
        lesson_number: int,
        grade_level: str,
        lesson_category: str | None = None,
    ) -> AnalyticsEvent | None:
        """Track a facilitator starting a lesson.

        Args:
            classroom_id: Classroom running the lesson.
            lesson_id: Lesson being started.
            lesson_number: Position of the lesson in the curriculum.
            grade_level: Grade level of the classroom.
            lesson_category: Optional topic (empathy, courage, ...).
        """
        properties: dict[str, Any] = {
            "lesson_number": lesson_number,
            "grade_level": grade_level,
        }
        if lesson_category:
            properties["lesson_category"] = lesson_category

        return await self.track(
            EventTypes.LESSON_STARTED,
            classroom_id,
            properties=properties,
            lesson_id=lesson_id,
            event_category=EventCategory.LEARNING,
        )

    async def track_lesson_completed(
        self,
        classroom_id: str,
        lesson_id: str,
        time_spent_seconds: int,
        completion_rate: float,
        interaction_count: int,
    ) -> AnalyticsEvent | None:
        """Track a completed lesson with engagement metrics.

        Args:
            classroom_id: Classroom running the lesson.
            lesson_id: Lesson completed.
            time_spent_seconds: Time spent in the lesson.
            completion_rate: Fraction of activities completed (0.0 to 1.0).
            interaction_count: Number of interactions during the lesson.
        """
        return await self.track(
            EventTypes.LESSON_COMPLETED,
            classroom_id,
            properties={
                "time_spent_seconds": time_spent_seconds,
                "completion_rate": completion_rate,
                "interaction_count": interaction_count,
                "engagement_level": engagement_level(time_spent_seconds, interaction_count),
            },
            lesson_id=lesson_id,
            event_category=EventCategory.LEARNING,
        )

    async def track_emotional_checkin(
        self,
        classroom_id: str,
        mood: str,
        energy_level: int,
        feeling_category: str | None = None,
        lesson_id: str | None = None,
    ) -> AnalyticsEvent | None:
        """Track an anonymous emotional check-in.

        Only the selected mood and energy are recorded, never free text.
        """
        properties: dict[str, Any] = {"mood": mood, "energy_level": energy_level}
        if feeling_category:
            properties["feeling_category"] = feeling_category

        return await self.track(
            EventTypes.EMOTIONAL_CHECKIN,
            classroom_id,
            properties=properties,
            lesson_id=lesson_id,
            event_category=EventCategory.BEHAVIORAL,
        )

    async def track_behavioral_indicator(
        self,
        classroom_id: str,
        indicator: str,
        value: float,
        behavioral_category: str | None = None,
        lesson_id: str | None = None,
    ) -> AnalyticsEvent | None:
        """Track a behavioral indicator (empathy, confidence, leadership...)."""
        properties: dict[str, Any] = {
            "behavioral_indicator": indicator,
            "indicator_value": value,
        }
        if behavioral_category:
            properties["behavioral_category"] = behavioral_category

        return await self.track(
            EventTypes.BEHAVIORAL_INDICATOR,
            classroom_id,
            properties=properties,
            lesson_id=lesson_id,
            event_category=EventCategory.BEHAVIORAL,
        )

    async def track_scenario_choice(
        self,
        classroom_id: str,
        lesson_id: str,
        scenario_id: str,
        choice_id: str,
        is_correct: bool | None = None,
        step_index: int | None = None,
        total_steps: int | None = None,
    ) -> AnalyticsEvent | None:
        """Track a choice made in an interactive scenario."""
        properties: dict[str, Any] = {"scenario_id": scenario_id, "choice_id": choice_id}
        if is_correct is not None:
            properties["is_correct"] = is_correct
        if step_index is not None:
            properties["step_index"] = step_index
        if total_steps is not None:
            properties["total_steps"] = total_steps

        return await self.track(
            EventTypes.SCENARIO_CHOICE,
            classroom_id,
            properties=properties,
            lesson_id=lesson_id,
            event_category=EventCategory.ENGAGEMENT,
        )
