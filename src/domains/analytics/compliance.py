# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""COPPA compliance gate for analytics events.

The gate runs over a batch's events before the batch is sealed and
rewrites each event's properties so nothing identifying leaves the
device. It fails closed: a property key is passed through only when it
is explicitly allowed, everything unclassified is dropped.

Classification of a property key (normalized to lower snake_case):
1. Disallowed keyword (name, email, phone, ...), also inside concatenated
   keys such as "firstname": removed.
2. Pseudonymized key (session_id, classroom_id, facilitator_id): value
   replaced with a 16-character SHA-256 digest.
3. Allowed key: scalar values pass, strings that look like an email
   address or phone number become "[REDACTED]", nested values are removed.
4. Anything else: removed.

Example:
    gate = ComplianceGate()
    clean_events, report = gate.apply(events)
    gate.assert_clean(clean_events)
"""

import hashlib
import logging
import re
from dataclasses import dataclass, field, replace
from typing import Any, Iterable

from src.domains.analytics.exceptions import ComplianceViolation
from src.domains.analytics.models import AnalyticsEvent

logger = logging.getLogger(__name__)

REDACTED_VALUE = "[REDACTED]"
COMPLIANCE_MARKER_KEY = "_compliance"
COMPLIANCE_MARKER_VALUE = "coppa_anonymized"

DISALLOWED_KEYWORDS: frozenset[str] = frozenset({
    "name", "email", "phone", "address", "ip", "device_id",
    "user_id", "student_id", "personal", "contact", "birth",
    "ssn", "social_security", "free_text", "comment", "note",
})

PSEUDONYMIZED_FIELDS: frozenset[str] = frozenset({
    "session_id", "classroom_id", "facilitator_id",
})

ALLOWED_BEHAVIORAL_FIELDS: frozenset[str] = frozenset({
    "interaction_type", "behavioral_category", "engagement_level",
    "time_spent", "completion_rate", "interaction_count",
    "empathy_score", "confidence_level", "communication_quality",
    "leadership_behavior", "help_requested", "peer_interaction",
})

ALLOWED_GENERAL_FIELDS: frozenset[str] = frozenset({
    "event_type", "event_action", "event_category",
    "lesson_category", "activity_type", "grade_level",
    "duration", "device_type", "app_version",
})

ALLOWED_METADATA_FIELDS: frozenset[str] = frozenset({
    "timestamp", "session_context", "offline_mode",
    "device_type", "screen_size", "app_version",
    "connection_type", "lesson_category",
})

# Fields used by the tracking helpers in tracker.py
ALLOWED_TRACKING_FIELDS: frozenset[str] = frozenset({
    "lesson_number", "activity_id", "scenario_id", "choice_id",
    "is_correct", "mood", "energy_level", "feeling_category",
    "behavioral_indicator", "indicator_value", "time_spent_seconds",
    "step_index", "total_steps",
})

_EMAIL_PATTERN = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
_PHONE_PATTERN = re.compile(r"\b\d{3}[-. ]?\d{3}[-. ]?\d{4}\b")
_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")

_SCALAR_TYPES = (str, int, float, bool, type(None))

# Shorter keywords ("ip") only match whole tokens
_MIN_SUBSTRING_KEYWORD = 3


def normalize_key(key: str) -> str:
    """Normalize a property key to lower snake_case.

    Example:
        >>> normalize_key("studentEmail")
        'student_email'
    """
    return _CAMEL_BOUNDARY.sub("_", key).replace("-", "_").replace(" ", "_").lower()


def hash_identifier(value: Any) -> str:
    """Derive a stable 16-character pseudonym for an identifier."""
    return hashlib.sha256(str(value).encode("utf-8")).hexdigest()[:16]


def contains_pii(value: str) -> bool:
    """Check a string for email addresses or phone numbers."""
    return bool(_EMAIL_PATTERN.search(value) or _PHONE_PATTERN.search(value))


@dataclass
class RedactionReport:
    """Counts of what the gate changed across a set of events."""

    events_processed: int = 0
    fields_removed: int = 0
    values_redacted: int = 0
    values_pseudonymized: int = 0
    removed_keys: set[str] = field(default_factory=set)

    @property
    def changed(self) -> bool:
        """Whether any property was removed or rewritten."""
        return bool(self.fields_removed or self.values_redacted or self.values_pseudonymized)


@dataclass
class ComplianceReport:
    """Result of inspecting data without modifying it."""

    is_compliant: bool
    violations: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)


class ComplianceGate:
    """Redacts child-privacy-sensitive fields from event properties.

    The gate holds no state besides its field lists; apply() is a pure
    function of its input.

    Attributes:
        disallowed_keywords: Keywords that mark a key as identifying.
        allowed_fields: Keys passed through (subject to value checks).
    """

    def __init__(
        self,
        extra_disallowed: Iterable[str] = (),
        extra_allowed: Iterable[str] = (),
    ) -> None:
        """Initialize the gate.

        Args:
            extra_disallowed: Additional disallowed keywords.
            extra_allowed: Additional allowed keys. A key that also matches
                a disallowed keyword stays disallowed.
        """
        self.disallowed_keywords = DISALLOWED_KEYWORDS | {normalize_key(k) for k in extra_disallowed}
        self.allowed_fields = (
            ALLOWED_BEHAVIORAL_FIELDS
            | ALLOWED_GENERAL_FIELDS
            | ALLOWED_METADATA_FIELDS
            | ALLOWED_TRACKING_FIELDS
            | {normalize_key(k) for k in extra_allowed}
        )

    def is_disallowed(self, key: str) -> bool:
        """Check whether a key names identifying information.

        Keywords of three or more characters match anywhere in the key with
        underscores ignored, so ``firstname``, ``userName`` and
        ``student_email`` all match. Shorter keywords only match a whole
        underscore-separated token, so ``description`` does not match ``ip``.
        """
        normalized = normalize_key(key)
        if normalized in PSEUDONYMIZED_FIELDS:
            return False
        padded = f"_{normalized}_"
        compact = normalized.replace("_", "")
        for keyword in self.disallowed_keywords:
            if len(keyword) < _MIN_SUBSTRING_KEYWORD:
                if f"_{keyword}_" in padded:
                    return True
            elif keyword.replace("_", "") in compact:
                return True
        return False

    def would_remove(self, key: str, value: Any) -> bool:
        """Check whether redact_properties() drops ``key`` entirely."""
        if key == COMPLIANCE_MARKER_KEY:
            return False
        if self.is_disallowed(key):
            return True
        normalized = normalize_key(key)
        if normalized in PSEUDONYMIZED_FIELDS:
            return False
        return normalized not in self.allowed_fields or not isinstance(value, _SCALAR_TYPES)

    def redact_properties(
        self,
        properties: dict[str, Any],
        report: RedactionReport | None = None,
    ) -> dict[str, Any]:
        """Return a redacted copy of ``properties``.

        Args:
            properties: Original event properties.
            report: Optional report to accumulate counts into.

        Returns:
            New dictionary containing only permitted data.
        """
        report = report if report is not None else RedactionReport()
        redacted: dict[str, Any] = {}

        for key, value in properties.items():
            if key == COMPLIANCE_MARKER_KEY:
                continue

            if self.would_remove(key, value):
                report.fields_removed += 1
                report.removed_keys.add(key)
                continue

            if normalize_key(key) in PSEUDONYMIZED_FIELDS:
                redacted[key] = hash_identifier(value)
                report.values_pseudonymized += 1
                continue

            if isinstance(value, str) and contains_pii(value):
                redacted[key] = REDACTED_VALUE
                report.values_redacted += 1
                continue

            redacted[key] = value

        redacted[COMPLIANCE_MARKER_KEY] = COMPLIANCE_MARKER_VALUE
        return redacted

    def apply(
        self,
        events: list[AnalyticsEvent],
    ) -> tuple[list[AnalyticsEvent], RedactionReport]:
        """Redact the properties of every event.

        Events that already carry the compliance marker were redacted by an
        earlier pass (a seal interrupted after the rewrite was stored) and
        are returned unchanged, so pseudonyms are never hashed twice.

        Args:
            events: Events about to be sealed into a batch.

        Returns:
            Tuple of (redacted events in the same order, redaction report).
        """
        report = RedactionReport()
        redacted_events = []

        for event in events:
            report.events_processed += 1
            if event.properties.get(COMPLIANCE_MARKER_KEY) == COMPLIANCE_MARKER_VALUE:
                redacted_events.append(event)
                continue
            redacted_events.append(
                replace(event, properties=self.redact_properties(event.properties, report))
            )

        if report.changed:
            logger.info(
                "Compliance gate redacted %d events: removed=%d redacted=%d pseudonymized=%d",
                report.events_processed,
                report.fields_removed,
                report.values_redacted,
                report.values_pseudonymized,
            )
        return redacted_events, report

    def assert_clean(self, events: list[AnalyticsEvent]) -> None:
        """Verify that no event carries a disallowed or unredacted field.

        Raises:
            ComplianceViolation: If any event still holds identifying data.
        """
        offending: set[str] = set()
        for event in events:
            if event.properties.get(COMPLIANCE_MARKER_KEY) != COMPLIANCE_MARKER_VALUE:
                offending.add(COMPLIANCE_MARKER_KEY)
            for key, value in event.properties.items():
                normalized = normalize_key(key)
                if key == COMPLIANCE_MARKER_KEY or normalized in PSEUDONYMIZED_FIELDS:
                    continue
                if self.is_disallowed(key) or normalized not in self.allowed_fields:
                    offending.add(key)
                elif isinstance(value, str) and contains_pii(value):
                    offending.add(key)

        if offending:
            raise ComplianceViolation(
                "Events contain data disallowed for child privacy",
                fields=sorted(offending),
            )

    def inspect(self, properties: dict[str, Any]) -> ComplianceReport:
        """Report compliance problems in ``properties`` without changing them.

        Args:
            properties: Data about to be recorded.

        Returns:
            ComplianceReport listing violations and recommendations.
        """
        violations = []
        recommendations = []

        for key, value in properties.items():
            if self.is_disallowed(key):
                violations.append(f"Field '{key}' may contain personally identifying information")
                recommendations.append(f"Remove or anonymize field '{key}'")
            elif self.would_remove(key, value):
                violations.append(f"Field '{key}' is not an allowed scalar field and will be removed")
                recommendations.append(f"Drop field '{key}' or add it to the allowed fields")
            elif isinstance(value, str) and contains_pii(value):
                violations.append(f"Value for '{key}' contains potential PII")
                recommendations.append(f"Sanitize value for field '{key}'")

        return ComplianceReport(
            is_compliant=not violations,
            violations=violations,
            recommendations=recommendations,
        )
