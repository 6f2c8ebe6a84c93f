# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Custom exceptions for the analytics pipeline.

This module defines the exception hierarchy for analytics operations:
- AnalyticsError: Base exception for all analytics-related errors
- EventValidationError: Malformed event; the event is dropped
- StorageError: Local write failure; the event is dropped (ops-visible)
- NetworkError: Transient send failure; triggers backoff (silent)
- ServerRejection: Batch refused by the server; marked failed (ops-visible)
- ComplianceViolation: Disallowed field found where redaction should have
  removed it
"""


class AnalyticsError(Exception):
    """Base exception for all analytics-related errors.

    Attributes:
        message: Human-readable error description.
        details: Optional dictionary with additional error context.
    """

    def __init__(self, message: str, details: dict | None = None):
        """Initialize analytics error.

        Args:
            message: Human-readable error description.
            details: Optional dictionary with additional error context.
        """
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        """Return string representation with details if available."""
        if self.details:
            return f"{self.message} - Details: {self.details}"
        return self.message


class EventValidationError(AnalyticsError):
    """Event failed validation and will not be recorded.

    Attributes:
        errors: Individual field errors.
    """

    def __init__(
        self,
        message: str,
        errors: list[str] | None = None,
        details: dict | None = None,
    ):
        """Initialize event validation error.

        Args:
            message: Human-readable error description.
            errors: Individual field errors.
            details: Optional dictionary with additional error context.
        """
        self.errors = errors or []
        super().__init__(message, details)

    def __str__(self) -> str:
        """Return string representation with field errors."""
        if self.errors:
            return f"{self.message} - Errors: {'; '.join(self.errors)}"
        return self.message


class StorageError(AnalyticsError):
    """Local store could not persist or read analytics data."""


class NetworkError(AnalyticsError):
    """Transient failure sending a batch; the batch will be retried.

    Attributes:
        status_code: HTTP status code if the server answered.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        details: dict | None = None,
    ):
        """Initialize network error.

        Args:
            message: Human-readable error description.
            status_code: HTTP status code if the server answered.
            details: Optional dictionary with additional error context.
        """
        self.status_code = status_code
        super().__init__(message, details)

    def __str__(self) -> str:
        """Return string representation with status code."""
        base = self.message
        if self.status_code:
            base = f"[{self.status_code}] {base}"
        return base


class ServerRejection(AnalyticsError):
    """Server refused a batch as malformed; it is not retried.

    Attributes:
        status_code: HTTP status code from the ingest endpoint.
        response_body: Raw response body if available.
    """

    def __init__(
        self,
        message: str,
        status_code: int,
        response_body: str | None = None,
        details: dict | None = None,
    ):
        """Initialize server rejection.

        Args:
            message: Human-readable error description.
            status_code: HTTP status code from the ingest endpoint.
            response_body: Raw response body if available.
            details: Optional dictionary with additional error context.
        """
        self.status_code = status_code
        self.response_body = response_body
        super().__init__(message, details)

    def __str__(self) -> str:
        """Return string representation with status code."""
        base = f"[{self.status_code}] {self.message}"
        if self.details:
            base = f"{base} - Details: {self.details}"
        return base


class ComplianceViolation(AnalyticsError):
    """Disallowed field present in data about to leave the device.

    Attributes:
        fields: Offending property keys.
    """

    def __init__(
        self,
        message: str,
        fields: list[str] | None = None,
        details: dict | None = None,
    ):
        """Initialize compliance violation.

        Args:
            message: Human-readable error description.
            fields: Offending property keys.
            details: Optional dictionary with additional error context.
        """
        self.fields = fields or []
        super().__init__(message, details)

    def __str__(self) -> str:
        """Return string representation with offending fields."""
        if self.fields:
            return f"{self.message} (fields: {', '.join(self.fields)})"
        return self.message
