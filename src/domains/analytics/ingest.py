# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""HTTP client for the analytics ingest endpoint.

A sealed batch is posted as a JSON array of events. The batch id travels
in the X-Batch-Id header so the server can discard duplicates of a batch
that was delivered but whose acknowledgement was lost.

Response mapping:
- 2xx: accepted
- 408, 429, 5xx, transport errors and timeouts: NetworkError (retried)
- any other status: ServerRejection (not retried)

Example:
    >>> client = AnalyticsIngestClient(settings.analytics)
    >>> await client.send_batch(batch.id, events)
    >>> await client.close()
"""

import logging

import httpx

from src.core.config.settings import AnalyticsSettings
from src.domains.analytics.exceptions import NetworkError, ServerRejection
from src.domains.analytics.models import AnalyticsEvent
from src.domains.analytics.serialization import batch_to_wire

logger = logging.getLogger(__name__)

BATCH_ID_HEADER = "X-Batch-Id"

_RETRYABLE_STATUS_CODES = frozenset({408, 429})
_MAX_ERROR_BODY_CHARS = 500


class AnalyticsIngestClient:
    """Posts sealed batches to the analytics ingest endpoint.

    Attributes:
        _settings: Analytics configuration (URL, timeout, token).
        _client: Shared async HTTP client.
    """

    def __init__(
        self,
        settings: AnalyticsSettings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the ingest client.

        Args:
            settings: Analytics configuration.
            transport: Optional transport override (used by tests).
        """
        self._settings = settings

        headers = {"Content-Type": "application/json"}
        if settings.auth_token is not None:
            headers["Authorization"] = f"Bearer {settings.auth_token.get_secret_value()}"

        self._client = httpx.AsyncClient(
            headers=headers,
            timeout=settings.request_timeout,
            transport=transport,
        )

    @property
    def url(self) -> str:
        """Ingest endpoint URL."""
        return self._settings.ingest_url

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def send_batch(self, batch_id: str, events: list[AnalyticsEvent]) -> int:
        """Post a batch's events.

        Args:
            batch_id: Batch identifier, sent as idempotency key.
            events: Redacted events of the sealed batch.

        Returns:
            HTTP status code of the accepted response.

        Raises:
            NetworkError: On transport failure or a retryable status.
            ServerRejection: If the server refused the batch.
        """
        try:
            response = await self._client.post(
                self.url,
                json=batch_to_wire(events),
                headers={BATCH_ID_HEADER: batch_id},
            )
        except httpx.TimeoutException as e:
            raise NetworkError(
                "Ingest request timed out",
                details={"batch_id": batch_id, "error": str(e)},
            ) from e
        except httpx.RequestError as e:
            raise NetworkError(
                "Ingest endpoint unreachable",
                details={"batch_id": batch_id, "error": str(e)},
            ) from e

        self._handle_response(response, batch_id)
        return response.status_code

    def _handle_response(self, response: httpx.Response, batch_id: str) -> None:
        """Map a response status to success or the matching error."""
        status = response.status_code
        if 200 <= status < 300:
            logger.debug("Ingest accepted batch %s (%d)", batch_id, status)
            return

        body = response.text[:_MAX_ERROR_BODY_CHARS]

        if status in _RETRYABLE_STATUS_CODES or status >= 500:
            raise NetworkError(
                "Ingest endpoint temporarily unavailable",
                status_code=status,
                details={"batch_id": batch_id},
            )

        raise ServerRejection(
            "Ingest endpoint rejected batch",
            status_code=status,
            response_body=body,
            details={"batch_id": batch_id},
        )
