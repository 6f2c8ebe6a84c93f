# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for the analytics ingest HTTP client."""

import json

import httpx
import pytest

from src.core.config.settings import AnalyticsSettings
from src.domains.analytics.exceptions import NetworkError, ServerRejection
from src.domains.analytics.ingest import BATCH_ID_HEADER, AnalyticsIngestClient


def _client(settings: AnalyticsSettings, handler) -> AnalyticsIngestClient:
    return AnalyticsIngestClient(settings, transport=httpx.MockTransport(handler))


class TestSendBatch:
    """Tests for AnalyticsIngestClient.send_batch."""

    @pytest.mark.asyncio
    async def test_posts_json_array_with_batch_header(self, analytics_settings, make_event):
        """Test the request carries the events and idempotency header."""
        captured: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(202)

        client = _client(analytics_settings, handler)
        events = [make_event(), make_event()]

        status = await client.send_batch("batch-1", events)
        await client.close()

        assert status == 202
        request = captured[0]
        assert request.method == "POST"
        assert str(request.url) == analytics_settings.ingest_url
        assert request.headers[BATCH_ID_HEADER] == "batch-1"
        assert request.headers["Content-Type"] == "application/json"
        assert "Authorization" not in request.headers
        body = json.loads(request.content)
        assert [item["id"] for item in body] == [e.id for e in events]

    @pytest.mark.asyncio
    async def test_bearer_token(self, make_event):
        """Test a configured token is sent as a bearer credential."""
        settings = AnalyticsSettings(
            ingest_url="https://ingest.test/events",
            auth_token="device-token",  # type: ignore[arg-type]
        )
        seen: dict[str, str] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers.get("Authorization", "")
            return httpx.Response(200)

        client = _client(settings, handler)
        await client.send_batch("batch-1", [make_event()])
        await client.close()

        assert seen["auth"] == "Bearer device-token"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [408, 429, 500, 502, 503])
    async def test_transient_statuses_raise_network_error(
        self, analytics_settings, make_event, status_code
    ):
        """Test retryable statuses map to NetworkError."""
        client = _client(analytics_settings, lambda request: httpx.Response(status_code))

        with pytest.raises(NetworkError) as exc_info:
            await client.send_batch("batch-1", [make_event()])
        await client.close()

        assert exc_info.value.status_code == status_code

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [400, 401, 404, 413, 422])
    async def test_client_errors_raise_rejection(self, analytics_settings, make_event, status_code):
        """Test non-retryable statuses map to ServerRejection."""
        client = _client(
            analytics_settings,
            lambda request: httpx.Response(status_code, text="invalid batch"),
        )

        with pytest.raises(ServerRejection) as exc_info:
            await client.send_batch("batch-1", [make_event()])
        await client.close()

        assert exc_info.value.status_code == status_code
        assert exc_info.value.response_body == "invalid batch"

    @pytest.mark.asyncio
    async def test_transport_error_raises_network_error(self, analytics_settings, make_event):
        """Test connection failures map to NetworkError."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = _client(analytics_settings, handler)

        with pytest.raises(NetworkError) as exc_info:
            await client.send_batch("batch-1", [make_event()])
        await client.close()

        assert exc_info.value.status_code is None

    @pytest.mark.asyncio
    async def test_timeout_raises_network_error(self, analytics_settings, make_event):
        """Test timeouts map to NetworkError."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        client = _client(analytics_settings, handler)

        with pytest.raises(NetworkError, match="timed out"):
            await client.send_batch("batch-1", [make_event()])
        await client.close()
