"""
Unit tests for GatewayClient.
"""

import json

import httpx
import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from gateway_client.client import GatewayClient, decode_body
from shared.config import GatewayClientSettings
from shared.errors import AuthenticationError, TransportError, UpstreamError


@pytest.fixture
def settings():
    return GatewayClientSettings(_env_file=None, base_url="http://gateway.test/", auth_failure_threshold=2)


def make_client(settings, handler, **kwargs):
    return GatewayClient(settings, token="user-token", transport=httpx.MockTransport(handler), **kwargs)


class TestDecodeBody:

    def test_json(self):
        assert decode_body('[{"id": 1}]') == [{"id": 1}]

    def test_raw_text(self):
        assert decode_body("created") == "created"

    def test_empty(self):
        assert decode_body("") is None


class TestGatewayClient:
    """Test cases for GatewayClient."""

    @pytest.mark.asyncio
    async def test_request_envelope(self, settings):
        sent = []

        def handler(request):
            sent.append(request)
            return httpx.Response(200, json=[{"id": 1}])

        client = make_client(settings, handler)

        data = await client.request("clients?select=*", method="PATCH", body={"name": "Acme"})

        assert data == [{"id": 1}]
        assert str(sent[0].url) == "http://gateway.test/db-proxy"
        assert sent[0].headers["Authorization"] == "Bearer user-token"
        assert json.loads(sent[0].content) == {
            "method": "PATCH",
            "endpoint": "clients?select=*",
            "body": {"name": "Acme"},
        }

    @pytest.mark.asyncio
    async def test_batch_envelope(self, settings):
        sent = []

        def handler(request):
            sent.append(request)
            return httpx.Response(200, json={"clients": [], "jobs": None})

        client = make_client(settings, handler)

        data = await client.batch([{"key": "clients", "endpoint": "clients"}, {"key": "jobs", "endpoint": "jobs"}])

        assert data == {"clients": [], "jobs": None}
        assert sent[0].url.path == "/db-batch"
        assert json.loads(sent[0].content)["requests"][1] == {"key": "jobs", "endpoint": "jobs"}

    @pytest.mark.asyncio
    async def test_upstream_error_keeps_status_and_body(self, settings):
        client = make_client(settings, lambda request: httpx.Response(409, json={"message": "duplicate key"}))

        with pytest.raises(UpstreamError) as exc_info:
            await client.request("clients", method="POST", body={})

        assert exc_info.value.status_code == 409
        assert exc_info.value.body == {"message": "duplicate key"}

    @pytest.mark.asyncio
    async def test_network_failure(self, settings):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        client = make_client(settings, handler)

        with pytest.raises(TransportError) as exc_info:
            await client.request("clients")
        assert exc_info.value.message == "Network connection lost or function unreachable."

    @pytest.mark.asyncio
    async def test_repeated_auth_failures_trigger_callback(self, settings):
        triggered = []
        client = make_client(
            settings,
            lambda request: httpx.Response(401, json={"error": "not_authenticated", "message": "Invalid token"}),
            on_auth_failure=lambda: triggered.append(True),
        )

        with pytest.raises(AuthenticationError) as exc_info:
            await client.request("clients")
        assert exc_info.value.message == "Invalid token"
        assert triggered == []

        with pytest.raises(AuthenticationError):
            await client.request("clients")
        assert triggered == [True]

    @pytest.mark.asyncio
    async def test_success_resets_auth_failure_count(self, settings):
        statuses = iter([401, 200, 401])
        triggered = []
        client = make_client(
            settings,
            lambda request: httpx.Response(next(statuses), json=[]),
            on_auth_failure=lambda: triggered.append(True),
        )

        with pytest.raises(AuthenticationError):
            await client.request("clients")
        await client.request("clients")
        with pytest.raises(AuthenticationError):
            await client.request("clients")

        assert triggered == []

    @pytest.mark.asyncio
    async def test_no_token_sends_no_authorization(self, settings):
        sent = []

        def handler(request):
            sent.append(request)
            return httpx.Response(200, json=[])

        client = GatewayClient(settings, transport=httpx.MockTransport(handler))

        await client.request("clients")

        assert "Authorization" not in sent[0].headers
