"""
Unit tests for the backing-store forwarder.
"""

import json

import httpx
import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_gateway.app.adapters import StoreForwarder, StoreResponse
from service_gateway.app.auth import Principal
from service_gateway.app.rewrite import RequestEnvelope, rewrite
from shared.config import GatewayConfig
from shared.errors import ConfigurationError, TransportError
from shared.metrics import MetricsCollector


def make_config(**overrides) -> GatewayConfig:
    values = {"store_url": "https://store.test/", "store_key": "service-key"}
    values.update(overrides)
    return GatewayConfig(_env_file=None, **values)


class Recorder:
    """Mock transport handler that remembers what it was sent."""

    def __init__(self, response: httpx.Response):
        self.response = response
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.response


def safe(method="GET", endpoint="clients?select=*", body=None):
    return rewrite(Principal(id="alice"), RequestEnvelope(method=method, endpoint=endpoint, body=body))


class TestStoreForwarder:
    """Test cases for StoreForwarder."""

    @pytest.mark.asyncio
    async def test_read_forwarded_with_service_credentials(self):
        recorder = Recorder(httpx.Response(200, json=[{"id": 1}]))
        forwarder = StoreForwarder(make_config(), transport=httpx.MockTransport(recorder))

        response = await forwarder.forward(safe())

        sent = recorder.requests[0]
        assert sent.method == "GET"
        assert str(sent.url) == "https://store.test/rest/v1/clients?user_id=eq.alice&select=*"
        assert sent.headers["apikey"] == "service-key"
        assert sent.headers["Authorization"] == "Bearer service-key"
        assert sent.headers["Content-Type"] == "application/json"
        assert "Prefer" not in sent.headers
        assert sent.content == b""

        assert response.ok
        assert response.json() == [{"id": 1}]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method,body", [
        ("POST", {"name": "Acme"}),
        ("PATCH", {"name": "Acme"}),
        ("DELETE", None),
    ])
    async def test_mutations_request_representation(self, method, body):
        recorder = Recorder(httpx.Response(200, json=[]))
        forwarder = StoreForwarder(make_config(), transport=httpx.MockTransport(recorder))

        await forwarder.forward(safe(method=method, endpoint="clients?id=eq.3", body=body))

        sent = recorder.requests[0]
        assert sent.method == method
        assert sent.headers["Prefer"] == "return=representation"
        if body is not None:
            assert json.loads(sent.content) == {"name": "Acme", "user_id": "alice"}

    @pytest.mark.asyncio
    async def test_backend_error_returned_verbatim(self):
        body = '{"code":"23505","message":"duplicate key"}'
        recorder = Recorder(httpx.Response(409, text=body, headers={"content-type": "application/json"}))
        forwarder = StoreForwarder(make_config(), transport=httpx.MockTransport(recorder))

        response = await forwarder.forward(safe(method="POST", body={"name": "Acme"}))

        assert response == StoreResponse(status_code=409, text=body, content_type="application/json")
        assert not response.ok

    @pytest.mark.asyncio
    async def test_missing_configuration_fails_before_network(self):
        recorder = Recorder(httpx.Response(200, json=[]))
        forwarder = StoreForwarder(make_config(store_url=None), transport=httpx.MockTransport(recorder))

        with pytest.raises(ConfigurationError) as exc_info:
            await forwarder.forward(safe())

        assert recorder.requests == []
        assert "service-key" not in exc_info.value.message

    @pytest.mark.asyncio
    async def test_network_failure_becomes_transport_error(self):
        def unreachable(request):
            raise httpx.ConnectError("connection refused", request=request)

        forwarder = StoreForwarder(make_config(), transport=httpx.MockTransport(unreachable))

        with pytest.raises(TransportError) as exc_info:
            await forwarder.forward(safe())
        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_rejects_unrewritten_requests(self):
        forwarder = StoreForwarder(make_config())

        with pytest.raises(TypeError):
            await forwarder.forward(RequestEnvelope(endpoint="clients"))

    @pytest.mark.asyncio
    async def test_metrics_recorded(self):
        metrics = MetricsCollector("gateway")
        recorder = Recorder(httpx.Response(200, json=[]))
        forwarder = StoreForwarder(make_config(), metrics=metrics, transport=httpx.MockTransport(recorder))

        await forwarder.forward(safe())

        assert metrics.sample("gateway_store_requests_total", method="GET", status_code="200") == 1.0
        assert metrics.sample("gateway_store_request_duration_seconds_count", method="GET") == 1.0

    @pytest.mark.asyncio
    async def test_local_secrets_file_used_outside_production(self, tmp_path):
        secrets = tmp_path / "secrets.json"
        secrets.write_text(json.dumps({"SUPABASE_URL": "https://local.test", "SUPABASE_KEY": "local-key"}))
        recorder = Recorder(httpx.Response(200, json=[]))
        config = make_config(store_url=None, store_key=None, store_secrets_file=str(secrets))
        forwarder = StoreForwarder(config, transport=httpx.MockTransport(recorder))

        await forwarder.forward(safe())

        assert str(recorder.requests[0].url).startswith("https://local.test/rest/v1/clients")
        assert recorder.requests[0].headers["apikey"] == "local-key"

    @pytest.mark.asyncio
    async def test_local_secrets_file_ignored_in_production(self, tmp_path):
        secrets = tmp_path / "secrets.json"
        secrets.write_text(json.dumps({"SUPABASE_URL": "https://local.test", "SUPABASE_KEY": "local-key"}))
        config = make_config(env="production", store_url=None, store_key=None, store_secrets_file=str(secrets))

        with pytest.raises(ConfigurationError):
            await StoreForwarder(config).forward(safe())
