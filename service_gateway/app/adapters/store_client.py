"""
Backing-store client for the gateway.
"""

import json
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from shared.config import GatewayConfig
from shared.errors import ConfigurationError, TransportError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..rewrite import SafeRequest


@dataclass(frozen=True)
class StoreResponse:
    """Backend status and raw body, exactly as received."""

    status_code: int
    text: str
    content_type: str = "application/json"

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def json(self) -> Any:
        """Parsed body; ``None`` for an empty body."""
        return json.loads(self.text) if self.text else None


class StoreForwarder:
    """Executes one tenant-safe request against the store's REST interface."""

    def __init__(
        self,
        config: GatewayConfig,
        *,
        metrics: Optional[MetricsCollector] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.metrics = metrics
        self._transport = transport
        self.logger = get_logger("gateway.store_client")

    def _connection(self):
        url, key = self.config.resolve_store()
        if not url or not key:
            raise ConfigurationError()
        return url.rstrip("/"), key

    def _headers(self, key: str, request: SafeRequest) -> Dict[str, str]:
        headers = {
            "apikey": key,
            "Authorization": f"Bearer {key}",
            "Content-Type": "application/json",
        }
        if request.is_mutation:
            headers["Prefer"] = "return=representation"
        return headers

    async def forward(self, request: SafeRequest) -> StoreResponse:
        """Send ``request`` and return the backend's answer verbatim."""
        if not isinstance(request, SafeRequest):
            raise TypeError("StoreForwarder only accepts SafeRequest instances")

        base_url, key = self._connection()
        prefix = self.config.rest_prefix.strip("/")
        url = f"{base_url}/{prefix}/{request.endpoint}"
        content = json.dumps(request.body) if request.body is not None else None

        start = time.perf_counter()
        try:
            async with httpx.AsyncClient(
                timeout=self.config.store_timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.request(
                    request.method,
                    url,
                    headers=self._headers(key, request),
                    content=content,
                )
        except httpx.HTTPError as exc:
            self.logger.error(
                "Backing store unreachable",
                method=request.method,
                table=request.table,
                error_type=type(exc).__name__,
            )
            raise TransportError() from exc
        finally:
            if self.metrics:
                self.metrics.observe_histogram(
                    "gateway_store_request_duration_seconds",
                    time.perf_counter() - start,
                    method=request.method,
                )

        if self.metrics:
            self.metrics.increment_counter(
                "gateway_store_requests_total",
                method=request.method,
                status_code=str(response.status_code),
            )

        log = self.logger.info if response.is_success else self.logger.warning
        log(
            "Backing store responded",
            method=request.method,
            table=request.table,
            status_code=response.status_code,
        )

        return StoreResponse(
            status_code=response.status_code,
            text=response.text,
            content_type=response.headers.get("content-type", "application/json"),
        )
