"""
HTTP client for the tenant gateway.
"""

import json
from typing import Any, Callable, Dict, List, Optional

import httpx

from shared.config import GatewayClientSettings
from shared.errors import AuthenticationError, TransportError, UpstreamError
from shared.logging import get_logger

PROXY_PATH = "/db-proxy"
BATCH_PATH = "/db-batch"


def decode_body(text: str) -> Any:
    """JSON body if parseable, raw text otherwise, ``None`` when empty."""
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


class GatewayClient:
    """Calls the gateway's single and batch endpoints with the user's bearer token."""

    def __init__(
        self,
        settings: Optional[GatewayClientSettings] = None,
        *,
        token: Optional[str] = None,
        on_auth_failure: Optional[Callable[[], None]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or GatewayClientSettings()
        self.base_url = self.settings.base_url.rstrip("/")
        self.on_auth_failure = on_auth_failure
        self.logger = get_logger("gateway_client.client")
        self._token = token
        self._transport = transport
        self._auth_failures = 0

    def set_token(self, token: Optional[str]) -> None:
        self._token = token
        self._auth_failures = 0

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def _post(self, path: str, payload: Any) -> httpx.Response:
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.request_timeout_seconds,
                transport=self._transport,
            ) as client:
                return await client.post(f"{self.base_url}{path}", headers=self._headers(), json=payload)
        except httpx.HTTPError as exc:
            self.logger.error("Gateway unreachable", path=path, error_type=type(exc).__name__)
            raise TransportError("Network connection lost or function unreachable.") from exc

    def _check(self, response: httpx.Response, body: Any) -> None:
        if response.status_code == 401:
            self._auth_failures += 1
            self.logger.warning("Gateway rejected credentials", consecutive_failures=self._auth_failures)
            if self.on_auth_failure and self._auth_failures >= self.settings.auth_failure_threshold:
                self.on_auth_failure()
            message = body.get("message") if isinstance(body, dict) else None
            raise AuthenticationError(message or "Not authenticated")

        self._auth_failures = 0
        if not response.is_success:
            raise UpstreamError(response.status_code, body)

    async def request(self, endpoint: str, method: str = "GET", body: Any = None) -> Any:
        """Send one request through ``/db-proxy`` and return the decoded body."""
        self.logger.debug("Gateway request", method=method, endpoint=endpoint)
        response = await self._post(PROXY_PATH, {"method": method, "endpoint": endpoint, "body": body})
        payload = decode_body(response.text)
        self._check(response, payload)
        return payload

    async def batch(self, requests: List[Dict[str, str]]) -> Dict[str, Any]:
        """Send ``[{key, endpoint}]`` through ``/db-batch``; failed keys come back as ``None``."""
        response = await self._post(BATCH_PATH, {"requests": requests})
        payload = decode_body(response.text)
        self._check(response, payload)
        if not isinstance(payload, dict):
            raise UpstreamError(response.status_code, payload, message="Batch response was not an object")
        return payload
