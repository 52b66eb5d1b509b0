"""
Tenant-isolation gateway service.

Two POST endpoints sit between the untrusted browser client and the shared
backing store:

- ``/db-proxy``: one request, relayed with the backend's status and body.
- ``/db-batch``: several read requests fanned out concurrently.

Every request is authenticated, rewritten to the caller's tenant and only
then forwarded. Authentication and configuration failures short-circuit
before any backend call.
"""

import json
from typing import Any, Dict, Optional

import httpx
from fastapi import Request, Response
from pydantic import ValidationError as PydanticValidationError

from shared.base_service import BaseService
from shared.config import GatewayConfig, get_config
from shared.errors import AuthenticationError, ConfigurationError, ValidationError
from shared.logging import set_principal_context

from .adapters.store_client import StoreForwarder
from .auth import Principal, TokenAuthenticator
from .domain.batch import BatchForwarder, parse_batch_payload
from .rewrite import QueryRewriter, RequestEnvelope


class GatewayService(BaseService):
    """Gateway service implementation."""

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__("gateway", config or get_config())
        self.authenticator = TokenAuthenticator(self.config)
        self.rewriter = QueryRewriter(
            tenant_column=self.config.tenant_column,
            allowed_tables=self.config.allowed_tables,
        )
        self.forwarder = StoreForwarder(self.config, metrics=self.metrics, transport=transport)
        self.batch_forwarder = BatchForwarder(
            self.rewriter,
            self.forwarder,
            singleton_keys=self.config.singleton_keys,
            metrics=self.metrics,
        )

        if self.authenticator.mode == "unverified":
            self.logger.warning(
                "No token verification key configured; relying on the hosting platform to verify bearer tokens"
            )

        self._setup_gateway_routes()

        # Expose service instance via app state for introspection/testing
        self.app.state.gateway_service = self

    async def _authenticate(self, request: Request) -> Principal:
        try:
            principal = await self.authenticator.authenticate(request.headers.get("Authorization"))
        except AuthenticationError as exc:
            self.metrics.increment_counter(
                "gateway_auth_failures_total",
                reason=exc.details.get("reason", "invalid_token"),
            )
            raise

        set_principal_context(principal.id)
        return principal

    def _require_store(self) -> None:
        if not self.config.store_configured:
            raise ConfigurationError()

    @staticmethod
    async def _read_json(request: Request) -> Any:
        raw = await request.body()
        if not raw:
            return {}
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ValidationError("Request body must be JSON") from exc

    @staticmethod
    def _parse_envelope(payload: Any) -> RequestEnvelope:
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be an object")
        try:
            return RequestEnvelope.model_validate(payload)
        except PydanticValidationError as exc:
            fields = sorted({str(error["loc"][0]) for error in exc.errors() if error.get("loc")})
            raise ValidationError("Missing or invalid endpoint or method", details={"fields": fields}) from exc

    async def _check_dependencies(self) -> Dict[str, Any]:
        return {
            "store_configured": self.config.store_configured,
            "token_verification": self.authenticator.mode,
        }

    def _setup_gateway_routes(self):
        """Set up gateway-specific routes."""

        @self.app.post("/db-proxy")
        async def db_proxy(request: Request):
            """Forward one tenant-scoped request and relay the backend's answer."""
            principal = await self._authenticate(request)
            self._require_store()

            envelope = self._parse_envelope(await self._read_json(request))
            safe_request = self.rewriter.rewrite(principal, envelope)
            upstream = await self.forwarder.forward(safe_request)

            return Response(
                content=upstream.text,
                status_code=upstream.status_code,
                media_type=upstream.content_type,
            )

        @self.app.post("/db-batch")
        async def db_batch(request: Request):
            """Run several tenant-scoped reads; failed keys come back as null."""
            principal = await self._authenticate(request)
            self._require_store()

            items = parse_batch_payload(await self._read_json(request), self.config.max_batch_size)
            result = await self.batch_forwarder.fetch(principal, items)

            if result.partial:
                self.logger.info(
                    "Batch completed with failures",
                    failed_keys=[failure.key for failure in result.failures],
                    total=len(items),
                )
            return result.data


def create_app(
    config: Optional[GatewayConfig] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
):
    """Create FastAPI application."""
    service = GatewayService(config, transport=transport)
    return service.app


if __name__ == "__main__":
    service = GatewayService()
    service.run()
