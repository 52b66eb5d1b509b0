"""
Shared utilities for the tenant gateway and its client.

This package aggregates common building blocks:

- config: Gateway and client configuration via pydantic-settings
- logging: Structured logging with request/principal correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- base_service: FastAPI service scaffolding

Do not import from service_gateway or gateway_client into shared/.
"""
