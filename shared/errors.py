"""
Shared error handling for the tenant gateway.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from pydantic import BaseModel

from shared.logging import request_id_var


class ErrorResponse(BaseModel):
    """Standard error response format."""

    error: str
    message: str
    request_id: Optional[str] = None
    details: Dict[str, Any] = {}


class GatewayException(Exception):
    """Base exception for gateway and gateway-client errors."""

    status_code = 500

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            error=self.code,
            message=self.message,
            request_id=request_id_var.get(),
            details=self.details,
        )


class AuthenticationError(GatewayException):
    """Missing, malformed or untrusted bearer token."""

    status_code = 401

    def __init__(self, message: str = "Not authenticated", details: Optional[Dict[str, Any]] = None):
        super().__init__("not_authenticated", message, details)


class ValidationError(GatewayException):
    """Malformed request envelope."""

    status_code = 400

    def __init__(self, message: str = "Invalid request", details: Optional[Dict[str, Any]] = None):
        super().__init__("invalid_request", message, details)


class ConfigurationError(GatewayException):
    """Backing-store connection info not provisioned."""

    status_code = 502

    def __init__(self, message: str = "Backing store configuration not available in function runtime."):
        # Never carries the missing values.
        super().__init__("server_configuration_missing", message)


class TransportError(GatewayException):
    """Network failure reaching the backing store or the gateway."""

    status_code = 500

    def __init__(self, message: str = "Internal Server Error", details: Optional[Dict[str, Any]] = None):
        super().__init__("function_error", message, details)


class UpstreamError(GatewayException):
    """Backend answered with a non-2xx status; status and body are kept verbatim."""

    def __init__(self, status_code: int, body: Any, message: Optional[str] = None):
        self.status_code = status_code
        self.body = body
        super().__init__(
            "upstream_error",
            message or f"Database error: {status_code}",
            {"status_code": status_code},
        )


class EmptyWriteError(GatewayException):
    """A write returned no representation."""

    status_code = 502

    def __init__(self, table: str):
        super().__init__(
            "empty_write",
            f"Failed to create {table} record - database returned no data",
            {"table": table},
        )


@dataclass(frozen=True)
class BatchPartialFailure:
    """One failed batch sub-request. Reported, never raised."""

    key: str
    reason: str
    status_code: Optional[int] = None
