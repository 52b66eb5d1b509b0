"""
Bearer-token authentication for the tenant gateway.

Turns a raw ``Authorization`` header into a :class:`Principal`. The token is
verified with python-jose when the deployment provides a shared secret or a
JWKS URL; otherwise the subject claim is read from an unverified decode and a
warning is logged, which is only safe when the hosting platform has already
checked the token.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
from jose import JWTError, jwt

from shared.config import GatewayConfig
from shared.errors import AuthenticationError, ConfigurationError
from shared.logging import get_logger

BEARER_PREFIX = "Bearer "


@dataclass(frozen=True)
class Principal:
    """Authenticated tenant identity derived from a bearer token."""

    id: str
    verified: bool = False
    claims: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)


def extract_bearer_token(authorization: Optional[str]) -> str:
    """Return the token from a ``Bearer <token>`` header value."""
    if not authorization:
        raise AuthenticationError("Not authenticated - no token provided", details={"reason": "missing_header"})
    if not authorization.startswith(BEARER_PREFIX):
        raise AuthenticationError("Invalid authorization header format", details={"reason": "malformed_header"})

    token = authorization[len(BEARER_PREFIX):].strip()
    if not token:
        raise AuthenticationError("Authorization header contained empty bearer token", details={"reason": "malformed_header"})
    return token


class TokenAuthenticator:
    """Resolves the calling Principal from a bearer token."""

    def __init__(self, config: GatewayConfig, *, refresh_interval: int = 300, http_timeout: float = 5.0) -> None:
        self.secret = config.jwt_secret
        self.jwks_url = config.jwks_url
        self.audience = config.jwt_audience
        self.issuer = config.jwt_issuer
        self.allow_unverified = config.allow_unverified_tokens
        self.refresh_interval = refresh_interval
        self.http_timeout = http_timeout
        self.logger = get_logger("gateway.auth.token")

        self._keys: Optional[List[Dict[str, Any]]] = None
        self._last_refresh: float = 0.0
        self._lock = asyncio.Lock()
        self._warned_unverified = False

    @property
    def mode(self) -> str:
        if self.secret:
            return "shared_secret"
        if self.jwks_url:
            return "jwks"
        return "unverified" if self.allow_unverified else "disabled"

    async def authenticate(self, authorization: Optional[str]) -> Principal:
        """Authenticate a raw Authorization header value."""
        token = extract_bearer_token(authorization)
        claims = await self._claims(token)

        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject.strip():
            raise AuthenticationError("No user ID in token", details={"reason": "missing_subject"})

        return Principal(id=subject, verified=self.mode != "unverified", claims=claims)

    async def _claims(self, token: str) -> Dict[str, Any]:
        mode = self.mode
        try:
            if mode == "shared_secret":
                return jwt.decode(
                    token,
                    self.secret,
                    algorithms=["HS256"],
                    audience=self.audience,
                    issuer=self.issuer,
                    options={"verify_aud": self.audience is not None},
                )
            if mode == "jwks":
                return await self._decode_with_jwks(token)
            if mode == "unverified":
                if not self._warned_unverified:
                    self.logger.warning("Bearer tokens are decoded without signature verification")
                    self._warned_unverified = True
                claims = jwt.get_unverified_claims(token)
                if not isinstance(claims, dict):
                    raise JWTError("Token payload is not an object")
                return claims
        except JWTError as exc:
            raise AuthenticationError("Invalid token", details={"reason": "invalid_token"}) from exc

        raise ConfigurationError("Token verification is required but no verification key is configured.")

    async def _decode_with_jwks(self, token: str) -> Dict[str, Any]:
        header = jwt.get_unverified_header(token)
        kid = header.get("kid")
        if not isinstance(kid, str):
            raise JWTError("JWT header missing key id (kid)")

        key_data = await self._get_key(kid)
        if not key_data:
            raise JWTError("Signing key not found for token")

        return jwt.decode(
            token,
            key_data,
            algorithms=[key_data.get("alg", "RS256")],
            audience=self.audience,
            issuer=self.issuer,
            options={"verify_aud": self.audience is not None},
        )

    async def _get_key(self, kid: str) -> Optional[Dict[str, Any]]:
        """Return the JWKS key matching ``kid``, refreshing once on a miss."""
        await self._refresh_keys(force=False)
        for key in self._keys or []:
            if key.get("kid") == kid:
                return key

        # Key might be rotated.
        await self._refresh_keys(force=True)
        for key in self._keys or []:
            if key.get("kid") == kid:
                return key
        return None

    async def _refresh_keys(self, *, force: bool) -> None:
        if not force and self._keys is not None and (time.time() - self._last_refresh) < self.refresh_interval:
            return

        async with self._lock:
            if not force and self._keys is not None and (time.time() - self._last_refresh) < self.refresh_interval:
                return

            try:
                async with httpx.AsyncClient(timeout=self.http_timeout) as client:
                    response = await client.get(self.jwks_url)
                response.raise_for_status()
                payload = response.json()
                keys = payload.get("keys") if isinstance(payload, dict) else None
            except (httpx.HTTPError, ValueError) as exc:
                self.logger.error("JWKS refresh failed", error=str(exc))
                raise AuthenticationError("Token keys unavailable", details={"reason": "jwks_unavailable"}) from exc

            if not isinstance(keys, list):
                raise AuthenticationError("Token keys unavailable", details={"reason": "jwks_unavailable"})

            self._keys = keys
            self._last_refresh = time.time()
