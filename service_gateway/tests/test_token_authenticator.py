"""
Unit tests for TokenAuthenticator.
"""

import json
import time

import httpx
import pytest
from jose import jwk, jwt
from unittest.mock import AsyncMock, patch

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_gateway.app.auth import Principal, TokenAuthenticator, extract_bearer_token
from shared.config import GatewayConfig
from shared.errors import AuthenticationError, ConfigurationError

SECRET = "identity-provider-secret"


def make_config(**overrides) -> GatewayConfig:
    values = {
        "store_url": "https://store.test",
        "store_key": "service-key",
        "jwt_secret": None,
        "jwks_url": None,
        "allow_unverified_tokens": True,
    }
    values.update(overrides)
    return GatewayConfig(_env_file=None, **values)


def make_token(claims, key=SECRET, **kwargs) -> str:
    return jwt.encode(claims, key, algorithm="HS256", **kwargs)


class TestExtractBearerToken:
    """Header parsing."""

    @pytest.mark.parametrize("header", [None, "", "Basic abc", "bearer abc", "Bearer ", "Bearer    "])
    def test_rejects_missing_or_malformed(self, header):
        with pytest.raises(AuthenticationError) as exc_info:
            extract_bearer_token(header)
        assert exc_info.value.status_code == 401

    def test_returns_token(self):
        assert extract_bearer_token("Bearer abc.def.ghi") == "abc.def.ghi"


class TestTokenAuthenticator:
    """Test cases for TokenAuthenticator."""

    @pytest.mark.asyncio
    async def test_unverified_mode_reads_subject(self):
        authenticator = TokenAuthenticator(make_config())
        token = make_token({"sub": "alice"}, key="whatever")

        principal = await authenticator.authenticate(f"Bearer {token}")

        assert principal == Principal(id="alice")
        assert principal.verified is False
        assert authenticator.mode == "unverified"

    @pytest.mark.asyncio
    async def test_undecodable_token_rejected(self):
        authenticator = TokenAuthenticator(make_config())

        with pytest.raises(AuthenticationError) as exc_info:
            await authenticator.authenticate("Bearer not-a-jwt")
        assert exc_info.value.details["reason"] == "invalid_token"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("claims", [{}, {"sub": ""}, {"sub": "   "}, {"sub": 42}, {"email": "a@b.c"}])
    async def test_missing_subject_rejected(self, claims):
        authenticator = TokenAuthenticator(make_config())

        with pytest.raises(AuthenticationError) as exc_info:
            await authenticator.authenticate(f"Bearer {make_token(claims)}")
        assert exc_info.value.details["reason"] == "missing_subject"

    @pytest.mark.asyncio
    async def test_shared_secret_verifies_signature(self):
        authenticator = TokenAuthenticator(make_config(jwt_secret=SECRET))

        principal = await authenticator.authenticate(f"Bearer {make_token({'sub': 'alice'})}")

        assert principal.id == "alice"
        assert principal.verified is True

    @pytest.mark.asyncio
    async def test_shared_secret_rejects_forged_token(self):
        authenticator = TokenAuthenticator(make_config(jwt_secret=SECRET))
        forged = make_token({"sub": "alice"}, key="attacker-secret")

        with pytest.raises(AuthenticationError):
            await authenticator.authenticate(f"Bearer {forged}")

    @pytest.mark.asyncio
    async def test_shared_secret_rejects_expired_token(self):
        authenticator = TokenAuthenticator(make_config(jwt_secret=SECRET))
        expired = make_token({"sub": "alice", "exp": int(time.time()) - 60})

        with pytest.raises(AuthenticationError):
            await authenticator.authenticate(f"Bearer {expired}")

    @pytest.mark.asyncio
    async def test_audience_checked_when_configured(self):
        authenticator = TokenAuthenticator(make_config(jwt_secret=SECRET, jwt_audience="bizzhub"))

        good = make_token({"sub": "alice", "aud": "bizzhub"})
        bad = make_token({"sub": "alice", "aud": "other-app"})

        assert (await authenticator.authenticate(f"Bearer {good}")).id == "alice"
        with pytest.raises(AuthenticationError):
            await authenticator.authenticate(f"Bearer {bad}")

    @pytest.mark.asyncio
    async def test_verification_required_without_key(self):
        authenticator = TokenAuthenticator(make_config(allow_unverified_tokens=False))

        with pytest.raises(ConfigurationError):
            await authenticator.authenticate(f"Bearer {make_token({'sub': 'alice'})}")

    @pytest.mark.asyncio
    async def test_jwks_verification(self):
        key = jwk.construct(SECRET, algorithm="HS256").to_dict()
        key.update({"kid": "k1", "alg": "HS256"})
        jwks_response = httpx.Response(
            status_code=200,
            content=json.dumps({"keys": [key]}),
            request=httpx.Request("GET", "https://idp.test/jwks"),
        )
        authenticator = TokenAuthenticator(make_config(jwks_url="https://idp.test/jwks"))
        token = make_token({"sub": "alice"}, headers={"kid": "k1"})

        with patch('httpx.AsyncClient') as mock_client:
            mock_client.return_value.__aenter__.return_value.get = AsyncMock(return_value=jwks_response)

            principal = await authenticator.authenticate(f"Bearer {token}")
            again = await authenticator.authenticate(f"Bearer {token}")

        assert principal.id == again.id == "alice"
        assert authenticator.mode == "jwks"
        mock_client.return_value.__aenter__.return_value.get.assert_called_once_with("https://idp.test/jwks")

    @pytest.mark.asyncio
    async def test_jwks_unknown_kid_rejected(self):
        jwks_response = httpx.Response(
            status_code=200,
            content=json.dumps({"keys": []}),
            request=httpx.Request("GET", "https://idp.test/jwks"),
        )
        authenticator = TokenAuthenticator(make_config(jwks_url="https://idp.test/jwks"))
        token = make_token({"sub": "alice"}, headers={"kid": "rotated"})

        with patch('httpx.AsyncClient') as mock_client:
            mock_client.return_value.__aenter__.return_value.get = AsyncMock(return_value=jwks_response)

            with pytest.raises(AuthenticationError):
                await authenticator.authenticate(f"Bearer {token}")

        # initial load plus one forced refresh for the unknown key
        assert mock_client.return_value.__aenter__.return_value.get.call_count == 2

    @pytest.mark.asyncio
    async def test_subject_used_exactly_as_issued(self):
        authenticator = TokenAuthenticator(make_config(jwt_secret=SECRET))

        principal = await authenticator.authenticate(f"Bearer {make_token({'sub': ' alice '})}")

        assert principal.id == " alice "
