"""
Shared configuration management for the tenant gateway.
"""

import json
from pathlib import Path
from typing import Optional, Tuple

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _split_csv(value: Optional[str]) -> Tuple[str, ...]:
    if not value:
        return ()
    return tuple(part.strip() for part in value.split(",") if part.strip())


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Environment
    env: str = Field(default="local", validation_alias=AliasChoices("GATEWAY_ENV", "env"))
    log_level: str = Field(default="info", validation_alias=AliasChoices("GATEWAY_LOG_LEVEL", "log_level"))


class GatewayConfig(BaseConfig):
    """Server-side gateway configuration. Never sent to the client."""

    # Backing store
    store_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("SUPABASE_URL", "NEXT_PUBLIC_SUPABASE_URL", "GATEWAY_STORE_URL", "store_url"),
    )
    store_key: Optional[str] = Field(
        default=None,
        repr=False,
        validation_alias=AliasChoices("SUPABASE_KEY", "SUPABASE_SERVICE_ROLE_KEY", "GATEWAY_STORE_KEY", "store_key"),
    )
    store_secrets_file: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("GATEWAY_STORE_SECRETS_FILE", "store_secrets_file"),
    )
    rest_prefix: str = Field(default="rest/v1", validation_alias=AliasChoices("GATEWAY_REST_PREFIX", "rest_prefix"))
    store_timeout_seconds: float = Field(
        default=5.0,
        validation_alias=AliasChoices("GATEWAY_STORE_TIMEOUT_SECONDS", "store_timeout_seconds"),
    )

    # Tenant isolation
    tenant_column: str = Field(default="user_id", validation_alias=AliasChoices("GATEWAY_TENANT_COLUMN", "tenant_column"))
    allowed_tables_csv: str = Field(default="", validation_alias=AliasChoices("GATEWAY_ALLOWED_TABLES", "allowed_tables_csv"))
    singleton_keys_csv: str = Field(default="business", validation_alias=AliasChoices("GATEWAY_SINGLETON_KEYS", "singleton_keys_csv"))
    max_batch_size: int = Field(default=25, validation_alias=AliasChoices("GATEWAY_MAX_BATCH_SIZE", "max_batch_size"))

    # Token verification
    jwt_secret: Optional[str] = Field(default=None, repr=False, validation_alias=AliasChoices("GATEWAY_JWT_SECRET", "jwt_secret"))
    jwks_url: Optional[str] = Field(default=None, validation_alias=AliasChoices("GATEWAY_JWKS_URL", "jwks_url"))
    jwt_audience: Optional[str] = Field(default=None, validation_alias=AliasChoices("GATEWAY_JWT_AUDIENCE", "jwt_audience"))
    jwt_issuer: Optional[str] = Field(default=None, validation_alias=AliasChoices("GATEWAY_JWT_ISSUER", "jwt_issuer"))
    allow_unverified_tokens: bool = Field(
        default=True,
        validation_alias=AliasChoices("GATEWAY_ALLOW_UNVERIFIED_TOKENS", "allow_unverified_tokens"),
    )

    @property
    def allowed_tables(self) -> Tuple[str, ...]:
        return _split_csv(self.allowed_tables_csv)

    @property
    def singleton_keys(self) -> Tuple[str, ...]:
        return _split_csv(self.singleton_keys_csv)

    def resolve_store(self) -> Tuple[Optional[str], Optional[str]]:
        """Return the backing-store (url, key), consulting the local secrets file outside production."""
        url, key = self.store_url, self.store_key
        if (not url or not key) and self.env != "production" and self.store_secrets_file:
            local_url, local_key = load_local_secrets(self.store_secrets_file)
            url = url or local_url
            key = key or local_key
        return url, key

    @property
    def store_configured(self) -> bool:
        url, key = self.resolve_store()
        return bool(url and key)


class GatewayClientSettings(BaseConfig):
    """Client-side settings for talking to the gateway."""

    base_url: str = Field(default="http://localhost:8000", validation_alias=AliasChoices("GATEWAY_BASE_URL", "base_url"))
    cache_ttl_seconds: float = Field(default=30.0, validation_alias=AliasChoices("GATEWAY_CACHE_TTL_SECONDS", "cache_ttl_seconds"))
    cache_max_entries: int = Field(default=1024, validation_alias=AliasChoices("GATEWAY_CACHE_MAX_ENTRIES", "cache_max_entries"))
    auth_failure_threshold: int = Field(
        default=2,
        validation_alias=AliasChoices("GATEWAY_AUTH_FAILURE_THRESHOLD", "auth_failure_threshold"),
    )
    request_timeout_seconds: float = Field(
        default=10.0,
        validation_alias=AliasChoices("GATEWAY_CLIENT_TIMEOUT_SECONDS", "request_timeout_seconds"),
    )


def load_local_secrets(path: str) -> Tuple[Optional[str], Optional[str]]:
    """Read store credentials from a JSON secrets file placed at deploy time."""
    secrets_path = Path(path)
    if not secrets_path.is_file():
        return None, None
    try:
        data = json.loads(secrets_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None, None
    if not isinstance(data, dict):
        return None, None
    return (
        data.get("SUPABASE_URL") or data.get("url"),
        data.get("SUPABASE_KEY") or data.get("key"),
    )


def get_config(**overrides) -> GatewayConfig:
    """Get gateway configuration from the environment, with explicit overrides."""
    return GatewayConfig(**overrides)
