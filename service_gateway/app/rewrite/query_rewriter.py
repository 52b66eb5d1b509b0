"""
Tenant-safe request rewriting.

Every request that reaches the backing store is produced by :func:`rewrite`.
The resulting :class:`SafeRequest` carries exactly one tenant filter bound to
the authenticated principal and, for writes, a body whose tenant column is
stamped with the same id. ``SafeRequest`` refuses construction anywhere else,
and the store forwarder only accepts ``SafeRequest`` instances.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Tuple
from urllib.parse import quote, unquote_plus

from pydantic import BaseModel, field_validator

from shared.errors import ValidationError
from ..auth import Principal

ALLOWED_METHODS = ("GET", "POST", "PATCH", "DELETE")
STAMPED_METHODS = frozenset({"POST", "PATCH"})
MUTATING_METHODS = frozenset({"POST", "PATCH", "DELETE"})

_TABLE_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_ISSUER = object()


class RequestEnvelope(BaseModel):
    """Untrusted request as supplied by the browser client."""

    method: str = "GET"
    endpoint: str
    body: Optional[Any] = None

    @field_validator("method", mode="before")
    @classmethod
    def _normalize_method(cls, value: Any) -> Any:
        if value is None:
            return "GET"
        if isinstance(value, str):
            value = value.strip().upper()
            if value not in ALLOWED_METHODS:
                raise ValueError(f"method must be one of {', '.join(ALLOWED_METHODS)}")
        return value


@dataclass(frozen=True)
class SafeRequest:
    """A request bound to one principal. Only :func:`rewrite` creates these."""

    method: str
    table: str
    query: str
    body: Optional[Any]
    principal_id: str
    _issuer: object = field(default=None, repr=False, compare=False)

    def __post_init__(self):
        if self._issuer is not _ISSUER:
            raise TypeError("SafeRequest can only be created by rewrite()")

    @property
    def endpoint(self) -> str:
        return f"{self.table}?{self.query}"

    @property
    def is_mutation(self) -> bool:
        return self.method in MUTATING_METHODS


def tenant_fragment(tenant_column: str, principal_id: str) -> str:
    return f"{tenant_column}=eq.{quote(principal_id, safe='')}"


def split_endpoint(endpoint: str) -> Tuple[str, str]:
    """Split ``table?query`` into its path and query string."""
    path, _, query = endpoint.partition("?")
    return path.strip().lstrip("/"), query


def strip_tenant_filters(query: str, tenant_column: str) -> List[str]:
    """Drop every fragment keyed by the tenant column, whatever its operator or value."""
    kept = []
    for fragment in query.split("&"):
        if not fragment:
            continue
        key = unquote_plus(fragment.split("=", 1)[0]).strip()
        if key == tenant_column:
            continue
        kept.append(fragment)
    return kept


def reject_embedded_resources(fragments: Iterable[str]) -> None:
    """Refuse ``select`` values that embed related tables.

    An embedded resource is read with the service key and carries no tenant
    filter of its own, so only columns of the addressed table may be selected.
    """
    for fragment in fragments:
        key, _, value = fragment.partition("=")
        if unquote_plus(key).strip() == "select" and "(" in unquote_plus(value):
            raise ValidationError(
                "Embedded resources are not allowed in select",
                details={"select": unquote_plus(value)[:128]},
            )


def stamp_body(body: Any, tenant_column: str, principal_id: str) -> Any:
    """Return a copy of ``body`` with the tenant column forced to the principal."""
    if isinstance(body, dict):
        stamped = dict(body)
        stamped[tenant_column] = principal_id
        return stamped

    if isinstance(body, list):
        if not all(isinstance(row, dict) for row in body):
            raise ValidationError("Array bodies must contain only objects")
        return [stamp_body(row, tenant_column, principal_id) for row in body]

    raise ValidationError("Write bodies must be an object or an array of objects")


def rewrite(
    principal: Principal,
    envelope: RequestEnvelope,
    *,
    tenant_column: str = "user_id",
    allowed_tables: Iterable[str] = (),
) -> SafeRequest:
    """Produce the tenant-safe form of ``envelope`` for ``principal``."""
    table, query = split_endpoint(envelope.endpoint)
    if not _TABLE_PATTERN.match(table):
        raise ValidationError("Endpoint must address a single table", details={"table": table[:64]})

    allowed = tuple(allowed_tables)
    if allowed and table not in allowed:
        raise ValidationError("Table is not exposed through the gateway", details={"table": table})

    kept = strip_tenant_filters(query, tenant_column)
    reject_embedded_resources(kept)

    fragments = [tenant_fragment(tenant_column, principal.id)]
    fragments.extend(kept)

    body = None
    if envelope.body is not None and envelope.method in STAMPED_METHODS:
        body = stamp_body(envelope.body, tenant_column, principal.id)

    return SafeRequest(
        method=envelope.method,
        table=table,
        query="&".join(fragments),
        body=body,
        principal_id=principal.id,
        _issuer=_ISSUER,
    )


class QueryRewriter:
    """Binds :func:`rewrite` to the deployment's tenant settings."""

    def __init__(self, tenant_column: str = "user_id", allowed_tables: Iterable[str] = ()):
        self.tenant_column = tenant_column
        self.allowed_tables = tuple(allowed_tables)

    def rewrite(self, principal: Principal, envelope: RequestEnvelope) -> SafeRequest:
        return rewrite(
            principal,
            envelope,
            tenant_column=self.tenant_column,
            allowed_tables=self.allowed_tables,
        )

    def rewrite_read(self, principal: Principal, endpoint: str) -> SafeRequest:
        """Rewrite a GET-only batch sub-request."""
        return self.rewrite(principal, RequestEnvelope(method="GET", endpoint=endpoint))
