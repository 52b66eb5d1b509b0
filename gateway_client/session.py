"""
Per-login data session over the tenant gateway.

A :class:`GatewaySession` is created when a user logs in and discarded on
logout or when the principal changes. It owns the only :class:`CacheStore`
for that principal: reads go through it, and every successful write
invalidates the resource it touched plus the aggregate views built from it.
"""

import asyncio
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from shared.errors import AuthenticationError, EmptyWriteError, GatewayException
from shared.logging import get_logger

from .cache import CacheStore, cache_key
from .client import GatewayClient

SOFT_DELETE_TABLES = ("clients", "jobs", "timesheets", "invoices", "business")
TRASH_TABLES = ("clients", "jobs", "timesheets", "invoices")
TENANT_TABLES = ("invoices", "timesheets", "jobs", "clients", "business")

DASHBOARD_TAG = "dashboard"
TRASH_TAG = "trash"
PROFILE_TABLE = "business"

INVOICE_FIELDS = "invoice_number,id,client_id,job_id,subtotal,total,currency,status,created_at,due_date,items,meta"

DASHBOARD_REQUESTS = (
    {"key": "clients", "endpoint": "clients?deleted=eq.false&order=created_at.desc&select=*"},
    {"key": "jobs", "endpoint": "jobs?deleted=eq.false&order=created_at.desc&select=*"},
    {"key": "timesheets", "endpoint": "timesheets?deleted=eq.false&order=created_at.desc&select=*"},
    {"key": "invoices", "endpoint": f"invoices?deleted=eq.false&order=created_at.desc&select={INVOICE_FIELDS}"},
    {"key": "business", "endpoint": "business?select=*"},
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _first(rows: Any) -> Optional[Dict[str, Any]]:
    if isinstance(rows, list) and rows:
        return rows[0]
    return None


class GatewaySession:
    """Cached, tenant-scoped data access for one logged-in principal."""

    def __init__(self, client: GatewayClient, principal_id: str, *, cache: Optional[CacheStore] = None):
        if not principal_id:
            raise AuthenticationError("A session requires a principal")
        self.client = client
        self.principal_id = principal_id
        self.cache = cache if cache is not None else CacheStore(
            client.settings.cache_ttl_seconds,
            max_entries=client.settings.cache_max_entries,
        )
        self.logger = get_logger("gateway_client.session")
        self._closed = False

    @classmethod
    def login(cls, client: GatewayClient, principal_id: str, token: str) -> "GatewaySession":
        """Start a session for ``principal_id`` authenticated by ``token``."""
        client.set_token(token)
        return cls(client, principal_id)

    def switch_principal(self, principal_id: str, token: str) -> None:
        """Rebind to another principal and its token; nothing cached for the previous one survives."""
        self._require_open()
        if not principal_id or not token:
            raise AuthenticationError("Switching principal requires a principal and its token")
        self.cache.invalidate_all()
        self.principal_id = principal_id
        self.client.set_token(token)
        self.logger.info("Session principal switched")

    def logout(self) -> None:
        if self._closed:
            return
        self.cache.invalidate_all()
        self.client.set_token(None)
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    async def __aenter__(self) -> "GatewaySession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.logout()

    def _require_open(self) -> None:
        if self._closed:
            raise AuthenticationError("Session has ended")

    def _key(self, *parts: str) -> str:
        return cache_key(self.principal_id, *parts)

    def _invalidate_after_write(self, table: str, *, trash: bool = False) -> None:
        tags = [table, DASHBOARD_TAG]
        if trash:
            tags.append(TRASH_TAG)
        self.cache.invalidate(*tags)

    # Reads

    async def get_all(self, table: str) -> List[Dict[str, Any]]:
        self._require_open()
        key = self._key(table, "all")
        cached = self.cache.lookup(key)
        if cached is not None:
            return cached

        epoch = self.cache.begin()
        soft_delete_filter = "&deleted=eq.false" if table in SOFT_DELETE_TABLES else ""
        data = await self.client.request(f"{table}?order=created_at.desc{soft_delete_filter}&select=*")
        self.cache.populate(key, data, tags=[table], epoch=epoch)
        return data

    async def get_by_id(self, table: str, record_id: Any) -> Optional[Dict[str, Any]]:
        self._require_open()
        return _first(await self.client.request(f"{table}?id=eq.{record_id}"))

    async def load_dashboard(self) -> Dict[str, Any]:
        """Every dashboard collection in one batch call, with a parallel fallback."""
        self._require_open()
        key = self._key(DASHBOARD_TAG)
        cached = self.cache.lookup(key)
        if cached is not None:
            return cached

        epoch = self.cache.begin()
        try:
            results = await self.client.batch([dict(item) for item in DASHBOARD_REQUESTS])
        except AuthenticationError:
            raise
        except GatewayException as exc:
            self.logger.warning("Batch endpoint unavailable, using parallel requests", error_code=exc.code)
            responses = await asyncio.gather(
                *(self.client.request(item["endpoint"]) for item in DASHBOARD_REQUESTS)
            )
            results = {item["key"]: data for item, data in zip(DASHBOARD_REQUESTS, responses)}
            results[PROFILE_TABLE] = _first(results[PROFILE_TABLE])

        tags = [DASHBOARD_TAG] + [item["key"] for item in DASHBOARD_REQUESTS]
        self.cache.populate(key, results, tags=tags, epoch=epoch)
        return results

    async def get_trash(self) -> List[Dict[str, Any]]:
        """Soft-deleted rows of every trashable table, each tagged with ``_table``."""
        self._require_open()
        key = self._key(TRASH_TAG)
        cached = self.cache.lookup(key)
        if cached is not None:
            return cached

        epoch = self.cache.begin()
        responses = await asyncio.gather(
            *(self.client.request(f"{table}?deleted=eq.true&order=updated_at.desc&select=*") for table in TRASH_TABLES)
        )
        data = [
            {**row, "_table": table}
            for table, rows in zip(TRASH_TABLES, responses)
            for row in rows or []
        ]
        self.cache.populate(key, data, tags=[TRASH_TAG, *TRASH_TABLES], epoch=epoch)
        return data

    async def get_profile(self) -> Optional[Dict[str, Any]]:
        self._require_open()
        return _first(await self.client.request(f"{PROFILE_TABLE}?select=*"))

    # Writes

    async def create(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        self._require_open()
        now = _now_iso()
        body = {**record, "created_at": now, "updated_at": now}
        if table in SOFT_DELETE_TABLES:
            body["deleted"] = False

        data = await self.client.request(table, method="POST", body=body)
        created = _first(data)
        if created is None:
            raise EmptyWriteError(table)

        self._invalidate_after_write(table)
        return created

    async def update(self, table: str, record_id: Any, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        self._require_open()
        body = {**changes, "updated_at": _now_iso()}
        data = await self.client.request(f"{table}?id=eq.{record_id}", method="PATCH", body=body)
        self._invalidate_after_write(table)
        return _first(data)

    async def save(self, table: str, record: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Update when the record has an id, create otherwise."""
        if record.get("id"):
            return await self.update(table, record["id"], record)
        return await self.create(table, record)

    async def soft_delete(self, table: str, record_id: Any) -> Optional[Dict[str, Any]]:
        result = await self.update(table, record_id, {"deleted": True})
        self.cache.invalidate(TRASH_TAG)
        return result

    async def restore(self, table: str, record_id: Any) -> Optional[Dict[str, Any]]:
        result = await self.update(table, record_id, {"deleted": False})
        self.cache.invalidate(TRASH_TAG)
        return result

    async def hard_delete(self, table: str, record_id: Any) -> bool:
        self._require_open()
        await self.client.request(f"{table}?id=eq.{record_id}", method="DELETE")
        self._invalidate_after_write(table, trash=True)
        return True

    async def save_profile(self, profile: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        existing = await self.get_profile()
        if existing:
            return await self.update(PROFILE_TABLE, existing["id"], profile)
        return await self.create(PROFILE_TABLE, profile)

    async def delete_all_data(self) -> None:
        """Delete every row the principal owns in every tenant table."""
        self._require_open()
        await asyncio.gather(*(self.client.request(table, method="DELETE") for table in TENANT_TABLES))
        self.cache.invalidate_all()

    # Invoices

    async def next_invoice_number(self, today: Optional[date] = None) -> str:
        """Next ``YYMMDD-NN`` number for today's date."""
        self._require_open()
        prefix = (today or date.today()).strftime("%y%m%d")
        try:
            rows = await self.client.request(
                f"invoices?deleted=eq.false&invoice_number=like.{prefix}-*"
                "&order=invoice_number.desc&limit=1&select=invoice_number"
            )
        except AuthenticationError:
            raise
        except GatewayException as exc:
            self.logger.warning("Failed to fetch last invoice number, using default", error_code=exc.code)
            rows = None

        last = _first(rows)
        if last and last.get("invoice_number"):
            head, _, sequence = str(last["invoice_number"]).partition("-")
            if head == prefix and sequence.isdigit():
                return f"{prefix}-{int(sequence) + 1:0{len(sequence)}d}"
        return f"{prefix}-01"

    async def save_invoice(self, invoice: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        invoice = dict(invoice)
        if not invoice.get("invoice_number"):
            invoice["invoice_number"] = await self.next_invoice_number()

        existing = await self.get_by_id("invoices", invoice["id"]) if invoice.get("id") else None
        if existing:
            return await self.update("invoices", invoice["id"], invoice)
        return await self.create("invoices", invoice)

    async def delete_invoice(self, record_id: Any) -> Any:
        """Soft-delete, falling back to a hard delete when the soft delete is rejected."""
        try:
            return await self.soft_delete("invoices", record_id)
        except AuthenticationError:
            raise
        except GatewayException as exc:
            self.logger.warning("Soft delete rejected, deleting invoice permanently", error_code=exc.code)
            return await self.hard_delete("invoices", record_id)

    async def mark_invoice_paid(self, record_id: Any) -> Optional[Dict[str, Any]]:
        return await self.update("invoices", record_id, {"status": "paid"})

    async def test_connection(self) -> str:
        try:
            await self.client.request(f"{PROFILE_TABLE}?limit=1")
            return "ok"
        except GatewayException:
            return "error"
