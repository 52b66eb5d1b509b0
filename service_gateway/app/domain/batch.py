"""
Batched read forwarding for the gateway.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from shared.errors import BatchPartialFailure, GatewayException, UpstreamError, ValidationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..adapters.store_client import StoreForwarder
from ..auth import Principal
from ..rewrite import QueryRewriter


@dataclass(frozen=True)
class BatchItem:
    key: str
    endpoint: str


@dataclass
class BatchResult:
    """Keyed payloads; failed keys map to ``None`` and are listed in ``failures``."""

    data: Dict[str, Any] = field(default_factory=dict)
    failures: List[BatchPartialFailure] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.failures)


def parse_batch_payload(payload: Any, max_size: int) -> List[BatchItem]:
    """Accept ``[{key, endpoint}]``, ``{"requests": [...]}`` or ``{key: endpoint}``."""
    if isinstance(payload, dict) and isinstance(payload.get("requests"), list):
        payload = payload["requests"]

    items: List[BatchItem] = []
    if isinstance(payload, list):
        for entry in payload:
            if not isinstance(entry, dict):
                raise ValidationError("Batch entries must be objects with key and endpoint")
            items.append(_make_item(entry.get("key"), entry.get("endpoint")))
    elif isinstance(payload, dict):
        items = [_make_item(key, endpoint) for key, endpoint in payload.items()]
    else:
        raise ValidationError("requests must be an array or an object")

    if not items:
        raise ValidationError("Batch contains no requests")
    if len(items) > max_size:
        raise ValidationError("Batch too large", details={"max_batch_size": max_size})

    keys = [item.key for item in items]
    if len(set(keys)) != len(keys):
        raise ValidationError("Batch keys must be unique")
    return items


def _make_item(key: Any, endpoint: Any) -> BatchItem:
    if not isinstance(key, str) or not key:
        raise ValidationError("Batch key must be a non-empty string")
    if not isinstance(endpoint, str) or not endpoint:
        raise ValidationError("Batch endpoint must be a non-empty string", details={"key": key})
    return BatchItem(key=key, endpoint=endpoint)


class BatchForwarder:
    """Fans read sub-requests out concurrently and assembles a keyed response."""

    def __init__(
        self,
        rewriter: QueryRewriter,
        forwarder: StoreForwarder,
        *,
        singleton_keys: Iterable[str] = ("business",),
        metrics: Optional[MetricsCollector] = None,
    ):
        self.rewriter = rewriter
        self.forwarder = forwarder
        self.singleton_keys = frozenset(singleton_keys)
        self.metrics = metrics
        self.logger = get_logger("gateway.batch")

    async def fetch(self, principal: Principal, items: List[BatchItem]) -> BatchResult:
        """Run every sub-request; the call settles only when all of them have."""
        outcomes = await asyncio.gather(
            *(self._fetch_one(principal, item) for item in items),
            return_exceptions=True,
        )

        result = BatchResult()
        for item, outcome in zip(items, outcomes):
            if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
                raise outcome

            if isinstance(outcome, Exception):
                failure = self._describe_failure(item.key, outcome)
                result.failures.append(failure)
                result.data[item.key] = None
                self.logger.warning(
                    "Batch sub-request failed",
                    key=item.key,
                    reason=failure.reason,
                    status_code=failure.status_code,
                )
                self._count("failed")
                continue

            result.data[item.key] = outcome
            self._count("succeeded")

        return result

    async def _fetch_one(self, principal: Principal, item: BatchItem) -> Any:
        safe_request = self.rewriter.rewrite_read(principal, item.endpoint)
        response = await self.forwarder.forward(safe_request)
        if not response.ok:
            raise UpstreamError(response.status_code, response.text)

        data = response.json()
        if item.key in self.singleton_keys and isinstance(data, list):
            return data[0] if data else None
        return data

    @staticmethod
    def _describe_failure(key: str, exc: Exception) -> BatchPartialFailure:
        if isinstance(exc, UpstreamError):
            return BatchPartialFailure(key=key, reason="upstream_error", status_code=exc.status_code)
        if isinstance(exc, GatewayException):
            return BatchPartialFailure(key=key, reason=exc.code)
        if isinstance(exc, ValueError):
            return BatchPartialFailure(key=key, reason="invalid_json")
        return BatchPartialFailure(key=key, reason="function_error")

    def _count(self, outcome: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("gateway_batch_subrequests_total", outcome=outcome)
