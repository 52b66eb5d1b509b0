"""
Client-side access to the tenant gateway.

- cache: Session-scoped TTL cache with tag-based invalidation
- client: HTTP calls to the gateway's single and batch endpoints
- session: Per-login data layer that reads through and invalidates the cache
"""

from .cache import CacheStore, cache_key
from .client import GatewayClient
from .session import GatewaySession

__all__ = [
    "CacheStore",
    "GatewayClient",
    "GatewaySession",
    "cache_key",
]
