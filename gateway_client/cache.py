"""
Session-scoped response cache for gateway reads.

Entries live in a ``cachetools.TTLCache``, so they expire after a fixed TTL
and expired or least-recently-used entries are dropped as new ones arrive.
Each entry carries tags naming the resource groups it was built from. A write
to a resource invalidates every entry tagged with it (or whose key mentions
it), so the cache may evict more than needed but never serves data older
than the last write made through the session.
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, Iterable, Optional

from cachetools import TTLCache

from shared.logging import get_logger

KEY_SEPARATOR = ":"
DEFAULT_MAX_ENTRIES = 1024


def cache_key(principal_id: str, *parts: str) -> str:
    """Build a cache key scoped to one principal, e.g. ``alice:jobs:all``."""
    return KEY_SEPARATOR.join((principal_id,) + tuple(parts))


def resource_of(key: str) -> Optional[str]:
    """Resource segment of a key built by :func:`cache_key`."""
    parts = key.split(KEY_SEPARATOR)
    return parts[1] if len(parts) > 1 and parts[1] else None


@dataclass(frozen=True)
class CacheEntry:
    key: str
    payload: Any
    inserted_at: float
    tags: FrozenSet[str]


class CacheStore:
    """TTL cache with tag-based invalidation, owned by one session."""

    def __init__(
        self,
        ttl_seconds: float = 30.0,
        *,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: TTLCache = TTLCache(maxsize=max_entries, ttl=ttl_seconds, timer=clock)
        self._epoch = 0
        self._invalidated_at: Dict[str, int] = {}
        self._cleared_at = 0
        self.logger = get_logger("gateway_client.cache")

    def __len__(self) -> int:
        self._entries.expire()
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def begin(self) -> int:
        """Mark the start of a fetch; pass the result to :meth:`populate`."""
        return self._epoch

    def lookup(self, key: str) -> Optional[Any]:
        """Return the cached payload, or ``None`` on a miss or after expiry."""
        entry = self._entries.get(key)
        if entry is None:
            return None

        self.logger.debug("Cache hit", key=key)
        return entry.payload

    def populate(self, key: str, payload: Any, tags: Iterable[str] = (), *, epoch: Optional[int] = None) -> bool:
        """Store ``payload`` under ``key``.

        When ``epoch`` is given and an invalidation touching this entry has
        happened since, the payload is dropped: it was read before a write
        that made it stale.
        """
        if payload is None:
            return False

        entry_tags = set(tags)
        resource = resource_of(key)
        if resource:
            entry_tags.add(resource)

        if epoch is not None and self._invalidated_since(epoch, key, entry_tags):
            self.logger.debug("Discarded stale read", key=key)
            return False

        self._entries[key] = CacheEntry(
            key=key,
            payload=payload,
            inserted_at=self._clock(),
            tags=frozenset(entry_tags),
        )
        return True

    def invalidate(self, *tags: str) -> int:
        """Drop every entry tagged with, or whose key contains, any of ``tags``."""
        targets = {tag for tag in tags if tag}
        if not targets:
            return 0

        self._epoch += 1
        for tag in targets:
            self._invalidated_at[tag] = self._epoch

        self._entries.expire()
        doomed = []
        for key in list(self._entries):
            entry = self._entries.get(key)
            if entry is not None and (entry.tags & targets or any(tag in key for tag in targets)):
                doomed.append(key)
        for key in doomed:
            self._entries.pop(key, None)

        self.logger.debug("Cache invalidated", tags=sorted(targets), evicted=len(doomed))
        return len(doomed)

    def invalidate_all(self) -> None:
        """Clear every entry."""
        self._epoch += 1
        self._cleared_at = self._epoch
        self._invalidated_at.clear()
        self._entries.clear()

    def _invalidated_since(self, epoch: int, key: str, tags: set) -> bool:
        if self._cleared_at > epoch:
            return True
        for tag, invalidated_at in self._invalidated_at.items():
            if invalidated_at > epoch and (tag in tags or tag in key):
                return True
        return False
