"""
Caching utilities for the conversation engine.

Provides the bounded in-process LRU cache used as the session store's
fallback tier, and the Redis client factory used for the primary tier.
"""
import time
import logging
from typing import Any, Callable, Dict, Optional

import redis
from cachetools import Cache, LRUCache

logger = logging.getLogger(__name__)


def create_redis_client(
    url: str,
    socket_timeout: float = 2.0,
    connect_timeout: float = 2.0
) -> redis.Redis:
    """
    Build a Redis client with bounded timeouts.

    No connection is opened here; the first command connects, so an
    unreachable server surfaces as a RedisError on that command.
    """
    redis_kwargs = {
        "decode_responses": False,  # We handle encoding ourselves
        "socket_timeout": socket_timeout,
        "socket_connect_timeout": connect_timeout,
        "retry_on_timeout": False
    }
    # Support rediss:// URLs (Upstash, etc.) which require ssl_cert_reqs
    if url.startswith("rediss://"):
        redis_kwargs["ssl_cert_reqs"] = "none"

    return redis.from_url(url, **redis_kwargs)


class _CountingLRUCache(LRUCache):
    """LRUCache that reports each capacity eviction."""

    def __init__(self, maxsize: int, on_evict: Callable[[str], None]):
        super().__init__(maxsize=maxsize)
        self._on_evict = on_evict

    def popitem(self):
        key, value = super().popitem()
        self._on_evict(key)
        return key, value

    def peek(self, key: str) -> Any:
        """Read without touching recency."""
        return Cache.__getitem__(self, key)


class LocalCache:
    """
    Bounded least-recently-used cache with per-entry TTL.

    Reads and writes both count as access. Entries past their TTL are
    treated as absent and removed when touched.
    """

    def __init__(
        self,
        max_entries: int = 100,
        ttl_seconds: int = 3600,
        clock: Callable[[], float] = time.monotonic
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        # key -> (value, written_at, ttl)
        self._entries = _CountingLRUCache(max_entries, self._record_eviction)
        self._evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def _record_eviction(self, key: str) -> None:
        self._evictions += 1
        logger.debug(
            "Local cache evicted least recently used entry",
            extra={"extra_fields": {"event": "local_cache_evicted", "key": key}}
        )

    def _expired(self, written_at: float, ttl: int) -> bool:
        return self._clock() - written_at >= ttl

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None if absent or expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None

        value, written_at, ttl = entry
        if self._expired(written_at, ttl):
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Store a value, evicting least-recently-used entries past capacity."""
        ttl = self.ttl_seconds if ttl is None else ttl
        self._entries[key] = (value, self._clock(), ttl)

    def delete(self, key: str) -> bool:
        """Remove a key. Returns True if it was present."""
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        # MutableMapping.clear goes through popitem, which would count evictions
        for key in list(self._entries):
            del self._entries[key]

    def purge_expired(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        expired = [
            key for key in list(self._entries)
            if self._expired(*self._entries.peek(key)[1:])
        ]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        size = len(self._entries)
        return {
            "size": size,
            "max_entries": self.max_entries,
            "utilization": f"{(size / self.max_entries) * 100:.1f}%",
            "ttl_seconds": self.ttl_seconds,
            "evictions": self._evictions,
            "eviction_policy": "LRU",
        }
