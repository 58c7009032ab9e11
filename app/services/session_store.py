"""
Session Store.

Durable per-identity conversation state held in two tiers: Redis as the
authoritative primary and a bounded in-process LRU cache as fallback.

Key features:
1. Primary-first reads with cache fallback on outage, miss or corrupt payload
2. Best-effort primary writes; the local cache is always refreshed
3. Corrupt payloads purged from the tier they were read from
4. get/set never raise, so a store outage still yields a reply
"""
import json
import logging
from typing import Any, Dict, Optional, Protocol

import redis
from redis.exceptions import RedisError

from app.middleware.error_handling import CorruptStateException, StoreUnavailableException
from app.utils.cache import LocalCache
from app.utils.identity import mask_identity

logger = logging.getLogger(__name__)


class Codec(Protocol):
    def encode(self, value: Any) -> str: ...

    def decode(self, key: str, payload: str) -> Any: ...


class JsonCodec:
    """Plain JSON dictionaries (used for legacy state and drafts)."""

    def encode(self, value: Any) -> str:
        return json.dumps(value)

    def decode(self, key: str, payload: str) -> Any:
        try:
            value = json.loads(payload)
        except ValueError as e:
            raise CorruptStateException(key, str(e), original_error=e)
        if not isinstance(value, dict):
            raise CorruptStateException(key, "payload is not an object")
        return value


class SessionStore:
    """
    Dual-tier session storage.

    The primary may diverge from the local cache while it is unreachable;
    nothing reconciles the two once it recovers.
    """

    def __init__(
        self,
        client: Optional[redis.Redis],
        local_cache: LocalCache,
        codec: Optional[Codec] = None,
        key_prefix: str = "wa_state:",
        ttl_seconds: int = 3600,
        name: str = "session"
    ):
        self._client = client
        self._local = local_cache
        self._codec = codec or JsonCodec()
        self.key_prefix = key_prefix
        self.ttl_seconds = ttl_seconds
        self.name = name

    def _key(self, identity: str) -> str:
        return f"{self.key_prefix}{identity}"

    # Primary tier

    def _primary_get(self, key: str) -> Optional[bytes]:
        if self._client is None:
            raise StoreUnavailableException("get")
        try:
            return self._client.get(key)
        except RedisError as e:
            raise StoreUnavailableException("get", original_error=e)

    def _primary_setex(self, key: str, ttl: int, payload: str) -> None:
        if self._client is None:
            raise StoreUnavailableException("set")
        try:
            self._client.setex(key, ttl, payload.encode("utf-8"))
        except RedisError as e:
            raise StoreUnavailableException("set", original_error=e)

    def _primary_delete(self, key: str) -> None:
        if self._client is None:
            raise StoreUnavailableException("delete")
        try:
            self._client.delete(key)
        except RedisError as e:
            raise StoreUnavailableException("delete", original_error=e)

    def _log_unavailable(self, identity: str, error: StoreUnavailableException) -> None:
        logger.warning(
            f"Primary {self.name} store unavailable for {mask_identity(identity)}: "
            f"{error.original_error or error.message}",
            extra={"extra_fields": {
                "event": "store_primary_unavailable",
                "store": self.name,
                "operation": error.details["operation"],
            }}
        )

    def _log_corrupt(self, identity: str, tier: str, error: CorruptStateException) -> None:
        logger.error(
            f"Purged corrupt {self.name} state for {mask_identity(identity)} from {tier}",
            extra={"extra_fields": {
                "event": "corrupt_state_purged",
                "store": self.name,
                "tier": tier,
                "reason": error.message,
            }}
        )

    # Public operations

    def get(self, identity: str) -> Optional[Any]:
        """
        Load the stored value for an identity.

        Returns:
            Decoded value, or None when absent in both tiers
        """
        key = self._key(identity)

        try:
            payload = self._primary_get(key)
            if payload is not None:
                if isinstance(payload, bytes):
                    payload = payload.decode("utf-8", errors="replace")
                return self._codec.decode(key, payload)
        except StoreUnavailableException as e:
            self._log_unavailable(identity, e)
        except CorruptStateException as e:
            self._log_corrupt(identity, "primary", e)
            try:
                self._primary_delete(key)
            except StoreUnavailableException as delete_error:
                self._log_unavailable(identity, delete_error)

        cached = self._local.get(key)
        if cached is None:
            return None

        try:
            return self._codec.decode(key, cached)
        except CorruptStateException as e:
            self._log_corrupt(identity, "local", e)
            self._local.delete(key)
            return None

    def set(self, identity: str, value: Any, ttl: Optional[int] = None) -> bool:
        """
        Persist a value. Never raises.

        Returns:
            True if the primary accepted the write, False if it degraded to
            cache-only
        """
        key = self._key(identity)
        ttl = self.ttl_seconds if ttl is None else ttl

        try:
            payload = self._codec.encode(value)
        except (TypeError, ValueError) as e:
            logger.error(f"Could not encode {self.name} state for {mask_identity(identity)}: {e}")
            return False

        stored = True
        try:
            self._primary_setex(key, ttl, payload)
        except StoreUnavailableException as e:
            self._log_unavailable(identity, e)
            stored = False

        self._local.set(key, payload, ttl)
        return stored

    def clear(self, identity: str) -> None:
        """Remove the value from both tiers."""
        key = self._key(identity)
        try:
            self._primary_delete(key)
        except StoreUnavailableException as e:
            self._log_unavailable(identity, e)
        self._local.delete(key)

    def has_state(self, identity: str) -> bool:
        return self.get(identity) is not None

    def update_state_field(self, identity: str, field_name: str, value: Any) -> Dict[str, Any]:
        """
        Update one key of a stored dictionary value.

        Raises:
            KeyError: when no value is stored for the identity
        """
        current = self.get(identity)
        if current is None:
            raise KeyError(f"No {self.name} state for identity")
        updated = {**current, field_name: value}
        self.set(identity, updated)
        return updated

    def cleanup_expired_entries(self) -> int:
        """Drop expired local-cache entries."""
        removed = self._local.purge_expired()
        if removed:
            logger.debug(f"Removed {removed} expired {self.name} cache entries")
        return removed

    def ping(self) -> bool:
        """Whether the primary currently answers."""
        if self._client is None:
            return False
        try:
            return bool(self._client.ping())
        except RedisError:
            return False

    def get_statistics(self) -> Dict[str, Any]:
        """Occupancy, utilization and configured limits of the local tier."""
        local = self._local.get_stats()
        return {
            "store": self.name,
            "memory_cache_size": local["size"],
            "max_memory_entries": local["max_entries"],
            "cache_utilization": local["utilization"],
            "cache_ttl_seconds": self.ttl_seconds,
            "evictions": local["evictions"],
            "eviction_policy": local["eviction_policy"],
        }
