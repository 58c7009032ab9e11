"""
Unit tests for the local LRU cache and Redis client factory.
"""
import pytest
from unittest.mock import patch
import sys
import os

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.utils.cache import LocalCache, create_redis_client


class TestLocalCacheCapacity:
    """Tests for LRU eviction."""

    def test_never_exceeds_capacity(self, clock):
        """Writing past capacity keeps the size at the limit."""
        cache = LocalCache(max_entries=3, clock=clock)
        for i in range(10):
            cache.set(f"k{i}", i)
            assert len(cache) <= 3
        assert len(cache) == 3

    def test_least_recently_written_evicted(self, clock):
        """After capacity+1 writes the first key is gone."""
        cache = LocalCache(max_entries=3, clock=clock)
        for key in ("a", "b", "c", "d"):
            cache.set(key, key.upper())

        assert cache.get("a") is None
        assert cache.get("b") == "B"
        assert cache.get("d") == "D"

    def test_read_counts_as_access(self, clock):
        """A read protects a key from the next eviction."""
        cache = LocalCache(max_entries=3, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("c", 3)
        cache.get("a")
        cache.set("d", 4)

        assert cache.get("b") is None
        assert cache.get("a") == 1

    def test_rewrite_counts_as_access(self, clock):
        """Rewriting a key moves it to most recently used."""
        cache = LocalCache(max_entries=2, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("a", 10)
        cache.set("c", 3)

        assert cache.get("b") is None
        assert cache.get("a") == 10

    def test_evictions_counted(self, clock):
        """Stats report how many entries were evicted."""
        cache = LocalCache(max_entries=2, clock=clock)
        for i in range(5):
            cache.set(str(i), i)
        assert cache.get_stats()["evictions"] == 3

    def test_zero_capacity_rejected(self):
        """A cache must hold at least one entry."""
        with pytest.raises(ValueError):
            LocalCache(max_entries=0)


class TestLocalCacheExpiry:
    """Tests for TTL handling."""

    def test_entry_expires_after_ttl(self, clock):
        """Entries past their TTL read as absent."""
        cache = LocalCache(max_entries=5, ttl_seconds=60, clock=clock)
        cache.set("a", 1)
        clock.advance(59)
        assert cache.get("a") == 1
        clock.advance(1)
        assert cache.get("a") is None
        assert len(cache) == 0

    def test_per_entry_ttl_override(self, clock):
        """An explicit TTL wins over the default."""
        cache = LocalCache(max_entries=5, ttl_seconds=60, clock=clock)
        cache.set("short", 1, ttl=10)
        cache.set("long", 2)
        clock.advance(30)
        assert cache.get("short") is None
        assert cache.get("long") == 2

    def test_purge_expired(self, clock):
        """purge_expired removes only expired entries and reports the count."""
        cache = LocalCache(max_entries=5, ttl_seconds=60, clock=clock)
        cache.set("old1", 1)
        cache.set("old2", 2)
        clock.advance(50)
        cache.set("fresh", 3)
        clock.advance(20)

        assert cache.purge_expired() == 2
        assert len(cache) == 1
        assert cache.get("fresh") == 3


class TestLocalCacheStats:
    """Tests for statistics and housekeeping."""

    def test_stats_shape(self, clock):
        cache = LocalCache(max_entries=4, ttl_seconds=3600, clock=clock)
        cache.set("a", 1)

        stats = cache.get_stats()
        assert stats["size"] == 1
        assert stats["max_entries"] == 4
        assert stats["utilization"] == "25.0%"
        assert stats["ttl_seconds"] == 3600
        assert stats["eviction_policy"] == "LRU"

    def test_delete_and_clear(self, clock):
        cache = LocalCache(clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)

        assert cache.delete("a") is True
        assert cache.delete("a") is False
        cache.clear()
        assert len(cache) == 0
        assert cache.get_stats()["evictions"] == 0


class TestCreateRedisClient:
    """Tests for the Redis client factory."""

    def test_bounded_timeouts(self):
        """Timeouts are passed through and retries disabled."""
        with patch('app.utils.cache.redis.from_url') as from_url:
            create_redis_client("redis://localhost:6379/0", socket_timeout=1.5, connect_timeout=0.5)

        kwargs = from_url.call_args.kwargs
        assert kwargs["socket_timeout"] == 1.5
        assert kwargs["socket_connect_timeout"] == 0.5
        assert kwargs["retry_on_timeout"] is False
        assert kwargs["decode_responses"] is False
        assert "ssl_cert_reqs" not in kwargs

    def test_tls_url(self):
        """rediss:// URLs skip certificate verification."""
        with patch('app.utils.cache.redis.from_url') as from_url:
            create_redis_client("rediss://example:6380/0")

        assert from_url.call_args.kwargs["ssl_cert_reqs"] == "none"
