"""Tests for cache key generation and Redis invalidation."""

from __future__ import annotations

from face_indexer.cache import NullCacheInvalidator, RedisCacheInvalidator, build_cache_invalidator, generate_cache_key
from face_indexer.config import CacheConfig


class _FakeRedis:
    def __init__(self, keys: list[str]) -> None:
        self.keys = set(keys)
        self.patterns: list[str] = []
        self.delete_calls = 0

    def scan_iter(self, match: str, count: int):
        self.patterns.append(match)
        prefix = match.rstrip("*")
        return iter(sorted(key for key in self.keys if key.startswith(prefix)))

    def delete(self, *keys: str) -> int:
        self.delete_calls += 1
        removed = len(self.keys.intersection(keys))
        self.keys.difference_update(keys)
        return removed


def test_generate_cache_key_is_lowercase_and_safe() -> None:
    assert generate_cache_key("Event", "Corrida SP", None, "", 3) == "event:corrida_sp:3"
    assert len(generate_cache_key("x" * 500)) == 200


def test_redis_invalidator_deletes_matching_keys_in_batches() -> None:
    client = _FakeRedis(["app:event:run:photos", "app:event:run:stats", "app:event:ride:stats", "other"])
    invalidator = RedisCacheInvalidator(client, key_prefix="app:", batch_size=1)

    removed = invalidator.invalidate_event("Run")

    assert removed == 2
    assert client.patterns == ["app:event:run*"]
    assert client.delete_calls == 2
    assert client.keys == {"app:event:ride:stats", "other"}


def test_build_cache_invalidator_without_url_is_null() -> None:
    invalidator = build_cache_invalidator(CacheConfig())

    assert isinstance(invalidator, NullCacheInvalidator)
    assert invalidator.invalidate_event("run") == 0


def test_build_cache_invalidator_with_url_uses_redis() -> None:
    invalidator = build_cache_invalidator(CacheConfig(redis_url="redis://localhost:6379/0", key_prefix="app:"))

    assert isinstance(invalidator, RedisCacheInvalidator)
    assert invalidator.pattern_for("run") == "app:event:run*"


def test_redis_client_is_built_with_socket_timeouts() -> None:
    config = CacheConfig(
        redis_url="redis://localhost:6379/0",
        socket_timeout_seconds=1.5,
        connect_timeout_seconds=0.5,
    )

    invalidator = build_cache_invalidator(config)

    assert isinstance(invalidator, RedisCacheInvalidator)
    connection_kwargs = invalidator.client.connection_pool.connection_kwargs
    assert connection_kwargs["socket_timeout"] == 1.5
    assert connection_kwargs["socket_connect_timeout"] == 0.5
