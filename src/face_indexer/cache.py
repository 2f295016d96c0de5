"""Invalidation of the downstream cache that serves per-event state."""

from __future__ import annotations

import re
from typing import Any, Protocol

import redis

from face_indexer.config import CacheConfig
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "cache"})

_KEY_UNSAFE = re.compile(r"[^a-z0-9:_-]")
_KEY_MAX_LENGTH = 200


def generate_cache_key(*parts: object) -> str:
    """Build a lowercase ``a:b:c`` cache key, skipping empty parts and replacing unsafe characters."""

    joined = ":".join(str(part) for part in parts if part is not None and part != "")
    return _KEY_UNSAFE.sub("_", joined.lower())[:_KEY_MAX_LENGTH]


class CacheInvalidator(Protocol):
    def invalidate_event(self, event_id: str) -> int:
        """Drop every cached entry about ``event_id``; return how many were removed."""


class NullCacheInvalidator:
    """Used when no cache is configured."""

    def invalidate_event(self, event_id: str) -> int:
        LOGGER.debug("cache_invalidation_skipped", extra={"event_id": event_id})
        return 0


class RedisCacheInvalidator:
    """Delete ``event:<event_id>*`` keys from Redis."""

    def __init__(self, client: Any, key_prefix: str = "", batch_size: int = 500) -> None:
        self._client = client
        self._key_prefix = key_prefix
        self._batch_size = batch_size

    @classmethod
    def from_url(
        cls,
        url: str,
        key_prefix: str = "",
        socket_timeout: float = 5.0,
        socket_connect_timeout: float = 2.0,
    ) -> "RedisCacheInvalidator":
        client = redis.Redis.from_url(
            url,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_connect_timeout,
        )
        return cls(client, key_prefix=key_prefix)

    @property
    def client(self) -> Any:
        return self._client

    def pattern_for(self, event_id: str) -> str:
        return f"{self._key_prefix}{generate_cache_key('event', event_id)}*"

    def invalidate_event(self, event_id: str) -> int:
        pattern = self.pattern_for(event_id)
        removed = 0
        batch: list[Any] = []
        for key in self._client.scan_iter(match=pattern, count=self._batch_size):
            batch.append(key)
            if len(batch) >= self._batch_size:
                removed += int(self._client.delete(*batch))
                batch = []
        if batch:
            removed += int(self._client.delete(*batch))
        LOGGER.info("cache_invalidated", extra={"event_id": event_id, "pattern": pattern, "removed": removed})
        return removed


def build_cache_invalidator(config: CacheConfig) -> CacheInvalidator:
    if config.redis_url:
        return RedisCacheInvalidator.from_url(
            config.redis_url,
            key_prefix=config.key_prefix,
            socket_timeout=config.socket_timeout_seconds,
            socket_connect_timeout=config.connect_timeout_seconds,
        )
    return NullCacheInvalidator()


__all__ = [
    "CacheInvalidator",
    "NullCacheInvalidator",
    "RedisCacheInvalidator",
    "build_cache_invalidator",
    "generate_cache_key",
]
