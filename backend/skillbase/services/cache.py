"""Best-effort read-through cache.

``NullCache`` is the default and stores nothing, so callers behave the
same with or without Redis. ``RedisCache`` adds TTL entries and
pattern-based invalidation; any Redis failure is logged and treated as a
miss rather than surfaced to the caller.
"""
from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable

import redis

logger = logging.getLogger(__name__)


class Cache(ABC):
    """Minimal cache contract used by the service layer."""

    @abstractmethod
    def get(self, key: str) -> Any | None:
        ...

    @abstractmethod
    def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        ...

    @abstractmethod
    def delete_pattern(self, pattern: str) -> int:
        ...

    def get_or_set(self, key: str, loader: Callable[[], Any], ttl: int | None = None) -> Any:
        value = self.get(key)
        if value is not None:
            return value
        value = loader()
        if value is not None:
            self.set(key, value, ttl)
        return value


class NullCache(Cache):
    def get(self, key: str) -> Any | None:
        return None

    def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        return None

    def delete_pattern(self, pattern: str) -> int:
        return 0


class RedisCache(Cache):
    """JSON-serialised values in Redis under a common key prefix."""

    def __init__(self, redis_url: str, default_ttl: int = 300, prefix: str = "skillbase:"):
        self._redis_url = redis_url
        self._client: redis.Redis | None = None
        self.default_ttl = default_ttl
        self.prefix = prefix

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(self._redis_url, decode_responses=True)
        return self._client

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def get(self, key: str) -> Any | None:
        try:
            raw = self.client.get(self._key(key))
        except redis.RedisError as e:
            logger.warning("Cache get failed for %s: %s", key, e)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning("Discarding undecodable cache entry %s", key)
            return None

    def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        try:
            self.client.set(self._key(key), json.dumps(value, default=str), ex=ttl or self.default_ttl)
        except (redis.RedisError, TypeError) as e:
            logger.warning("Cache set failed for %s: %s", key, e)

    def delete_pattern(self, pattern: str) -> int:
        deleted = 0
        try:
            keys = list(self.client.scan_iter(match=self._key(pattern), count=500))
            if keys:
                deleted = self.client.delete(*keys)
        except redis.RedisError as e:
            logger.warning("Cache invalidation failed for %s: %s", pattern, e)
        return deleted


def build_cache(redis_url: str, enabled: bool, ttl: int) -> Cache:
    """Return a Redis cache when configured, otherwise the no-op cache."""
    if enabled and redis_url:
        return RedisCache(redis_url, default_ttl=ttl)
    return NullCache()
