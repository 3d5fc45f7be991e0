"""Small cache layer for read-mostly lookups (active tree summary, proofs).

Configuration is injected; nothing here is process-global. MemoryCache is the
single-instance default; RedisCache shares entries across workers.
"""

from __future__ import annotations

import json
import os
import threading
import time
from typing import Any, Optional

import redis
from cachetools import TTLCache

from log import get_logger

logger = get_logger(__name__)

DEFAULT_TTL_SECONDS = 60
DEFAULT_MAX_SIZE = 10000


class BaseCache:
    def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    def set(self, key: str, value: Any) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError


class NullCache(BaseCache):
    def get(self, key):
        return None

    def set(self, key, value):
        return None

    def delete(self, key):
        return None

    def clear(self):
        return None


class MemoryCache(BaseCache):
    """Thread-safe TTL cache; least recently used entries go first once ``max_size`` is reached."""

    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS, max_size: int = DEFAULT_MAX_SIZE, clock=time.monotonic):
        if max_size <= 0:
            raise ValueError("max_size must be > 0")
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self._data = TTLCache(maxsize=max_size, ttl=ttl_seconds, timer=clock)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            self._data.expire()
            return len(self._data)

    def get(self, key):
        with self._lock:
            return self._data.get(key)

    def set(self, key, value):
        with self._lock:
            self._data[key] = value

    def delete(self, key):
        with self._lock:
            self._data.pop(key, None)

    def clear(self):
        with self._lock:
            self._data.clear()


class RedisCache(BaseCache):
    """JSON values under ``prefix`` with a per-key expiry."""

    def __init__(self, client: "redis.Redis", ttl_seconds: float = DEFAULT_TTL_SECONDS, prefix: str = "merkle:"):
        self.client = client
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def get(self, key):
        raw = self.client.get(self._key(key))
        if raw is None:
            return None
        return json.loads(raw)

    def set(self, key, value):
        self.client.set(self._key(key), json.dumps(value, separators=(",", ":")), ex=max(1, int(self.ttl_seconds)))

    def delete(self, key):
        self.client.delete(self._key(key))

    def clear(self):
        keys = list(self.client.scan_iter(match=f"{self.prefix}*"))
        if keys:
            self.client.delete(*keys)


def cache_from_env() -> BaseCache:
    """Build the configured cache.

    MERKLE_CACHE_BACKEND: memory (default) | redis | none
    MERKLE_CACHE_TTL_SECONDS, MERKLE_CACHE_MAX_SIZE
    MERKLE_CACHE_REDIS_URL (falls back to REDIS_URL)
    """
    backend = os.getenv("MERKLE_CACHE_BACKEND", "memory").strip().lower()
    ttl = float(os.getenv("MERKLE_CACHE_TTL_SECONDS", str(DEFAULT_TTL_SECONDS)))

    if backend == "none":
        return NullCache()
    if backend == "redis":
        redis_url = os.getenv("MERKLE_CACHE_REDIS_URL") or os.getenv("REDIS_URL")
        if not redis_url:
            raise RuntimeError("MERKLE_CACHE_BACKEND=redis but MERKLE_CACHE_REDIS_URL/REDIS_URL is not set")
        prefix = os.getenv("MERKLE_CACHE_PREFIX", "merkle:")
        logger.info("merkle_cache_configured", backend="redis", ttl_seconds=ttl)
        return RedisCache(redis.from_url(redis_url), ttl_seconds=ttl, prefix=prefix)

    max_size = int(os.getenv("MERKLE_CACHE_MAX_SIZE", str(DEFAULT_MAX_SIZE)))
    return MemoryCache(ttl_seconds=ttl, max_size=max_size)
