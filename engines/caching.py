"""Key-value caches for derived aggregates.

Every backend exposes the same three calls: ``get(key)`` returning the
decoded JSON value or ``None``, ``put(key, value, ttl_seconds)`` and
``delete(key)``. Values must be JSON-serialisable; caches hold copies, never
live objects.
"""

import json
import logging
import time
from threading import Lock
from typing import Any, Callable, Dict, Optional, Tuple

import redis

logger = logging.getLogger(__name__)


class NullCache:
    """Cache that never stores anything; every read is a miss."""

    def get(self, key: str) -> Optional[Any]:
        return None

    def put(self, key: str, value: Any, ttl_seconds: int) -> None:
        return None

    def delete(self, key: str) -> None:
        return None


class MemoryTTLCache:
    """Thread-safe in-process cache with per-entry expiry and a size limit."""

    def __init__(self, max_size: int = 1024, clock: Callable[[], float] = time.monotonic):
        self._cache: Dict[str, Tuple[float, str]] = {}
        self._max_size = max_size
        self._clock = clock
        self._lock = Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            item = self._cache.get(key)
            if item is None:
                return None
            expires_at, payload = item
            if expires_at <= self._clock():
                self._cache.pop(key, None)
                return None
        return json.loads(payload)

    def put(self, key: str, value: Any, ttl_seconds: int) -> None:
        payload = json.dumps(value)
        with self._lock:
            if key not in self._cache and len(self._cache) >= self._max_size:
                self._evict()
            self._cache[key] = (self._clock() + ttl_seconds, payload)

    def delete(self, key: str) -> None:
        with self._lock:
            self._cache.pop(key, None)

    def _evict(self) -> None:
        now = self._clock()
        expired = [key for key, (expires_at, _) in self._cache.items() if expires_at <= now]
        for key in expired:
            del self._cache[key]
        if len(self._cache) >= self._max_size:
            # Drop whatever expires soonest.
            oldest = min(self._cache, key=lambda key: self._cache[key][0])
            del self._cache[oldest]

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)


class RedisCache:
    """Cache backed by a Redis server, for multi-process deployments."""

    def __init__(self, url: str, prefix: str = "homereader", client: Any = None):
        if client is None:
            client = redis.Redis.from_url(url, decode_responses=True)
        self._redis = client
        self._prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    def get(self, key: str) -> Optional[Any]:
        payload = self._redis.get(self._key(key))
        if payload is None:
            return None
        return json.loads(payload)

    def put(self, key: str, value: Any, ttl_seconds: int) -> None:
        self._redis.set(self._key(key), json.dumps(value), ex=int(ttl_seconds))

    def delete(self, key: str) -> None:
        self._redis.delete(self._key(key))


def build_cache(backend: str = "memory", redis_url: Optional[str] = None):
    """Return the cache for ``backend`` (``memory``, ``redis`` or ``none``)."""
    backend = (backend or "memory").strip().lower()
    if backend == "none":
        return NullCache()
    if backend == "redis":
        if not redis_url:
            raise ValueError("REDIS_URL is required for the redis cache backend")
        logger.info("Using Redis stats cache")
        return RedisCache(redis_url)
    if backend == "memory":
        return MemoryTTLCache()
    raise ValueError(f"unknown cache backend: {backend}")
