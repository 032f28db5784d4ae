"""
Read-through cache for provider/plan pair summaries.

Works with Redis when a client is supplied, otherwise keeps entries in
process memory. Cache failures never fail a request: reads degrade to a
miss and writes are dropped with a log line.
"""

import json
import logging
import threading
import time
from typing import Any, Dict, Optional, Tuple

from redis import Redis
from redis.exceptions import RedisError

from acceptance_api.config import get_settings


logger = logging.getLogger(__name__)


class ReadCache:
    """Pair summary cache with selective invalidation."""

    KEY_PREFIX = "acceptance:pair:"

    def __init__(self, ttl_seconds: int = 300, redis_client: Optional[Redis] = None):
        self.ttl_seconds = ttl_seconds
        self.redis = redis_client
        self._memory: Dict[str, Tuple[float, Any]] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @property
    def mode(self) -> str:
        return "redis" if self.redis is not None else "memory"

    def pair_key(self, provider_id: str, plan_id: str) -> str:
        return f"{self.KEY_PREFIX}{provider_id}:{plan_id}"

    def get(self, key: str) -> Optional[Any]:
        value = self._redis_get(key) if self.redis is not None else self._memory_get(key)
        if value is None:
            self.misses += 1
            logger.debug(f"Cache miss: {key}")
        else:
            self.hits += 1
            logger.debug(f"Cache hit: {key}")
        return value

    def set(self, key: str, value: Any, ttl: Optional[int] = None):
        ttl = ttl or self.ttl_seconds
        if self.redis is not None:
            try:
                self.redis.set(key, json.dumps(value, default=str), ex=ttl)
            except RedisError as e:
                logger.error(f"Cache set error: {e}")
            return
        with self._lock:
            self._memory[key] = (time.monotonic() + ttl, value)

    def invalidate_pair(self, provider_id: str, plan_id: str):
        """Drop the cached summary after a write to the pair."""
        key = self.pair_key(provider_id, plan_id)
        if self.redis is not None:
            try:
                self.redis.delete(key)
            except RedisError as e:
                logger.error(f"Cache invalidation error for {key}: {e}")
            return
        with self._lock:
            self._memory.pop(key, None)
        logger.debug(f"Invalidated cache: {key}")

    def clear(self) -> int:
        """Drop every cached pair summary; returns how many entries were removed."""
        with self._lock:
            deleted = len(self._memory)
            self._memory.clear()

        if self.redis is not None:
            try:
                keys = list(self.redis.scan_iter(match=f"{self.KEY_PREFIX}*", count=500))
                for start in range(0, len(keys), 500):
                    deleted += self.redis.delete(*keys[start:start + 500])
            except RedisError as e:
                logger.warning(f"Redis cache clear failed: {e}")

        logger.info(f"Cache cleared, {deleted} entries removed")
        return deleted

    def stats(self) -> Dict[str, Any]:
        lookups = self.hits + self.misses
        if self.redis is not None:
            try:
                size = sum(1 for _ in self.redis.scan_iter(match=f"{self.KEY_PREFIX}*", count=500))
            except RedisError as e:
                logger.warning(f"Redis cache size lookup failed: {e}")
                size = None
        else:
            with self._lock:
                size = len(self._memory)
        return {
            "mode": self.mode,
            "hits": self.hits,
            "misses": self.misses,
            "size": size,
            "hit_rate": round(self.hits / lookups * 100, 2) if lookups else 0.0,
            "ttl_seconds": self.ttl_seconds,
        }

    def sweep(self) -> int:
        """Remove expired in-memory entries; returns how many were removed."""
        now = time.monotonic()
        with self._lock:
            expired = [k for k, (expires, _) in self._memory.items() if expires < now]
            for key in expired:
                del self._memory[key]
        return len(expired)

    def _memory_get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._memory.get(key)
            if entry is None:
                return None
            expires, value = entry
            if expires < time.monotonic():
                del self._memory[key]
                return None
            return value

    def _redis_get(self, key: str) -> Optional[Any]:
        try:
            raw = self.redis.get(key)
        except RedisError as e:
            logger.error(f"Cache get error: {e}")
            return None
        return json.loads(raw) if raw is not None else None


# Global cache instance
_read_cache: Optional[ReadCache] = None


def get_read_cache() -> ReadCache:
    """Get or create the global read cache."""
    global _read_cache
    if _read_cache is None:
        settings = get_settings()
        redis_client = None
        if settings.redis_url:
            redis_client = Redis.from_url(
                settings.redis_url,
                socket_timeout=settings.redis_socket_timeout,
                socket_connect_timeout=settings.redis_socket_timeout,
            )
        _read_cache = ReadCache(ttl_seconds=settings.cache_ttl_seconds, redis_client=redis_client)
    return _read_cache


def set_read_cache(cache: Optional[ReadCache]):
    global _read_cache
    _read_cache = cache
