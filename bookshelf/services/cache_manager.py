"""
Short-lived response cache backed by Redis when configured.
Falls back to an in-process memory cache when Redis is absent or unreachable.
"""

import json
import logging
import threading
import time
from typing import Any, Dict, Optional

import redis

from bookshelf.config import settings

logger = logging.getLogger(__name__)

MAX_MEMORY_ITEMS = 1000


class CacheManager:
    """TTL cache with a Redis primary and a memory fallback."""

    def __init__(self, redis_url: Optional[str] = None, prefix: str = "bookshelf_cache"):
        self.prefix = prefix
        self.redis_client = None
        self.memory_cache: Dict[str, tuple] = {}
        self.memory_cache_lock = threading.RLock()
        self.cache_stats = {
            'hits': 0,
            'misses': 0,
            'redis_hits': 0,
            'memory_hits': 0
        }

        if redis_url:
            self._init_redis(redis_url)

    def _init_redis(self, redis_url: str):
        try:
            self.redis_client = redis.from_url(
                redis_url,
                decode_responses=False,
                socket_connect_timeout=1,
                socket_timeout=1,
                retry_on_timeout=True,
                health_check_interval=30
            )
            self.redis_client.ping()
            logger.info("Redis cache initialized")
        except redis.RedisError as e:
            logger.warning(f"Redis unavailable: {e}. Using the memory cache only.")
            self.redis_client = None

    def _make_key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def get(self, key: str) -> Optional[Any]:
        """Return a cached value, or None when missing or expired."""
        if self.redis_client:
            try:
                data = self.redis_client.get(self._make_key(key))
                if data is not None:
                    self.cache_stats['hits'] += 1
                    self.cache_stats['redis_hits'] += 1
                    return json.loads(data.decode('utf-8'))
            except redis.RedisError as e:
                logger.warning(f"Redis get error: {e}")

        with self.memory_cache_lock:
            cache_entry = self.memory_cache.get(key)
            if cache_entry:
                value, expires_at = cache_entry
                if time.monotonic() < expires_at:
                    self.cache_stats['hits'] += 1
                    self.cache_stats['memory_hits'] += 1
                    return value
                del self.memory_cache[key]

        self.cache_stats['misses'] += 1
        return None

    def set(self, key: str, value: Any, ttl_seconds: int = 30) -> None:
        """Store a JSON-serializable value for ttl_seconds."""
        if self.redis_client:
            try:
                payload = json.dumps(value, default=str, ensure_ascii=False).encode('utf-8')
                self.redis_client.setex(self._make_key(key), ttl_seconds, payload)
            except redis.RedisError as e:
                logger.warning(f"Redis set error: {e}")

        with self.memory_cache_lock:
            self.memory_cache[key] = (value, time.monotonic() + ttl_seconds)

            # Keep the memory cache bounded: drop the 10% closest to expiry
            if len(self.memory_cache) > MAX_MEMORY_ITEMS:
                sorted_items = sorted(self.memory_cache.items(), key=lambda x: x[1][1])
                for k, _ in sorted_items[:MAX_MEMORY_ITEMS // 10]:
                    self.memory_cache.pop(k, None)

    def invalidate_prefix(self, prefix: str) -> int:
        """Drop every key starting with prefix. Returns how many entries were removed."""
        count = 0
        if self.redis_client:
            try:
                keys = list(self.redis_client.scan_iter(match=self._make_key(f"{prefix}*")))
                if keys:
                    count += self.redis_client.delete(*keys)
            except redis.RedisError as e:
                logger.warning(f"Redis invalidate error: {e}")

        with self.memory_cache_lock:
            for key in [k for k in self.memory_cache if k.startswith(prefix)]:
                self.memory_cache.pop(key, None)
                count += 1

        return count

    def get_stats(self) -> Dict[str, Any]:
        """Hit and miss counters plus the backend state, reported by /health."""
        stats = self.cache_stats.copy()
        stats['redis_available'] = self.redis_client is not None
        stats['memory_cache_size'] = len(self.memory_cache)
        total = stats['hits'] + stats['misses']
        stats['hit_ratio'] = stats['hits'] / total if total else 0.0
        return stats


# Process-wide cache instance
cache_manager = CacheManager(settings.redis_url)
