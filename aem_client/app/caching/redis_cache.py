"""
Redis caching layer shared across client processes.
"""

import json
from typing import Any, Dict, Optional

import redis.asyncio as redis

from aem_shared.logging import get_logger
from .base import CacheBackend


class RedisCache(CacheBackend):
    """Redis-backed cache.

    Every Redis failure is logged and degrades to cache-miss behaviour so a
    caller's request never fails because the cache is unreachable.
    """

    def __init__(self, redis_url: str, default_ttl: float = 300.0, key_prefix: str = "aem:cache:"):
        self.redis_url = redis_url
        self.default_ttl = default_ttl
        self.key_prefix = key_prefix
        self.logger = get_logger("aem.cache.redis")
        self._redis: Optional[redis.Redis] = None

        self._hits = 0
        self._misses = 0
        self._sets = 0
        self._deletes = 0
        self._errors = 0

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                health_check_interval=30,
            )
        return self._redis

    def _make_key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    async def get(self, key: str) -> Optional[Any]:
        try:
            redis_client = await self._get_redis()
            cached_data = await redis_client.get(self._make_key(key))
        except Exception as e:
            self._errors += 1
            self._misses += 1
            self.logger.error("Cache get error", key=key, error=str(e))
            return None

        if cached_data is None:
            self._misses += 1
            return None

        try:
            value = json.loads(cached_data)
        except (TypeError, ValueError) as e:
            self._misses += 1
            self.logger.warning("Discarding undecodable cache entry", key=key, error=str(e))
            return None

        self._hits += 1
        return value

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        cache_ttl = ttl if ttl is not None else self.default_ttl
        try:
            payload = json.dumps(value, default=str)
            redis_client = await self._get_redis()
            await redis_client.set(self._make_key(key), payload, px=max(1, int(cache_ttl * 1000)))
        except Exception as e:
            self._errors += 1
            self.logger.error("Cache set error", key=key, error=str(e))
            return False

        self._sets += 1
        self.logger.debug("Cached value", key=key, ttl=cache_ttl)
        return True

    async def delete(self, key: str) -> bool:
        try:
            redis_client = await self._get_redis()
            removed = await redis_client.delete(self._make_key(key))
        except Exception as e:
            self._errors += 1
            self.logger.error("Cache delete error", key=key, error=str(e))
            return False

        self._deletes += removed
        return removed > 0

    async def has(self, key: str) -> bool:
        try:
            redis_client = await self._get_redis()
            return bool(await redis_client.exists(self._make_key(key)))
        except Exception as e:
            self._errors += 1
            self.logger.error("Cache exists error", key=key, error=str(e))
            return False

    async def clear(self) -> None:
        await self.invalidate_pattern("*")

    async def invalidate_pattern(self, pattern: str) -> int:
        try:
            redis_client = await self._get_redis()
            keys = await redis_client.keys(self._make_key(pattern))
            if not keys:
                return 0
            removed = await redis_client.delete(*keys)
        except Exception as e:
            self._errors += 1
            self.logger.error("Cache clear error", pattern=pattern, error=str(e))
            return 0

        self._deletes += removed
        self.logger.info("Cleared cache pattern", pattern=pattern, keys_count=removed)
        return removed

    async def get_stats(self) -> Dict[str, Any]:
        total = self._hits + self._misses
        stats: Dict[str, Any] = {
            "backend": "redis",
            "hits": self._hits,
            "misses": self._misses,
            "sets": self._sets,
            "deletes": self._deletes,
            "errors": self._errors,
            "hit_rate": self._hits / total if total else 0.0,
        }
        try:
            redis_client = await self._get_redis()
            stats["size"] = len(await redis_client.keys(self._make_key("*")))
            stats["available"] = True
        except Exception as e:
            self.logger.error("Cache stats error", error=str(e))
            stats["size"] = None
            stats["available"] = False
        return stats

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self.logger.info("Redis cache stopped")
