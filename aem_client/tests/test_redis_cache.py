"""
Unit tests for the Redis-backed cache.
"""

import json
from unittest.mock import AsyncMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from aem_client.app.caching.redis_cache import RedisCache


class TestRedisCache:
    """Test cases for RedisCache."""

    @pytest.fixture
    def cache(self):
        """Create RedisCache instance."""
        return RedisCache("redis://localhost:6379/0", default_ttl=2.5)

    @pytest.fixture
    def mock_redis(self, cache):
        with patch.object(cache, "_get_redis", new_callable=AsyncMock) as mock_get_redis:
            redis_client = AsyncMock()
            mock_get_redis.return_value = redis_client
            yield redis_client

    @pytest.mark.asyncio
    async def test_get_hit(self, cache, mock_redis):
        """Test that a stored JSON value is decoded."""
        mock_redis.get.return_value = json.dumps({"jcr:title": "Home"})

        value = await cache.get("aem:GET:/content/home:")

        assert value == {"jcr:title": "Home"}
        mock_redis.get.assert_awaited_once_with("aem:cache:aem:GET:/content/home:")
        assert (await cache.get_stats())["hits"] == 1

    @pytest.mark.asyncio
    async def test_get_miss(self, cache, mock_redis):
        mock_redis.get.return_value = None

        assert await cache.get("missing") is None
        assert cache._misses == 1

    @pytest.mark.asyncio
    async def test_set_uses_millisecond_expiry(self, cache, mock_redis):
        """Test that values are stored as JSON with a PX expiry."""
        assert await cache.set("key", [1, 2, 3]) is True

        mock_redis.set.assert_awaited_once_with("aem:cache:key", "[1, 2, 3]", px=2500)

    @pytest.mark.asyncio
    async def test_set_explicit_ttl(self, cache, mock_redis):
        await cache.set("key", "v", ttl=1.0)

        mock_redis.set.assert_awaited_once_with("aem:cache:key", '"v"', px=1000)

    @pytest.mark.asyncio
    async def test_errors_degrade_to_miss(self, cache, mock_redis):
        """Test that Redis failures never propagate to the caller."""
        mock_redis.get.side_effect = RedisConnectionError("connection refused")
        mock_redis.set.side_effect = RedisConnectionError("connection refused")
        mock_redis.keys.side_effect = RedisConnectionError("connection refused")

        assert await cache.get("key") is None
        assert await cache.set("key", "value") is False
        assert await cache.invalidate_pattern("*") == 0

        stats = await cache.get_stats()
        assert stats["errors"] == 3
        assert stats["available"] is False

    @pytest.mark.asyncio
    async def test_invalidate_pattern(self, cache, mock_redis):
        """Test glob invalidation is scoped to the key prefix."""
        mock_redis.keys.return_value = ["aem:cache:aem:GET:/content/dam/a:", "aem:cache:aem:GET:/content/dam/b:"]
        mock_redis.delete.return_value = 2

        removed = await cache.invalidate_pattern("aem:GET:/content/dam/*")

        assert removed == 2
        mock_redis.keys.assert_awaited_once_with("aem:cache:aem:GET:/content/dam/*")
        mock_redis.delete.assert_awaited_once_with(
            "aem:cache:aem:GET:/content/dam/a:", "aem:cache:aem:GET:/content/dam/b:"
        )

    @pytest.mark.asyncio
    async def test_invalidate_pattern_no_matches(self, cache, mock_redis):
        mock_redis.keys.return_value = []

        assert await cache.invalidate_pattern("nothing*") == 0
        mock_redis.delete.assert_not_called()

    @pytest.mark.asyncio
    async def test_has_and_delete(self, cache, mock_redis):
        mock_redis.exists.return_value = 1
        mock_redis.delete.return_value = 1

        assert await cache.has("key") is True
        assert await cache.delete("key") is True
        mock_redis.delete.assert_awaited_once_with("aem:cache:key")
