"""
Cache backend selection from client configuration.
"""

from aem_shared.config import ClientConfig
from aem_shared.logging import get_logger
from .base import CacheBackend
from .memory_cache import MemoryCache
from .redis_cache import RedisCache

logger = get_logger("aem.cache.factory")


def create_cache(config: ClientConfig) -> CacheBackend:
    """Redis when a URL is configured, otherwise the in-process cache."""
    if config.cache_redis_url:
        logger.info("Using Redis cache backend")
        return RedisCache(config.cache_redis_url, default_ttl=config.cache_ttl)

    return MemoryCache(
        max_size=config.cache_max_size,
        default_ttl=config.cache_ttl,
        strategy=config.cache_strategy,
        sweep_interval=config.cache_sweep_interval,
    )
