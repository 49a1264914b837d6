"""
Client caching package.

Provides the read cache used by the client to avoid repeated calls to
AEM. Entries are short-lived accelerators, never a system of record;
writes invalidate explicitly by key glob.
"""

from .base import CacheBackend, CacheEntry
from .cache_keys import generate_cache_key
from .factory import create_cache
from .memory_cache import MemoryCache
from .redis_cache import RedisCache

__all__ = [
    "CacheBackend",
    "CacheEntry",
    "MemoryCache",
    "RedisCache",
    "create_cache",
    "generate_cache_key",
]
