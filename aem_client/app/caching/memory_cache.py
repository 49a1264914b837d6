"""
In-process cache with bounded size, pluggable eviction and a TTL sweep.
"""

import asyncio
import copy
import fnmatch
import time
from typing import Any, Callable, Dict, List, Optional

from aem_shared.config import CacheStrategy
from aem_shared.logging import get_logger
from .base import CacheBackend, CacheEntry


class MemoryCache(CacheBackend):
    """Capacity-bounded mapping of key to CacheEntry."""

    def __init__(
        self,
        max_size: int = 1000,
        default_ttl: float = 300.0,
        strategy: CacheStrategy = CacheStrategy.LRU,
        sweep_interval: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self.default_ttl = default_ttl
        self.strategy = CacheStrategy(strategy)
        self.sweep_interval = sweep_interval
        self.logger = get_logger("aem.cache.memory")
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._sweep_task: Optional[asyncio.Task] = None

        self._hits = 0
        self._misses = 0
        self._sets = 0
        self._deletes = 0
        self._evictions = 0

    async def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None

        now = self._clock()
        if entry.is_expired(now):
            del self._entries[key]
            self._misses += 1
            return None

        entry.access_count += 1
        entry.last_accessed = now
        self._hits += 1
        return copy.deepcopy(entry.value)

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        now = self._clock()
        entry_ttl = ttl if ttl is not None else self.default_ttl

        if key not in self._entries and len(self._entries) >= self.max_size:
            self._evict_entries()

        self._entries[key] = CacheEntry(
            value=copy.deepcopy(value),
            created_at=now,
            ttl=entry_ttl,
            access_count=1,
            last_accessed=now,
        )
        self._sets += 1
        self.logger.debug("Cache set", key=key, ttl=entry_ttl, size=len(self._entries))
        return True

    async def delete(self, key: str) -> bool:
        if self._entries.pop(key, None) is None:
            return False
        self._deletes += 1
        return True

    async def has(self, key: str) -> bool:
        entry = self._entries.get(key)
        if entry is None:
            return False
        if entry.is_expired(self._clock()):
            del self._entries[key]
            return False
        return True

    async def clear(self) -> None:
        size = len(self._entries)
        self._entries.clear()
        self._deletes += size
        self.logger.info("Cache cleared", removed=size)

    async def invalidate_pattern(self, pattern: str) -> int:
        matching = [key for key in self._entries if fnmatch.fnmatchcase(key, pattern)]
        for key in matching:
            del self._entries[key]

        self._deletes += len(matching)
        self.logger.info(
            "Cache pattern invalidation",
            pattern=pattern,
            keys_removed=len(matching),
            remaining_size=len(self._entries),
        )
        return len(matching)

    async def get_stats(self) -> Dict[str, Any]:
        total = self._hits + self._misses
        return {
            "backend": "memory",
            "strategy": self.strategy.value,
            "hits": self._hits,
            "misses": self._misses,
            "sets": self._sets,
            "deletes": self._deletes,
            "evictions": self._evictions,
            "size": len(self._entries),
            "max_size": self.max_size,
            "hit_rate": self._hits / total if total else 0.0,
        }

    def _evict_entries(self):
        count = max(1, self.max_size // 10)

        if self.strategy == CacheStrategy.LFU:
            sort_key = lambda item: item[1].access_count  # noqa: E731
        elif self.strategy == CacheStrategy.TTL:
            sort_key = lambda item: item[1].expires_at  # noqa: E731
        else:
            sort_key = lambda item: item[1].last_accessed  # noqa: E731

        victims: List[str] = [key for key, _ in sorted(self._entries.items(), key=sort_key)[:count]]
        for key in victims:
            del self._entries[key]

        self._evictions += len(victims)
        self.logger.debug("Cache eviction", strategy=self.strategy.value, removed=len(victims))

    def cleanup_expired(self) -> int:
        """Remove every expired entry. Returns the number removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]

        if expired:
            self._deletes += len(expired)
            self.logger.debug("Expired entries cleanup", removed=len(expired))
        return len(expired)

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.cleanup_expired()

    async def start(self) -> None:
        """Start the periodic expiry sweep on the running loop."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())
            self.logger.info("Cache sweep started", interval=self.sweep_interval)

    async def close(self) -> None:
        if self._sweep_task is None:
            return
        self._sweep_task.cancel()
        try:
            await self._sweep_task
        except asyncio.CancelledError:
            pass
        self._sweep_task = None
        self.logger.info("Cache sweep stopped")
