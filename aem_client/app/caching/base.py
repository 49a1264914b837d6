"""
Cache backend contract shared by the in-process and Redis caches.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass
class CacheEntry:
    """One cached value with its bookkeeping. Times are epoch seconds."""

    value: Any
    created_at: float
    ttl: float
    access_count: int = 1
    last_accessed: float = 0.0

    @property
    def expires_at(self) -> float:
        return self.created_at + self.ttl

    def is_expired(self, now: float) -> bool:
        return now - self.created_at >= self.ttl


class CacheBackend(ABC):
    """Async cache contract used by the client."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None on a miss."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        """Store ``value`` for ``ttl`` seconds."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove one key. Returns whether it existed."""

    @abstractmethod
    async def has(self, key: str) -> bool:
        """Whether a live entry exists, without counting a hit or miss."""

    @abstractmethod
    async def clear(self) -> None:
        """Remove every entry."""

    @abstractmethod
    async def invalidate_pattern(self, pattern: str) -> int:
        """Remove every key matching a shell-style glob. Returns the count."""

    @abstractmethod
    async def get_stats(self) -> Dict[str, Any]:
        """Counters and sizing information."""

    async def start(self) -> None:
        """Start background work, if the backend has any."""

    async def close(self) -> None:
        """Release resources held by the backend."""
