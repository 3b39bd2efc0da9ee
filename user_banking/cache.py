"""
User Lookup Cache Module

Optional read-through cache for user records keyed by id. It only saves
store reads for user lookups; balances are never read from it.
"""

import time
from dataclasses import dataclass, field, replace
from threading import Lock
from typing import Dict, Optional

from .models import User


@dataclass
class CacheEntry:
    """Single cache entry with TTL"""
    user: User
    created_at: float = field(default_factory=time.monotonic)

    def is_expired(self, ttl_seconds: float) -> bool:
        return time.monotonic() - self.created_at > ttl_seconds


class UserCache:
    """Thread-safe in-memory cache evicting the oldest entry when full"""

    def __init__(self, max_size: int = 1000, ttl_seconds: float = 300.0):
        self._cache: Dict[int, CacheEntry] = {}
        self._max_size = max_size
        self._ttl_seconds = ttl_seconds
        self._lock = Lock()
        self._hits = 0
        self._misses = 0

    def get(self, user_id: int) -> Optional[User]:
        with self._lock:
            entry = self._cache.get(user_id)
            if entry is None:
                self._misses += 1
                return None
            if entry.is_expired(self._ttl_seconds):
                del self._cache[user_id]
                self._misses += 1
                return None
            self._hits += 1
            return replace(entry.user)

    def set(self, user: User) -> None:
        with self._lock:
            if len(self._cache) >= self._max_size and user.id not in self._cache:
                oldest_key = next(iter(self._cache))
                del self._cache[oldest_key]
            self._cache[user.id] = CacheEntry(user=replace(user))

    def delete(self, user_id: int) -> None:
        with self._lock:
            self._cache.pop(user_id, None)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def stats(self) -> dict:
        """Return cache statistics"""
        with self._lock:
            total = self._hits + self._misses
            return {
                "size": len(self._cache),
                "max_size": self._max_size,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": self._hits / total if total > 0 else 0.0,
            }
