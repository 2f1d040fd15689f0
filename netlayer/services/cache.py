"""
CacheManager - response cache with per-entry TTL and revalidation hints.

Lookup tiers for an entry of age ``a`` and TTL ``T``:
- a < 0.8T: fresh, served as is
- 0.8T <= a < T: served, caller should revalidate in the background
- a >= T: expired, dropped on access and never served

Usage:
    cache = CacheManager(max_size=100)

    key = cache.generate_key("/v1/banners", {"city": "sh"})
    hit = cache.get(key)
    if hit is not None:
        if hit.needs_refresh:
            schedule_revalidation(key)
        return hit.data

    cache.set(key, await load_banners(), ttl=300)
"""

import hashlib
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar

from loguru import logger

T = TypeVar("T")

REFRESH_RATIO = 0.8

# Keys longer than this are replaced by a digest
MAX_KEY_LENGTH = 200


@dataclass
class CacheEntry(Generic[T]):
    """Stored value plus the moment it was written."""

    data: T
    stored_at: float
    ttl: float

    def age(self, now: float) -> float:
        return now - self.stored_at

    def is_expired(self, now: float) -> bool:
        return self.age(now) >= self.ttl

    def needs_refresh(self, now: float) -> bool:
        return self.age(now) >= self.ttl * REFRESH_RATIO


@dataclass
class CacheResult(Generic[T]):
    """A served entry."""

    data: T
    age: float
    needs_refresh: bool


class CacheManager:
    """In-process cache for decoded API responses."""

    def __init__(
        self,
        prefix: str = "api_",
        max_size: int = 200,
        default_ttl: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        debug: bool = False,
    ):
        self._entries: dict[str, CacheEntry[Any]] = {}
        self._prefix = prefix
        self._max_size = max_size
        self._default_ttl = default_ttl
        self._clock = clock
        self._debug = debug
        self._stats = CacheStats()

    def generate_key(self, url: str, params: Any = None) -> str:
        """Key for a URL and its query params; equal params give equal keys."""
        raw = f"{url}_{json.dumps(params or {}, sort_keys=True, default=str)}"
        if len(raw) > MAX_KEY_LENGTH:
            raw = hashlib.md5(raw.encode()).hexdigest()[:16]
        return self._prefix + raw

    def get(self, key: str) -> CacheResult[Any] | None:
        """Serve an entry younger than its TTL, or None."""
        entry = self._entries.get(key)
        now = self._clock()

        if entry is not None and entry.is_expired(now):
            self._entries.pop(key)
            self._log(f"expired {key[:60]}")
            entry = None

        if entry is None:
            self._stats.misses += 1
            return None

        result = CacheResult(
            data=entry.data,
            age=entry.age(now),
            needs_refresh=entry.needs_refresh(now),
        )
        if result.needs_refresh:
            self._stats.refresh_hits += 1
        else:
            self._stats.hits += 1
        self._log(f"{'aging' if result.needs_refresh else 'fresh'} hit {key[:60]}")
        return result

    def set(self, key: str, data: Any, ttl: float | None = None) -> None:
        """Store ``data`` under ``key`` for ``ttl`` seconds (default TTL when None)."""
        if key not in self._entries and len(self._entries) >= self._max_size:
            self._evict_oldest()

        ttl = self._default_ttl if ttl is None else ttl
        self._entries[key] = CacheEntry(data=data, stored_at=self._clock(), ttl=ttl)
        self._log(f"stored {key[:60]} for {ttl}s")

    def age(self, key: str) -> float | None:
        entry = self._entries.get(key)
        return None if entry is None else entry.age(self._clock())

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def invalidate(self, pattern: str) -> int:
        """Drop every key containing ``pattern``. Returns the number dropped."""
        matched = [key for key in self._entries if pattern in key]
        for key in matched:
            del self._entries[key]
        if matched:
            self._log(f"invalidated {len(matched)} keys matching '{pattern}'")
        return len(matched)

    def clear(self) -> None:
        self._log(f"cleared {len(self._entries)} entries")
        self._entries.clear()

    def cleanup_expired(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def _evict_oldest(self) -> None:
        if not self._entries:
            return
        victim = min(self._entries.items(), key=lambda item: item[1].stored_at)[0]
        del self._entries[victim]
        self._stats.evictions += 1
        self._log(f"evicted {victim[:60]}")

    def get_stats(self) -> "CacheStats":
        self._stats.size = len(self._entries)
        self._stats.max_size = self._max_size
        return self._stats

    def _log(self, message: str) -> None:
        if self._debug:
            logger.debug(f"[CacheManager] {message}")


@dataclass
class CacheStats:
    """Cache counters."""

    hits: int = 0
    refresh_hits: int = 0  # served, but past the refresh ratio
    misses: int = 0
    evictions: int = 0
    size: int = 0
    max_size: int = 0

    @property
    def hit_rate(self) -> float:
        served = self.hits + self.refresh_hits
        lookups = served + self.misses
        return served / lookups if lookups else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "refresh_hits": self.refresh_hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "size": self.size,
            "max_size": self.max_size,
            "hit_rate": f"{self.hit_rate:.2%}",
        }
