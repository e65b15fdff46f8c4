"""TTL cache for built contexts, keyed by room and build options.

Entry lifecycle: absent -> fresh -> stale (TTL elapsed) -> absent. A stale
entry is never refreshed; it is evicted on lookup and rebuilt. Explicit
invalidation takes every entry of a room straight from fresh to absent.

Every invalidation bumps a per-room generation. A build that started
before an invalidation of its room is returned to its caller but never
cached, so an invalidation that lands mid-build is not lost.

The cache only accelerates builds. Builder errors reach the caller and
leave nothing cached; failures inside the cache itself are logged and the
build falls through to the builder.
"""

from __future__ import annotations

from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Any

from loguru import logger

from .config import ContextOptions
from .models import OptimizedContext


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CachedContext:
    context: OptimizedContext
    room_id: str
    cache_key: str
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class ContextCache:
    """Lock-guarded TTL cache of :class:`OptimizedContext` per (room, options).

    Features:
    - TTL expiry, checked lazily on lookup and swept on insert
    - LRU bound on the number of entries
    - Room-wide invalidation regardless of options
    - Hit/miss/expiry/invalidation statistics
    """

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        max_entries: int = 256,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._ttl = timedelta(seconds=ttl_seconds)
        self._max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, CachedContext] = OrderedDict()
        self._lock = Lock()
        self._generations: dict[str, int] = {}
        self._epoch = 0
        self._stats = {
            "hits": 0,
            "misses": 0,
            "expirations": 0,
            "evictions": 0,
            "invalidations": 0,
            "stale_builds": 0,
        }

    @property
    def ttl_seconds(self) -> float:
        return self._ttl.total_seconds()

    @staticmethod
    def make_key(room_id: str, options: ContextOptions) -> str:
        return f"context:{room_id}:{options.cache_fragment()}"

    def get(self, room_id: str, options: ContextOptions) -> OptimizedContext | None:
        """Return the fresh entry for (room, options), or None."""
        key = self.make_key(room_id, options)
        now = self._clock()

        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._stats["misses"] += 1
                return None

            if entry.is_expired(now):
                del self._entries[key]
                self._stats["expirations"] += 1
                self._stats["misses"] += 1
                return None

            self._entries.move_to_end(key)
            self._stats["hits"] += 1
            return entry.context

    def generation(self, room_id: str) -> tuple[int, int]:
        """Current invalidation generation of ``room_id``."""
        with self._lock:
            return self._epoch, self._generations.get(room_id, 0)

    def set(
        self,
        room_id: str,
        options: ContextOptions,
        context: OptimizedContext,
        generation: tuple[int, int] | None = None,
    ) -> CachedContext | None:
        """Cache ``context`` for (room, options).

        When ``generation`` is given and the room was invalidated since it
        was read, nothing is stored and None is returned.
        """
        key = self.make_key(room_id, options)
        now = self._clock()
        entry = CachedContext(
            context=context,
            room_id=room_id,
            cache_key=key,
            created_at=now,
            expires_at=now + self._ttl,
        )

        with self._lock:
            current = (self._epoch, self._generations.get(room_id, 0))
            if generation is not None and generation != current:
                self._stats["stale_builds"] += 1
                logger.debug(
                    f"Discarding context built before invalidation of room {room_id}"
                )
                return None

            self._evict_expired(now)
            if key not in self._entries:
                while len(self._entries) >= self._max_entries:
                    self._entries.popitem(last=False)
                    self._stats["evictions"] += 1
            self._entries[key] = entry
            self._entries.move_to_end(key)
        return entry

    async def get_or_build(
        self,
        room_id: str,
        options: ContextOptions,
        builder: Callable[[], Awaitable[OptimizedContext]],
    ) -> OptimizedContext:
        """Serve a fresh entry or build, cache and return a new context.

        Concurrent callers that both miss will both build; the later write
        simply replaces the earlier one. A result whose room was invalidated
        while it was being built is returned but not cached.
        """
        try:
            cached = self.get(room_id, options)
        except Exception as e:
            logger.warning(f"Context cache read failed for room {room_id}: {e}")
            cached = None

        if cached is not None:
            logger.debug(f"Context served from cache for room {room_id}")
            return cached

        generation = self.generation(room_id)
        context = await builder()

        try:
            self.set(room_id, options, context, generation=generation)
        except Exception as e:
            logger.warning(f"Context cache write failed for room {room_id}: {e}")

        return context

    def invalidate_room(self, room_id: str) -> int:
        """Drop every entry for ``room_id``, whatever its options.

        Returns:
            Number of entries removed
        """
        with self._lock:
            self._generations[room_id] = self._generations.get(room_id, 0) + 1
            keys = [k for k, e in self._entries.items() if e.room_id == room_id]
            for key in keys:
                del self._entries[key]
            self._stats["invalidations"] += len(keys)

        if keys:
            logger.debug(f"Invalidated {len(keys)} cached contexts for room {room_id}")
        return len(keys)

    def _evict_expired(self, now: datetime) -> None:
        """Remove expired entries (caller holds the lock)."""
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for key in expired:
            del self._entries[key]
            self._stats["expirations"] += 1

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._epoch += 1
        logger.info(f"Context cache cleared ({count} entries)")
        return count

    def get_stats(self) -> dict[str, Any]:
        now = self._clock()
        with self._lock:
            active = sum(1 for e in self._entries.values() if not e.is_expired(now))
            total = self._stats["hits"] + self._stats["misses"]
            return {
                **self._stats,
                "hit_rate": self._stats["hits"] / total if total > 0 else 0.0,
                "total_entries": len(self._entries),
                "active_entries": active,
                "expired_entries": len(self._entries) - active,
                "max_entries": self._max_entries,
                "ttl_seconds": self.ttl_seconds,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
