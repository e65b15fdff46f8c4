"""Tests for the TTL ContextCache."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from narrator_memory.cache import ContextCache
from narrator_memory.config import ContextOptions
from narrator_memory.models import EntityType, OptimizedContext


class FakeClock:
    def __init__(self):
        self.now = datetime(2025, 3, 1, 20, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return ContextCache(ttl_seconds=300, clock=clock)


def ctx(room_id="room_1", session_id="session_1"):
    return OptimizedContext(session_id=session_id, room_id=room_id)


class TestKeys:
    def test_key_contains_room_and_options(self):
        key = ContextCache.make_key("room_1", ContextOptions(max_tokens=500))
        assert key.startswith("context:room_1:")
        assert '"max_tokens":500' in key

    def test_entity_type_order_does_not_matter(self):
        a = ContextOptions(entity_types=[EntityType.NPC, EntityType.CHARACTER])
        b = ContextOptions(entity_types=[EntityType.CHARACTER, EntityType.NPC])
        assert ContextCache.make_key("r", a) == ContextCache.make_key("r", b)

    def test_different_options_different_keys(self):
        a = ContextOptions(max_tokens=500)
        b = ContextOptions(max_tokens=501)
        assert ContextCache.make_key("r", a) != ContextCache.make_key("r", b)


class TestLookup:
    def test_miss_then_hit(self, cache):
        options = ContextOptions()
        assert cache.get("room_1", options) is None

        context = ctx()
        cache.set("room_1", options, context)
        assert cache.get("room_1", options) is context

        stats = cache.get_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate"] == pytest.approx(0.5)

    def test_entry_expires_at_ttl(self, cache, clock):
        options = ContextOptions()
        cache.set("room_1", options, ctx())

        clock.advance(299)
        assert cache.get("room_1", options) is not None

        clock.advance(1)
        assert cache.get("room_1", options) is None
        assert len(cache) == 0
        assert cache.get_stats()["expirations"] == 1

    def test_expired_entries_swept_on_insert(self, cache, clock):
        cache.set("room_1", ContextOptions(), ctx())
        clock.advance(301)
        cache.set("room_2", ContextOptions(), ctx("room_2"))
        assert len(cache) == 1

    def test_stats_report_expired_entries(self, cache, clock):
        cache.set("room_1", ContextOptions(), ctx())
        clock.advance(400)
        stats = cache.get_stats()
        assert stats["total_entries"] == 1
        assert stats["active_entries"] == 0
        assert stats["expired_entries"] == 1

    def test_lru_bound(self, clock):
        cache = ContextCache(ttl_seconds=300, max_entries=2, clock=clock)
        cache.set("room_1", ContextOptions(), ctx("room_1"))
        cache.set("room_2", ContextOptions(), ctx("room_2"))
        cache.get("room_1", ContextOptions())
        cache.set("room_3", ContextOptions(), ctx("room_3"))

        assert cache.get("room_2", ContextOptions()) is None
        assert cache.get("room_1", ContextOptions()) is not None
        assert cache.get_stats()["evictions"] == 1


class TestInvalidation:
    def test_invalidate_room_ignores_options(self, cache):
        cache.set("room_1", ContextOptions(max_tokens=100), ctx())
        cache.set("room_1", ContextOptions(max_tokens=200), ctx())
        cache.set("room_2", ContextOptions(max_tokens=100), ctx("room_2"))

        assert cache.invalidate_room("room_1") == 2
        assert cache.get("room_1", ContextOptions(max_tokens=100)) is None
        assert cache.get("room_2", ContextOptions(max_tokens=100)) is not None

    def test_invalidate_room_matches_exact_room(self, cache):
        cache.set("room_1", ContextOptions(), ctx("room_1"))
        cache.set("room_10", ContextOptions(), ctx("room_10"))

        assert cache.invalidate_room("room_1") == 1
        assert cache.get("room_10", ContextOptions()) is not None

    def test_clear(self, cache):
        cache.set("room_1", ContextOptions(), ctx())
        assert cache.clear() == 1
        assert len(cache) == 0


class TestGetOrBuild:
    @pytest.mark.asyncio
    async def test_builds_once(self, cache):
        context = ctx()
        builder = AsyncMock(return_value=context)

        first = await cache.get_or_build("room_1", ContextOptions(), builder)
        second = await cache.get_or_build("room_1", ContextOptions(), builder)

        assert first is context
        assert second is context
        builder.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_rebuilds_after_invalidation(self, cache):
        builder = AsyncMock(side_effect=[ctx(), ctx()])

        first = await cache.get_or_build("room_1", ContextOptions(), builder)
        cache.invalidate_room("room_1")
        second = await cache.get_or_build("room_1", ContextOptions(), builder)

        assert first is not second
        assert builder.await_count == 2

    @pytest.mark.asyncio
    async def test_builder_error_propagates_and_is_not_cached(self, cache):
        builder = AsyncMock(side_effect=RuntimeError("store down"))

        with pytest.raises(RuntimeError, match="store down"):
            await cache.get_or_build("room_1", ContextOptions(), builder)
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_cache_read_failure_is_bypassed(self, cache, monkeypatch):
        def broken_get(*args, **kwargs):
            raise RuntimeError("cache unavailable")

        monkeypatch.setattr(cache, "get", broken_get)
        context = ctx()
        builder = AsyncMock(return_value=context)

        result = await cache.get_or_build("room_1", ContextOptions(), builder)
        assert result is context

    @pytest.mark.asyncio
    async def test_cache_write_failure_is_bypassed(self, cache, monkeypatch):
        def broken_set(*args, **kwargs):
            raise RuntimeError("cache unavailable")

        monkeypatch.setattr(cache, "set", broken_set)
        context = ctx()

        result = await cache.get_or_build(
            "room_1", ContextOptions(), AsyncMock(return_value=context)
        )
        assert result is context
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_invalidation_during_build_is_not_lost(self, cache):
        started = asyncio.Event()
        release = asyncio.Event()
        stale = ctx()

        async def slow_builder():
            started.set()
            await release.wait()
            return stale

        build = asyncio.create_task(
            cache.get_or_build("room_1", ContextOptions(), slow_builder)
        )
        await started.wait()
        cache.invalidate_room("room_1")
        release.set()

        assert await build is stale
        assert cache.get("room_1", ContextOptions()) is None
        assert cache.get_stats()["stale_builds"] == 1

        fresh = ctx()
        result = await cache.get_or_build(
            "room_1", ContextOptions(), AsyncMock(return_value=fresh)
        )
        assert result is fresh

    @pytest.mark.asyncio
    async def test_clear_during_build_is_not_lost(self, cache):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_builder():
            started.set()
            await release.wait()
            return ctx()

        build = asyncio.create_task(
            cache.get_or_build("room_1", ContextOptions(), slow_builder)
        )
        await started.wait()
        cache.clear()
        release.set()
        await build

        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_other_room_invalidation_keeps_build(self, cache):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_builder():
            started.set()
            await release.wait()
            return ctx()

        build = asyncio.create_task(
            cache.get_or_build("room_1", ContextOptions(), slow_builder)
        )
        await started.wait()
        cache.invalidate_room("room_2")
        release.set()
        await build

        assert cache.get("room_1", ContextOptions()) is not None


def test_set_with_stale_generation_is_skipped(cache):
    generation = cache.generation("room_1")
    cache.invalidate_room("room_1")

    assert cache.set("room_1", ContextOptions(), ctx(), generation=generation) is None
    assert len(cache) == 0
    assert cache.set("room_1", ContextOptions(), ctx()) is not None
