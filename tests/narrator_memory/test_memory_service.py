"""Tests for the MemoryService facade.

Tests cover:
- Caller errors (no open session, malformed options) and the build timeout
- Token bound, ordering, cache idempotence and invalidation on writes
- Background compaction driven by record_message
- Entity, fact and extraction operations
"""

from __future__ import annotations

import asyncio
import sqlite3
from unittest.mock import AsyncMock, MagicMock

import pytest

from narrator_memory.config import ContextOptions, MemoryConfig
from narrator_memory.exceptions import (
    ContextBuildTimeoutError,
    InvalidContextOptionsError,
    NoOpenSessionError,
    RecordNotFoundError,
)
from narrator_memory.memory_service import MemoryService
from narrator_memory.models import EntityType, MessageRole, SummaryType


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def session(service):
    await service.ensure_room("room_1", "The Sunless Citadel")
    return await service.start_session("room_1")


@pytest.fixture
async def extracting_service(tmp_path):
    svc = MemoryService(
        config=MemoryConfig(storage={"sqlite_db_path": str(tmp_path / "x.db")})
    )
    await svc.initialize()
    yield svc
    await svc.close()


async def record_turns(service, session_id, count):
    for i in range(count):
        await service.record_message(
            session_id,
            MessageRole.USER if i % 2 == 0 else MessageRole.ASSISTANT,
            f"turn {i}",
            player_name="Alara" if i % 2 == 0 else None,
        )


# ---------------------------------------------------------------------------
# Caller errors
# ---------------------------------------------------------------------------


class TestCallerErrors:
    @pytest.mark.asyncio
    async def test_no_open_session(self, service):
        await service.ensure_room("room_1")
        with pytest.raises(NoOpenSessionError) as exc_info:
            await service.build_context("room_1")
        assert exc_info.value.room_id == "room_1"

    @pytest.mark.asyncio
    async def test_ended_session_is_not_open(self, service, session):
        await service.end_session(session.id)
        with pytest.raises(NoOpenSessionError):
            await service.build_context("room_1")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "options", [{"max_tokens": -5}, {"priority_threshold": 2.0}, {"bogus": 1}]
    )
    async def test_malformed_options_rejected_first(self, service, options):
        # No room, no session: options are validated before any lookup
        with pytest.raises(InvalidContextOptionsError):
            await service.build_context("room_missing", options)

    @pytest.mark.asyncio
    async def test_unknown_session(self, service):
        with pytest.raises(RecordNotFoundError):
            await service.record_message("session_missing", MessageRole.USER, "hi")

    @pytest.mark.asyncio
    async def test_start_session_needs_room(self, service):
        with pytest.raises(RecordNotFoundError):
            await service.start_session("room_missing")

    @pytest.mark.asyncio
    async def test_timeout(self, service, session, monkeypatch):
        async def slow(*args, **kwargs):
            await asyncio.sleep(5)

        monkeypatch.setattr(service, "_compute_context", slow)
        service.config.context.build_timeout_seconds = 0.05

        with pytest.raises(ContextBuildTimeoutError):
            await service.build_context("room_1")

    @pytest.mark.asyncio
    async def test_timeout_covers_session_lookup(self, service, session):
        async def slow(*args, **kwargs):
            await asyncio.sleep(5)

        service.store.get_open_session = slow
        service.config.context.build_timeout_seconds = 0.05

        with pytest.raises(ContextBuildTimeoutError):
            await service.build_context("room_1")

    @pytest.mark.asyncio
    async def test_store_errors_propagate(self, service, session):
        await service.record_user_message(session.id, "hello")
        service.store.get_messages = AsyncMock(
            side_effect=sqlite3.OperationalError("disk I/O error")
        )
        with pytest.raises(sqlite3.OperationalError):
            await service.build_context("room_1")


# ---------------------------------------------------------------------------
# Context building
# ---------------------------------------------------------------------------


class TestBuildContext:
    @pytest.mark.asyncio
    async def test_five_messages_all_selected(self, service, session):
        await record_turns(service, session.id, 5)

        context = await service.build_context(
            "room_1", {"max_tokens": 100_000, "priority_threshold": 0.0}
        )

        assert len(context.messages) == 5
        assert context.compression_ratio == pytest.approx(1.0)
        assert context.stats.messages_excluded == 0
        assert context.session_id == session.id

    @pytest.mark.asyncio
    async def test_empty_session(self, service, session):
        context = await service.build_context("room_1")
        assert context.messages == []
        assert context.total_tokens == 0
        assert context.compression_ratio == 0.0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("max_tokens", [1, 10, 57, 200])
    async def test_total_tokens_within_budget(self, service, session, max_tokens):
        await record_turns(service, session.id, 30)
        await service.create_entity("room_1", EntityType.CHARACTER, "Alara")

        context = await service.build_context(
            "room_1", ContextOptions(max_tokens=max_tokens, priority_threshold=0.0)
        )
        assert context.total_tokens <= max_tokens

    @pytest.mark.asyncio
    async def test_priority_order(self, service, session):
        await record_turns(service, session.id, 25)
        context = await service.build_context("room_1", {"priority_threshold": 0.0})

        scores = [m.priority_score for m in context.messages]
        assert scores == sorted(scores, reverse=True)
        chronological = context.chronological_messages()
        assert [m.content for m in chronological][-1] == "turn 24"

    @pytest.mark.asyncio
    async def test_entities_and_facts_included(self, service, session):
        alara = await service.create_entity("room_1", EntityType.CHARACTER, "Alara")
        await service.add_fact(alara.id, "race", "elf")
        await record_turns(service, session.id, 4)

        context = await service.build_context("room_1")

        assert [e.name for e in context.entities] == ["Alara"]
        assert [f.value for f in context.relevant_facts] == ["elf"]
        assert context.stats.facts_included == 1

    @pytest.mark.asyncio
    async def test_entity_type_filter(self, service, session):
        await service.create_entity("room_1", EntityType.CHARACTER, "Alara")
        await service.create_entity("room_1", EntityType.NPC, "Boris")
        await service.record_user_message(session.id, "Alara greets Boris")

        context = await service.build_context(
            "room_1", {"entity_types": ["npc"], "include_facts": False}
        )
        assert [e.name for e in context.entities] == ["Boris"]

    @pytest.mark.asyncio
    async def test_exclude_entities(self, service, session):
        await service.create_entity("room_1", EntityType.NPC, "Boris")
        context = await service.build_context("room_1", {"include_entities": False})
        assert context.entities == []


# ---------------------------------------------------------------------------
# Cache behaviour
# ---------------------------------------------------------------------------


class TestCaching:
    @pytest.mark.asyncio
    async def test_idempotent_without_writes(self, service, session):
        await record_turns(service, session.id, 3)
        await service.wait_for_background()

        first = await service.build_context("room_1")
        second = await service.build_context("room_1")

        assert second is first
        assert service.get_cache_stats()["hits"] == 1

    @pytest.mark.asyncio
    async def test_record_message_invalidates(self, service, session):
        await service.record_user_message(session.id, "first")
        first = await service.build_context("room_1")

        await service.record_user_message(session.id, "second")
        second = await service.build_context("room_1")

        assert second is not first
        assert len(second.messages) == 2

    @pytest.mark.asyncio
    async def test_concurrent_writes_both_visible(self, service, session):
        await service.build_context("room_1")

        await asyncio.gather(
            service.record_user_message(session.id, "left", "Alara"),
            service.record_user_message(session.id, "right", "Boris"),
        )
        context = await service.build_context("room_1")

        assert {m.content for m in context.messages} == {"left", "right"}

    @pytest.mark.asyncio
    async def test_write_during_build_is_not_lost(self, service, session):
        await service.record_user_message(session.id, "first")
        await service.wait_for_background()

        read_done = asyncio.Event()
        release = asyncio.Event()
        get_messages = service.store.get_messages

        async def paused_get_messages(*args, **kwargs):
            messages = await get_messages(*args, **kwargs)
            read_done.set()
            await release.wait()
            return messages

        service.store.get_messages = paused_get_messages
        build = asyncio.create_task(service.build_context("room_1"))
        await read_done.wait()

        service.store.get_messages = get_messages
        await service.record_user_message(session.id, "second")
        release.set()
        in_flight = await build
        await service.wait_for_background()

        context = await service.build_context("room_1")

        assert [m.content for m in in_flight.messages] == ["first"]
        assert {m.content for m in context.messages} == {"first", "second"}

    @pytest.mark.asyncio
    async def test_entity_writes_invalidate(self, service, session):
        await service.record_user_message(session.id, "Boris waves")
        first = await service.build_context("room_1")

        await service.create_entity("room_1", EntityType.NPC, "Boris")
        second = await service.build_context("room_1")

        assert first.entities == []
        assert [e.name for e in second.entities] == ["Boris"]

    @pytest.mark.asyncio
    async def test_explicit_invalidate(self, service, session):
        await service.build_context("room_1")
        await service.build_context("room_1", {"max_tokens": 500})
        assert service.invalidate("room_1") == 2

    @pytest.mark.asyncio
    async def test_clear_cache(self, service, session):
        await service.build_context("room_1")
        assert service.clear_cache() == 1


# ---------------------------------------------------------------------------
# Background compaction
# ---------------------------------------------------------------------------


class TestCompaction:
    @pytest.fixture
    def config(self, tmp_path):
        return MemoryConfig(
            storage={"sqlite_db_path": str(tmp_path / "narrator.db")},
            summarization={
                "summary_trigger_threshold": 100,
                "min_messages_for_summary": 10,
            },
            extraction={"enabled": False},
        )

    @pytest.mark.asyncio
    async def test_one_hundred_fifty_messages(self, service, session):
        for i in range(150):
            await service.record_message(session.id, MessageRole.USER, f"turn {i}")
            await service.wait_for_background()

        messages = await service.store.get_messages(session.id)
        summaries = await service.get_summaries(session.id, SummaryType.MESSAGES)
        covered = {mid for s in summaries for mid in s.message_ids}

        assert summaries
        assert len(summaries[0].message_ids) == 80
        assert covered == {m.id for m in messages[:130]}
        assert all(m.compressed for m in messages[:130])
        assert not any(m.compressed for m in messages[130:])

    @pytest.mark.asyncio
    async def test_compressed_only_with_summary(self, service, session):
        for i in range(120):
            await service.record_message(session.id, MessageRole.USER, f"turn {i}")
        await service.wait_for_background()

        summaries = await service.get_summaries(session.id)
        covered = {mid for s in summaries for mid in s.message_ids}
        for m in await service.store.get_messages(session.id):
            if m.compressed:
                assert m.id in covered

    @pytest.mark.asyncio
    async def test_compaction_failure_does_not_reach_caller(self, service, session):
        service.store.record_summary = AsyncMock(side_effect=RuntimeError("disk full"))
        for i in range(100):
            await service.record_message(session.id, MessageRole.USER, f"turn {i}")
        await service.wait_for_background()

        assert service.get_summary_processing_status()["active_sessions"] == []
        stats = await service.get_compression_stats(session.id)
        assert stats.messages_summarized == 0

    @pytest.mark.asyncio
    async def test_compaction_invalidates_cache(self, service, session):
        await record_turns(service, session.id, 30)
        await service.wait_for_background()
        await service.build_context("room_1")
        assert len(service.cache) == 1

        summary = await service.scheduler.compact(session.id)

        assert len(summary.message_ids) == 10
        assert len(service.cache) == 0


# ---------------------------------------------------------------------------
# Entities, facts and extraction
# ---------------------------------------------------------------------------


class TestEntities:
    @pytest.mark.asyncio
    async def test_update_entity(self, service, session):
        entity = await service.create_entity("room_1", EntityType.NPC, "Boris")
        updated = await service.update_entity(entity.id, data={"role": "innkeeper"})
        assert updated.data == {"role": "innkeeper"}

    @pytest.mark.asyncio
    async def test_update_missing_entity(self, service):
        with pytest.raises(RecordNotFoundError):
            await service.update_entity("entity_missing", name="Nobody")

    @pytest.mark.asyncio
    async def test_add_fact_missing_entity(self, service):
        with pytest.raises(RecordNotFoundError):
            await service.add_fact("entity_missing", "race", "elf")

    @pytest.mark.asyncio
    async def test_find_by_name(self, service, session):
        await service.create_entity("room_1", EntityType.LOCATION, "Golden Dragon")
        await service.create_entity("room_1", EntityType.NPC, "Boris")

        found = await service.find_entities_by_name("room_1", "dragon")
        assert [e.name for e in found] == ["Golden Dragon"]
        assert await service.find_entities_by_name("room_1", "  ") == []

    @pytest.mark.asyncio
    async def test_related_entities(self, service, session):
        alara = await service.create_entity("room_1", EntityType.CHARACTER, "Alara")
        boris = await service.create_entity("room_1", EntityType.NPC, "Boris")
        inn = await service.create_entity("room_1", EntityType.LOCATION, "Golden Dragon")
        await service.create_entity("room_1", EntityType.ITEM, "Rope")
        await service.add_fact(alara.id, "ally", "trusts boris")
        await service.add_fact(alara.id, "home", "Lives above the Golden Dragon")
        await service.add_fact(alara.id, "friend", "Boris again")

        related = await service.get_related_entities(alara.id)

        assert [e.id for e in related] == [boris.id, inn.id]
        assert await service.get_related_entities(boris.id) == []

    @pytest.mark.asyncio
    async def test_related_entities_missing(self, service):
        with pytest.raises(RecordNotFoundError):
            await service.get_related_entities("entity_missing")

    @pytest.mark.asyncio
    async def test_entity_stats(self, service, session):
        names = ["Alara", "Boris", "Mira", "Golden Dragon", "Rope", "Lantern"]
        types = [
            EntityType.CHARACTER,
            EntityType.NPC,
            EntityType.NPC,
            EntityType.LOCATION,
            EntityType.ITEM,
            EntityType.ITEM,
        ]
        created = [
            await service.create_entity("room_1", t, n) for t, n in zip(types, names)
        ]
        await service.add_fact(created[0].id, "race", "elf")

        stats = await service.get_entity_stats("room_1")

        assert stats.total == 6
        assert stats.by_type[EntityType.NPC] == 2
        assert stats.by_type[EntityType.QUEST] == 0
        assert stats.with_facts == 1
        assert [e.name for e in stats.recent_entities] == names[1:]

    @pytest.mark.asyncio
    async def test_entity_stats_empty_room(self, service):
        stats = await service.get_entity_stats("room_empty")
        assert stats.total == 0
        assert set(stats.by_type) == set(EntityType)
        assert stats.recent_entities == []

    @pytest.mark.asyncio
    async def test_extraction_on_record(self, extracting_service):
        svc = extracting_service
        await svc.ensure_room("room_1")
        session = await svc.start_session("room_1")

        message = await svc.record_user_message(session.id, "I'm Alara the elf.", "Alara")

        [alara] = await svc.find_entities_by_name("room_1", "Alara")
        [fact] = await svc.get_entity_facts(alara.id)
        assert alara.type == EntityType.CHARACTER
        assert (fact.key, fact.value) == ("race", "elf")
        assert fact.confidence == pytest.approx(0.7)
        assert fact.source_message_id == message.id

    @pytest.mark.asyncio
    async def test_extraction_reuses_known_entities(self, extracting_service):
        svc = extracting_service
        await svc.ensure_room("room_1")
        session = await svc.start_session("room_1")

        await svc.record_user_message(session.id, "I talk to the innkeeper Boris.")
        await svc.record_user_message(session.id, "Again the innkeeper Boris frowns.")

        npcs = await svc.get_entities("room_1", EntityType.NPC)
        assert len(npcs) == 1
        assert len(await svc.get_entity_facts(npcs[0].id)) == 2

    @pytest.mark.asyncio
    async def test_extraction_failure_is_bypassed(self, config):
        extractor = MagicMock()
        extractor.extract.side_effect = ValueError("bad pattern")
        config.extraction.enabled = True
        svc = MemoryService(config=config, extractor=extractor)
        await svc.ensure_room("room_1")
        session = await svc.start_session("room_1")

        message = await svc.record_user_message(session.id, "hello")

        assert message.content == "hello"
        await svc.close()

    @pytest.mark.asyncio
    async def test_system_messages_not_extracted(self, config):
        extractor = MagicMock()
        extractor.extract.return_value = []
        config.extraction.enabled = True
        svc = MemoryService(config=config, extractor=extractor)
        await svc.ensure_room("room_1")
        session = await svc.start_session("room_1")

        await svc.record_message(session.id, MessageRole.SYSTEM, "I'm Alara the elf")

        extractor.extract.assert_not_called()
        await svc.close()


# ---------------------------------------------------------------------------
# Sessions and convenience operations
# ---------------------------------------------------------------------------


class TestSessions:
    @pytest.mark.asyncio
    async def test_start_session_reuses_open_one(self, service, session):
        assert (await service.start_session("room_1")).id == session.id

    @pytest.mark.asyncio
    async def test_end_session_invalidates_room(self, service, session):
        await service.build_context("room_1")
        ended = await service.end_session(session.id, summary="They slept.")

        assert ended.ended_at is not None
        assert len(service.cache) == 0
        assert await service.get_open_session("room_1") is None

    @pytest.mark.asyncio
    async def test_process_user_message(self, service):
        context = await service.process_user_message(
            "room_new", "We head into the dungeon", player_name="Alara"
        )
        assert context.room_id == "room_new"
        assert [m.content for m in context.messages] == ["We head into the dungeon"]
        assert (await service.get_open_session("room_new")).id == context.session_id

    @pytest.mark.asyncio
    async def test_concurrent_start_session(self, service):
        await service.ensure_room("room_2")

        first, second = await asyncio.gather(
            service.start_session("room_2"), service.start_session("room_2")
        )

        assert first.id == second.id
        assert (await service.get_stats()).total_sessions == 1

    @pytest.mark.asyncio
    async def test_concurrent_process_user_message(self, service):
        results = await asyncio.gather(
            service.process_user_message("room_new", "a"),
            service.process_user_message("room_new", "b"),
            return_exceptions=True,
        )

        assert [type(r).__name__ for r in results] == ["OptimizedContext"] * 2
        assert results[0].session_id == results[1].session_id
        stats = await service.get_stats()
        assert stats.total_rooms == 1
        assert stats.total_sessions == 1
        assert stats.total_messages == 2

    @pytest.mark.asyncio
    async def test_assistant_token_count_kept(self, service, session):
        message = await service.record_assistant_message(
            session.id, "The door creaks open.", token_count=50
        )
        assert message.token_count == 50
        assert (await service.store.get_session(session.id)).token_count == 50

    @pytest.mark.asyncio
    async def test_clear_summary_processing_queue(self, service, session):
        async def hang(session_id):
            await asyncio.sleep(10)

        service.scheduler.process_session = hang
        await service.record_user_message(session.id, "hello")
        assert service.get_summary_processing_status()["active_sessions"] == [
            session.id
        ]

        assert await service.clear_summary_processing_queue() == 1
        assert service.get_summary_processing_status()["active_sessions"] == []
        assert await service.clear_summary_processing_queue() == 0

    @pytest.mark.asyncio
    async def test_stats(self, service, session):
        await record_turns(service, session.id, 4)
        stats = await service.get_stats()
        assert stats.total_rooms == 1
        assert stats.total_messages == 4

    @pytest.mark.asyncio
    async def test_detect_scenes(self, service, session):
        for _ in range(6):
            await service.record_user_message(session.id, "I attack the goblin", "Alara")
        scenes = await service.detect_scenes(session.id)
        assert len(scenes) == 1
