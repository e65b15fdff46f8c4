"""Memory Service - Facade for the narrator context memory engine.

This module provides the main MemoryService class that the LLM
orchestration layer uses. It records the transcript, keeps game entities
and facts, builds token-budgeted prioritized contexts, caches them per
room, and schedules background compaction.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any, Protocol

from loguru import logger

from .allocator import BudgetAllocator
from .cache import ContextCache
from .config import ContextOptions, MemoryConfig
from .exceptions import (
    ContextBuildTimeoutError,
    NoOpenSessionError,
    RecordNotFoundError,
)
from .extraction import EntityExtractor, RegexEntityExtractor
from .models import (
    AutoScene,
    CompressionStats,
    Entity,
    EntityStats,
    EntityType,
    Fact,
    MemoryStats,
    Message,
    MessageRole,
    OptimizationStats,
    OptimizedContext,
    Room,
    Session,
    Summary,
    SummaryType,
)
from .scene_detection import SceneAnalyzer, SceneDetector
from .scoring import PriorityScorer
from .storage.base import RecordStore
from .storage.sqlite_store import SQLiteRecordStore
from .summarization import SummarizationScheduler, Summarizer
from .token_counter import TokenCounter


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryServiceInterface(Protocol):
    """Protocol defining the core MemoryService API."""

    async def build_context(
        self,
        room_id: str,
        options: ContextOptions | dict[str, Any] | None = None,
    ) -> OptimizedContext:
        """Build (or serve from cache) the prioritized context for a room."""
        ...

    async def record_message(
        self,
        session_id: str,
        role: MessageRole,
        content: str,
        player_name: str | None = None,
        token_count: int | None = None,
    ) -> Message:
        """Append a transcript message and invalidate the room's contexts."""
        ...

    def invalidate(self, room_id: str) -> int:
        """Drop every cached context for a room."""
        ...

    async def start_session(self, room_id: str) -> Session:
        """Return the room's open session, creating one if needed."""
        ...

    async def end_session(self, session_id: str, summary: str | None = None) -> Session:
        """Close a session."""
        ...


class MemoryService:
    """Main memory service facade.

    Provides:
    - Transcript recording with cache invalidation per room
    - Priority-scored, token-budgeted context building with a TTL cache
    - Entity and fact management with heuristic extraction
    - Background compaction and scene detection

    The store is lazily initialized on first use. All mutable state (cache,
    in-flight compaction set) belongs to this instance.
    """

    def __init__(
        self,
        config: MemoryConfig | None = None,
        store: RecordStore | None = None,
        extractor: EntityExtractor | None = None,
        summarizer: Summarizer | None = None,
        scene_analyzer: SceneAnalyzer | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """Initialize memory service.

        Args:
            config: Memory configuration (uses defaults if not provided)
            store: Record store; SQLite at ``config.storage`` if not provided
            extractor: Entity extractor; regex heuristics if not provided
            summarizer: Summary text producer; rule-based if not provided
            scene_analyzer: Scene analyzer; keyword heuristics if not provided
            clock: Source of "now" for scoring
        """
        self.config = config or MemoryConfig()
        self.store: RecordStore = store or SQLiteRecordStore(
            db_path=self.config.storage.sqlite_db_path
        )
        self._clock = clock
        self._store_initialized = False
        self._init_lock = asyncio.Lock()
        self._room_locks: dict[str, asyncio.Lock] = {}

        context_cfg = self.config.context
        self.token_counter = TokenCounter()
        self.scorer = PriorityScorer(self.config.scoring)
        self.allocator = BudgetAllocator(
            token_counter=self.token_counter,
            message_budget_ratio=context_cfg.message_budget_ratio,
            max_fact_entities=context_cfg.max_fact_entities,
        )
        self.cache = ContextCache(
            ttl_seconds=context_cfg.cache_ttl_seconds,
            max_entries=context_cfg.cache_max_entries,
        )
        self.scene_detector = SceneDetector(
            self.config.scene_detection, analyzer=scene_analyzer
        )
        self.scheduler = SummarizationScheduler(
            store=self.store,
            config=self.config.summarization,
            summarizer=summarizer,
            scene_detector=self.scene_detector,
            token_counter=self.token_counter,
            history_limit=context_cfg.history_limit,
            on_compacted=self._on_compacted,
        )
        self.extractor: EntityExtractor | None = None
        if self.config.extraction.enabled:
            self.extractor = extractor or RegexEntityExtractor()

        logger.debug(f"MemoryService full config: {self.config.model_dump()}")
        logger.info(
            f"MemoryService initialized: "
            f"sqlite_db_path={self.config.storage.sqlite_db_path!r}, "
            f"max_tokens={context_cfg.max_tokens}, "
            f"cache_ttl={context_cfg.cache_ttl_seconds}s"
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        await self._ensure_store()

    async def _ensure_store(self) -> RecordStore:
        """Lazy initialization of the record store."""
        if not self._store_initialized:
            async with self._init_lock:
                if not self._store_initialized:
                    await self.store.initialize()
                    self._store_initialized = True
                    logger.debug("MemoryService: record store initialized")
        return self.store

    async def close(self) -> None:
        """Drain background work and close the store."""
        await self.scheduler.wait_idle()
        if self._store_initialized:
            await self.store.close()
            self._store_initialized = False
            logger.info("MemoryService: record store closed")

    async def wait_for_background(self) -> None:
        """Wait until every scheduled compaction has finished."""
        await self.scheduler.wait_idle()

    # ------------------------------------------------------------------
    # Rooms and sessions
    # ------------------------------------------------------------------

    def _room_lock(self, room_id: str) -> asyncio.Lock:
        """Lock serializing find-or-create of a room and its open session."""
        return self._room_locks.setdefault(room_id, asyncio.Lock())

    async def ensure_room(
        self,
        room_id: str,
        title: str | None = None,
        settings: dict[str, Any] | None = None,
    ) -> Room:
        store = await self._ensure_store()
        async with self._room_lock(room_id):
            room = await store.get_room(room_id)
            if room is None:
                room = await store.create_room(room_id, title or room_id, settings)
                logger.info(f"Room created: {room_id}")
        return room

    async def get_open_session(self, room_id: str) -> Session | None:
        store = await self._ensure_store()
        return await store.get_open_session(room_id)

    async def start_session(self, room_id: str) -> Session:
        """Return the room's open session, or start a new one.

        Raises:
            RecordNotFoundError: If the room does not exist
        """
        store = await self._ensure_store()
        async with self._room_lock(room_id):
            if await store.get_room(room_id) is None:
                raise RecordNotFoundError("Room", room_id)

            session = await store.get_open_session(room_id)
            if session is not None:
                return session

            session = await store.create_session(room_id)

        self.cache.invalidate_room(room_id)
        logger.info(f"Session started: {session.id} (room {room_id})")
        return session

    async def end_session(self, session_id: str, summary: str | None = None) -> Session:
        """End a session and drop the room's cached contexts.

        Raises:
            RecordNotFoundError: If the session does not exist
        """
        store = await self._ensure_store()
        session = await store.get_session(session_id)
        if session is None:
            raise RecordNotFoundError("Session", session_id)

        ended = await store.end_session(session_id, summary)
        self.cache.invalidate_room(session.room_id)
        logger.info(f"Session ended: {session_id} (room {session.room_id})")
        return ended or session

    # ------------------------------------------------------------------
    # Transcript
    # ------------------------------------------------------------------

    async def record_message(
        self,
        session_id: str,
        role: MessageRole,
        content: str,
        player_name: str | None = None,
        token_count: int | None = None,
        timestamp: datetime | None = None,
    ) -> Message:
        """Append a message, invalidate the room and schedule compaction.

        Entity extraction runs on non-system messages when enabled; its
        failures are logged and never fail the write.

        Raises:
            RecordNotFoundError: If the session does not exist
        """
        store = await self._ensure_store()
        session = await store.get_session(session_id)
        if session is None:
            raise RecordNotFoundError("Session", session_id)

        message = await store.append_message(
            session_id,
            MessageRole(role),
            content,
            player_name=player_name,
            token_count=token_count,
            timestamp=timestamp,
        )
        self.cache.invalidate_room(session.room_id)

        if self.extractor is not None and message.role != MessageRole.SYSTEM:
            try:
                await self.extract_entities(session.room_id, content, message.id)
            except Exception as e:
                logger.warning(
                    f"Entity extraction failed for message {message.id}: {e}"
                )

        self.scheduler.maybe_schedule(session_id)
        return message

    async def record_user_message(
        self,
        session_id: str,
        content: str,
        player_name: str | None = None,
        token_count: int | None = None,
    ) -> Message:
        return await self.record_message(
            session_id,
            MessageRole.USER,
            content,
            player_name=player_name,
            token_count=token_count,
        )

    async def record_assistant_message(
        self, session_id: str, content: str, token_count: int | None = None
    ) -> Message:
        return await self.record_message(
            session_id, MessageRole.ASSISTANT, content, token_count=token_count
        )

    async def process_user_message(
        self,
        room_id: str,
        content: str,
        player_name: str | None = None,
        options: ContextOptions | dict[str, Any] | None = None,
    ) -> OptimizedContext:
        """Record a player's message in the room and return a fresh context.

        Creates the room and an open session when they do not exist yet.
        """
        await self.ensure_room(room_id)
        session = await self.start_session(room_id)
        await self.record_user_message(session.id, content, player_name)
        return await self.build_context(room_id, options)

    # ------------------------------------------------------------------
    # Context building
    # ------------------------------------------------------------------

    async def build_context(
        self,
        room_id: str,
        options: ContextOptions | dict[str, Any] | None = None,
    ) -> OptimizedContext:
        """Build token-budgeted context for the room's open session.

        Args:
            room_id: Room identifier
            options: Per-call overrides (see :class:`ContextOptions`)

        Returns:
            OptimizedContext, served from cache when a fresh entry exists

        Raises:
            InvalidContextOptionsError: If ``options`` is malformed
            NoOpenSessionError: If the room has no open session
            ContextBuildTimeoutError: If the build exceeds
                ``build_timeout_seconds``
        """
        opts = ContextOptions.parse(options)

        timeout = self.config.context.build_timeout_seconds
        try:
            return await asyncio.wait_for(
                self._build_context(room_id, opts), timeout=timeout
            )
        except asyncio.TimeoutError:
            logger.error(f"Context build for room {room_id} timed out after {timeout}s")
            raise ContextBuildTimeoutError(room_id, timeout) from None

    async def _build_context(
        self, room_id: str, opts: ContextOptions
    ) -> OptimizedContext:
        store = await self._ensure_store()

        session = await store.get_open_session(room_id)
        if session is None:
            raise NoOpenSessionError(room_id)

        return await self.cache.get_or_build(
            room_id, opts, lambda: self._compute_context(session, opts)
        )

    async def _compute_context(
        self, session: Session, opts: ContextOptions
    ) -> OptimizedContext:
        context_cfg = self.config.context
        now = self._clock()
        max_tokens = opts.resolve_max_tokens(context_cfg)

        messages = await self.store.get_messages(session.id, context_cfg.history_limit)

        entities: list[Entity] = []
        facts_by_entity: dict[str, list[Fact]] = {}
        if opts.include_entities:
            entities = await self.store.get_entities(session.room_id)
            if opts.entity_types is not None:
                entities = [e for e in entities if e.type in opts.entity_types]
            if opts.include_facts:
                for entity in entities:
                    facts_by_entity[entity.id] = await self.store.get_facts(entity.id)

        prioritized_messages = self.scorer.prioritize_messages(messages, entities, now)
        prioritized_entities = self.scorer.prioritize_entities(
            entities,
            messages,
            fact_counts={k: len(v) for k, v in facts_by_entity.items()},
            now=now,
        )

        result = self.allocator.allocate(
            prioritized_messages,
            prioritized_entities,
            max_tokens=max_tokens,
            max_messages=opts.resolve_max_messages(context_cfg),
            priority_threshold=opts.resolve_priority_threshold(context_cfg),
            facts_by_entity=facts_by_entity if opts.include_facts else None,
        )

        stats = OptimizationStats(
            original_token_count=result.available_tokens,
            optimized_token_count=result.total_tokens,
            compression_ratio=result.compression_ratio,
            messages_included=len(result.messages),
            messages_excluded=result.messages_excluded,
            entities_included=len(result.entities),
            entities_excluded=result.entities_excluded,
            facts_included=len(result.facts),
        )

        logger.info(
            f"Context built for room {session.room_id}: "
            f"{stats.messages_included}/{len(messages)} messages, "
            f"{stats.entities_included}/{len(entities)} entities, "
            f"{result.total_tokens}/{max_tokens} tokens"
        )

        return OptimizedContext(
            session_id=session.id,
            room_id=session.room_id,
            messages=result.messages,
            entities=result.entities,
            relevant_facts=result.facts,
            session_summary=session.summary,
            context_summary=(
                f"{stats.messages_included} of {len(messages)} messages, "
                f"{stats.entities_included} of {len(entities)} entities, "
                f"{stats.facts_included} facts"
            ),
            total_tokens=result.total_tokens,
            stats=stats,
        )

    def invalidate(self, room_id: str) -> int:
        return self.cache.invalidate_room(room_id)

    def get_cache_stats(self) -> dict[str, Any]:
        return self.cache.get_stats()

    def clear_cache(self) -> int:
        return self.cache.clear()

    async def _on_compacted(self, summary: Summary) -> None:
        session = await self.store.get_session(summary.session_id)
        if session is not None:
            self.cache.invalidate_room(session.room_id)

    # ------------------------------------------------------------------
    # Entities and facts
    # ------------------------------------------------------------------

    async def create_entity(
        self,
        room_id: str,
        entity_type: EntityType,
        name: str,
        description: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> Entity:
        store = await self._ensure_store()
        entity = await store.create_entity(
            room_id, EntityType(entity_type), name, description, data
        )
        self.cache.invalidate_room(room_id)
        return entity

    async def update_entity(
        self,
        entity_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> Entity:
        """Update an entity; ``data`` is merged into the existing attributes.

        Raises:
            RecordNotFoundError: If the entity does not exist
        """
        store = await self._ensure_store()
        entity = await store.update_entity(
            entity_id, name=name, description=description, data=data
        )
        if entity is None:
            raise RecordNotFoundError("Entity", entity_id)
        self.cache.invalidate_room(entity.room_id)
        return entity

    async def get_entities(
        self, room_id: str, entity_type: EntityType | None = None
    ) -> list[Entity]:
        store = await self._ensure_store()
        return await store.get_entities(room_id, entity_type)

    async def find_entities_by_name(
        self, room_id: str, name: str, entity_type: EntityType | None = None
    ) -> list[Entity]:
        """Case-insensitive substring search over entity names."""
        needle = name.strip().lower()
        if not needle:
            return []
        entities = await self.get_entities(room_id, entity_type)
        return [e for e in entities if needle in e.name.lower()]

    async def add_fact(
        self,
        entity_id: str,
        key: str,
        value: str,
        confidence: float = 1.0,
        source_message_id: str | None = None,
    ) -> Fact:
        """Append a fact to an entity.

        Raises:
            RecordNotFoundError: If the entity does not exist
        """
        store = await self._ensure_store()
        entity = await store.get_entity(entity_id)
        if entity is None:
            raise RecordNotFoundError("Entity", entity_id)

        fact = await store.add_fact(entity_id, key, value, confidence, source_message_id)
        self.cache.invalidate_room(entity.room_id)
        return fact

    async def get_entity_facts(self, entity_id: str) -> list[Fact]:
        store = await self._ensure_store()
        return await store.get_facts(entity_id)

    async def get_related_entities(self, entity_id: str) -> list[Entity]:
        """Entities of the same room named in one of this entity's facts.

        Raises:
            RecordNotFoundError: If the entity does not exist
        """
        store = await self._ensure_store()
        entity = await store.get_entity(entity_id)
        if entity is None:
            raise RecordNotFoundError("Entity", entity_id)

        values = [f.value.lower() for f in await store.get_facts(entity_id)]
        if not values:
            return []

        return [
            other
            for other in await store.get_entities(entity.room_id)
            if other.id != entity_id
            and other.name
            and any(other.name.lower() in value for value in values)
        ]

    async def get_entity_stats(self, room_id: str) -> EntityStats:
        store = await self._ensure_store()
        entities = await store.get_entities(room_id)

        stats = EntityStats(total=len(entities), recent_entities=entities[-5:])
        for entity in entities:
            stats.by_type[entity.type] += 1
            if await store.get_facts(entity.id):
                stats.with_facts += 1
        return stats

    async def extract_entities(
        self, room_id: str, text: str, source_message_id: str | None = None
    ) -> list[Entity]:
        """Extract entities from text and persist them in the room.

        Known entities (same type and name, case-insensitive) are reused.
        Each extracted attribute is appended as a fact.

        Returns:
            Entities touched by this extraction
        """
        if self.extractor is None:
            return []
        candidates = self.extractor.extract(text)
        if not candidates:
            return []

        store = await self._ensure_store()
        existing = {
            (e.type, e.name.lower()): e for e in await store.get_entities(room_id)
        }
        confidence = self.config.extraction.fact_confidence

        touched = []
        for candidate in candidates:
            entity = existing.get((candidate.type, candidate.name.lower()))
            if entity is None:
                entity = await store.create_entity(
                    room_id,
                    candidate.type,
                    candidate.name,
                    candidate.description,
                    dict(candidate.attributes),
                )
                existing[(entity.type, entity.name.lower())] = entity
                logger.debug(f"Extracted new {entity.type.value}: {entity.name}")

            for key, value in candidate.attributes.items():
                await store.add_fact(
                    entity.id, key, value, confidence, source_message_id
                )
            touched.append(entity)

        self.cache.invalidate_room(room_id)
        return touched

    # ------------------------------------------------------------------
    # Summaries, scenes and stats
    # ------------------------------------------------------------------

    async def create_summary(
        self,
        session_id: str,
        summary_type: SummaryType = SummaryType.MESSAGES,
        message_ids: list[str] | None = None,
        title: str | None = None,
    ) -> Summary:
        await self._ensure_store()
        return await self.scheduler.create_summary(
            session_id, summary_type, message_ids=message_ids, title=title
        )

    async def get_summaries(
        self, session_id: str, summary_type: SummaryType | None = None
    ) -> list[Summary]:
        store = await self._ensure_store()
        return await store.get_summaries(session_id, summary_type)

    async def detect_scenes(self, session_id: str) -> list[AutoScene]:
        await self._ensure_store()
        return await self.scheduler.detect_scenes(session_id)

    async def get_compression_stats(self, session_id: str) -> CompressionStats:
        await self._ensure_store()
        return await self.scheduler.get_compression_stats(session_id)

    def get_summary_processing_status(self) -> dict[str, Any]:
        return self.scheduler.get_processing_status()

    async def clear_summary_processing_queue(self) -> int:
        """Cancel pending compactions; their sessions can be scheduled again."""
        return await self.scheduler.cancel_all()

    async def get_stats(self) -> MemoryStats:
        store = await self._ensure_store()
        return await store.get_stats()
