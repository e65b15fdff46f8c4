"""Core data models for the narrator context memory engine."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid4())


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class EntityType(str, Enum):
    CHARACTER = "character"
    LOCATION = "location"
    NPC = "npc"
    ITEM = "item"
    QUEST = "quest"


class SummaryType(str, Enum):
    MESSAGES = "messages"
    SCENE = "scene"
    SESSION = "session"


class Room(BaseModel):
    """A persistent game table spanning any number of sessions."""

    id: str
    title: str
    settings: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)


class Session(BaseModel):
    """One continuous play period within a room."""

    id: str
    room_id: str
    started_at: datetime = Field(default_factory=_utcnow)
    ended_at: datetime | None = None
    summary: str | None = None
    token_count: int = 0

    @property
    def is_open(self) -> bool:
        return self.ended_at is None


class Message(BaseModel):
    """A single transcript line. Only ``compressed`` ever changes after write."""

    id: str
    session_id: str
    role: MessageRole
    content: str
    player_name: str | None = None
    timestamp: datetime = Field(default_factory=_utcnow)
    token_count: int | None = Field(default=None, ge=0)
    compressed: bool = False


class Entity(BaseModel):
    """A game entity (character, location, ...) owned by a room."""

    id: str
    room_id: str
    type: EntityType
    name: str
    description: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class Fact(BaseModel):
    """A weak key/value annotation on an entity. Facts are appended, never replaced."""

    id: str
    entity_id: str
    key: str
    value: str
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    source_message_id: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)


class MessageRelevance(BaseModel):
    """Named sub-weights that produced a message's priority score."""

    time_weight: float
    participant_weight: float
    keyword_weight: float
    entity_weight: float
    recency_boost: float


class EntityRelevance(BaseModel):
    """Named sub-weights that produced an entity's priority score."""

    frequency_weight: float
    recency_weight: float
    connection_weight: float


class PrioritizedMessage(Message):
    priority_score: float = Field(ge=0.0, le=1.0)
    relevance_factors: MessageRelevance


class PrioritizedEntity(Entity):
    priority_score: float = Field(ge=0.0, le=1.0)
    mention_count: int = 0
    last_mentioned: datetime
    relevance_factors: EntityRelevance


class OptimizationStats(BaseModel):
    original_token_count: int = 0
    optimized_token_count: int = 0
    compression_ratio: float = 0.0
    messages_included: int = 0
    messages_excluded: int = 0
    entities_included: int = 0
    entities_excluded: int = 0
    facts_included: int = 0


class OptimizedContext(BaseModel):
    """Bounded, prioritized context payload handed to the narrator LLM."""

    session_id: str
    room_id: str
    messages: list[PrioritizedMessage] = Field(default_factory=list)
    entities: list[PrioritizedEntity] = Field(default_factory=list)
    relevant_facts: list[Fact] = Field(default_factory=list)
    session_summary: str | None = None
    context_summary: str = ""
    total_tokens: int = 0
    stats: OptimizationStats = Field(default_factory=OptimizationStats)

    @property
    def compression_ratio(self) -> float:
        return self.stats.compression_ratio

    def chronological_messages(self) -> list[PrioritizedMessage]:
        """Selected messages re-ordered by arrival time for prompt assembly."""
        return sorted(self.messages, key=lambda m: m.timestamp)


class Summary(BaseModel):
    """A compacted stand-in for a range of messages. Never folds other summaries."""

    id: str = Field(default_factory=lambda: f"summary_{uuid4().hex[:12]}")
    session_id: str
    type: SummaryType
    title: str
    content: str
    message_ids: list[str] = Field(default_factory=list)
    token_count: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)


class SceneAnalysis(BaseModel):
    """Output of a scene analyzer for one candidate group of messages."""

    scene_detected: bool = False
    title: str | None = None
    description: str = ""
    key_events: list[str] = Field(default_factory=list)
    participants: list[str] = Field(default_factory=list)
    entities_mentioned: list[str] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class AutoScene(BaseModel):
    """A heuristically detected, narratively coherent sub-episode."""

    id: str = Field(default_factory=_uuid)
    session_id: str
    title: str
    description: str = ""
    start_message_id: str
    end_message_id: str
    message_count: int = 0
    participants: list[str] = Field(default_factory=list)
    key_events: list[str] = Field(default_factory=list)
    entities_mentioned: list[str] = Field(default_factory=list)
    confidence: float = 0.0
    created_at: datetime = Field(default_factory=_utcnow)


class CompressionStats(BaseModel):
    total_summaries: int = 0
    messages_summarized: int = 0
    original_token_count: int = 0
    compressed_token_count: int = 0
    compression_ratio: float = 0.0
    scenes_detected: int = 0
    processing_time_ms: float = 0.0


class MemoryStats(BaseModel):
    total_rooms: int = 0
    total_sessions: int = 0
    total_messages: int = 0
    total_entities: int = 0
    total_facts: int = 0
    total_summaries: int = 0
    compressed_messages: int = 0
    average_session_length: int = 0


class EntityStats(BaseModel):
    """Per-room entity counts."""

    total: int = 0
    by_type: dict[EntityType, int] = Field(
        default_factory=lambda: {t: 0 for t in EntityType}
    )
    with_facts: int = 0
    recent_entities: list[Entity] = Field(default_factory=list)


class ExtractedEntity(BaseModel):
    """An entity candidate produced by an extractor, before persistence."""

    type: EntityType
    name: str
    description: str | None = None
    attributes: dict[str, str] = Field(default_factory=dict)
