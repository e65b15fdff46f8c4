"""Record store contract consumed by the context memory engine.

The engine owns no persistence of its own. Any backend that satisfies
:class:`RecordStore` can sit under :class:`~narrator_memory.MemoryService`.
Backend errors are expected to propagate unchanged.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from ..models import (
    Entity,
    EntityType,
    Fact,
    MemoryStats,
    Message,
    MessageRole,
    Room,
    Session,
    Summary,
    SummaryType,
)


@runtime_checkable
class RecordStore(Protocol):
    """Async persistence for rooms, sessions, messages, entities, facts and summaries."""

    async def initialize(self) -> None:
        ...

    async def close(self) -> None:
        ...

    # Rooms and sessions

    async def create_room(
        self, room_id: str, title: str, settings: dict[str, Any] | None = None
    ) -> Room:
        """Create a room; an existing id is returned unchanged."""
        ...

    async def get_room(self, room_id: str) -> Room | None:
        ...

    async def create_session(self, room_id: str) -> Session:
        """Open a session; returns the open one if the room already has it."""
        ...

    async def get_session(self, session_id: str) -> Session | None:
        ...

    async def get_open_session(self, room_id: str) -> Session | None:
        """Return the room's session with no ``ended_at``, if any."""
        ...

    async def end_session(
        self, session_id: str, summary: str | None = None
    ) -> Session | None:
        ...

    # Messages

    async def append_message(
        self,
        session_id: str,
        role: MessageRole,
        content: str,
        player_name: str | None = None,
        token_count: int | None = None,
        timestamp: datetime | None = None,
    ) -> Message:
        ...

    async def get_message(self, message_id: str) -> Message | None:
        ...

    async def get_messages(
        self, session_id: str, limit: int | None = None
    ) -> list[Message]:
        """Return the most recent ``limit`` messages in chronological order."""
        ...

    async def mark_compressed(self, message_ids: Sequence[str]) -> int:
        """Flag messages as compressed. Only messages referenced by a recorded
        summary may be flagged; returns the number actually changed."""
        ...

    # Entities and facts

    async def create_entity(
        self,
        room_id: str,
        entity_type: EntityType,
        name: str,
        description: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> Entity:
        ...

    async def get_entity(self, entity_id: str) -> Entity | None:
        ...

    async def update_entity(
        self,
        entity_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> Entity | None:
        ...

    async def get_entities(
        self, room_id: str, entity_type: EntityType | None = None
    ) -> list[Entity]:
        ...

    async def add_fact(
        self,
        entity_id: str,
        key: str,
        value: str,
        confidence: float = 1.0,
        source_message_id: str | None = None,
    ) -> Fact:
        ...

    async def get_facts(self, entity_id: str) -> list[Fact]:
        ...

    # Summaries

    async def record_summary(self, summary: Summary) -> Summary:
        ...

    async def get_summaries(
        self, session_id: str, summary_type: SummaryType | None = None
    ) -> list[Summary]:
        ...

    async def get_stats(self) -> MemoryStats:
        ...
