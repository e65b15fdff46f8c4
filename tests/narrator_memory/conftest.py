"""Shared fixtures for the narrator memory tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from narrator_memory.config import MemoryConfig
from narrator_memory.memory_service import MemoryService
from narrator_memory.models import Message, MessageRole
from narrator_memory.storage.sqlite_store import SQLiteRecordStore

BASE_TIME = datetime(2025, 3, 1, 19, 0, tzinfo=timezone.utc)


@pytest.fixture
def base_time():
    return BASE_TIME


@pytest.fixture
def make_message():
    """Factory for in-memory messages spaced one minute apart."""

    def _make(
        index: int,
        content: str = "The party waits.",
        role: MessageRole = MessageRole.ASSISTANT,
        player_name: str | None = None,
        timestamp: datetime | None = None,
        session_id: str = "session_test",
        **kwargs,
    ) -> Message:
        return Message(
            id=f"msg_{index:04d}",
            session_id=session_id,
            role=role,
            content=content,
            player_name=player_name,
            timestamp=timestamp or BASE_TIME + timedelta(minutes=index),
            **kwargs,
        )

    return _make


@pytest.fixture
async def store(tmp_path):
    s = SQLiteRecordStore(db_path=str(tmp_path / "narrator.db"))
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
def config(tmp_path):
    """MemoryConfig on a temporary database with extraction disabled."""
    return MemoryConfig(
        storage={"sqlite_db_path": str(tmp_path / "narrator.db")},
        extraction={"enabled": False},
    )


@pytest.fixture
async def service(config):
    svc = MemoryService(config=config)
    await svc.initialize()
    yield svc
    await svc.close()
