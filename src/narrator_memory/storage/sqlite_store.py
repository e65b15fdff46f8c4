"""SQLite storage backend for the narrator context memory engine.

This module provides persistent storage for rooms, sessions, transcript
messages, game entities, facts and summaries using SQLite with aiosqlite
for async operations.
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from uuid import uuid4

import aiosqlite
from loguru import logger

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


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:12]}"


def _to_iso(value: datetime) -> str:
    # Fixed-width UTC strings so lexical order matches time order
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_iso(value: str | None) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _now_iso() -> str:
    return _to_iso(datetime.now(timezone.utc))


_MESSAGE_COLUMNS = (
    "id, session_id, role, content, player_name, timestamp, token_count, compressed"
)
_ENTITY_COLUMNS = "id, room_id, type, name, description, data, created_at, updated_at"
_FACT_COLUMNS = "id, entity_id, key, value, confidence, source_message_id, created_at"
_SESSION_COLUMNS = "id, room_id, started_at, ended_at, summary, token_count"


def _row_to_session(row: Sequence[Any]) -> Session:
    return Session(
        id=row[0],
        room_id=row[1],
        started_at=_from_iso(row[2]),
        ended_at=_from_iso(row[3]),
        summary=row[4],
        token_count=row[5] or 0,
    )


def _row_to_message(row: Sequence[Any]) -> Message:
    return Message(
        id=row[0],
        session_id=row[1],
        role=MessageRole(row[2]),
        content=row[3],
        player_name=row[4],
        timestamp=_from_iso(row[5]),
        token_count=row[6],
        compressed=bool(row[7]),
    )


def _row_to_entity(row: Sequence[Any]) -> Entity:
    return Entity(
        id=row[0],
        room_id=row[1],
        type=EntityType(row[2]),
        name=row[3],
        description=row[4],
        data=json.loads(row[5]) if row[5] else {},
        created_at=_from_iso(row[6]),
        updated_at=_from_iso(row[7]),
    )


def _row_to_fact(row: Sequence[Any]) -> Fact:
    return Fact(
        id=row[0],
        entity_id=row[1],
        key=row[2],
        value=row[3],
        confidence=row[4],
        source_message_id=row[5],
        created_at=_from_iso(row[6]),
    )


class SQLiteRecordStore:
    """SQLite implementation of :class:`~narrator_memory.storage.RecordStore`.

    Uses WAL mode for concurrent reads and enforces foreign keys. A message
    can only be flagged as compressed once a summary referencing it has been
    recorded in ``summary_messages``.
    """

    def __init__(self, db_path: str = "./memory/narrator.db"):
        """Initialize SQLite store.

        Args:
            db_path: Path to SQLite database file, or ``:memory:``
        """
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None
        logger.info(f"SQLiteRecordStore initialized with db_path: {db_path}")

    def _require_db(self) -> aiosqlite.Connection:
        if not self._db:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._db

    async def initialize(self) -> None:
        """Create database tables and indexes if they don't exist.

        Creates directory for database file if needed.
        Enables WAL mode for concurrent reads.
        """
        if self.db_path != ":memory:":
            db_dir = Path(self.db_path).parent
            db_dir.mkdir(parents=True, exist_ok=True)
            logger.debug(f"Ensured database directory exists: {db_dir}")

        self._db = await aiosqlite.connect(self.db_path)

        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA foreign_keys=ON")

        await self._create_tables()
        await self._create_indexes()

        await self._db.commit()
        logger.info("SQLite database initialized successfully")

    async def _create_tables(self) -> None:
        db = self._require_db()

        await db.execute("""
            CREATE TABLE IF NOT EXISTS rooms (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                settings TEXT,
                created_at TEXT NOT NULL
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                room_id TEXT NOT NULL,
                started_at TEXT NOT NULL,
                ended_at TEXT,
                summary TEXT,
                token_count INTEGER DEFAULT 0,
                FOREIGN KEY (room_id) REFERENCES rooms(id) ON DELETE CASCADE
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                player_name TEXT,
                timestamp TEXT NOT NULL,
                token_count INTEGER,
                compressed INTEGER DEFAULT 0,
                FOREIGN KEY (session_id) REFERENCES sessions(id) ON DELETE CASCADE
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS entities (
                id TEXT PRIMARY KEY,
                room_id TEXT NOT NULL,
                type TEXT NOT NULL,
                name TEXT NOT NULL,
                description TEXT,
                data TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY (room_id) REFERENCES rooms(id) ON DELETE CASCADE
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS facts (
                id TEXT PRIMARY KEY,
                entity_id TEXT NOT NULL,
                key TEXT NOT NULL,
                value TEXT NOT NULL,
                confidence REAL DEFAULT 1.0,
                source_message_id TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY (entity_id) REFERENCES entities(id) ON DELETE CASCADE
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS summaries (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL,
                type TEXT NOT NULL,
                title TEXT NOT NULL,
                content TEXT NOT NULL,
                token_count INTEGER DEFAULT 0,
                created_at TEXT NOT NULL,
                metadata TEXT,
                FOREIGN KEY (session_id) REFERENCES sessions(id) ON DELETE CASCADE
            )
        """)

        # Which messages each summary stands in for
        await db.execute("""
            CREATE TABLE IF NOT EXISTS summary_messages (
                summary_id TEXT NOT NULL,
                message_id TEXT NOT NULL,
                position INTEGER NOT NULL,
                PRIMARY KEY (summary_id, message_id),
                FOREIGN KEY (summary_id) REFERENCES summaries(id) ON DELETE CASCADE,
                FOREIGN KEY (message_id) REFERENCES messages(id) ON DELETE CASCADE
            )
        """)

        logger.debug("All tables created successfully")

    async def _create_indexes(self) -> None:
        db = self._require_db()

        await db.execute("""
            CREATE INDEX IF NOT EXISTS idx_session_room
            ON sessions(room_id, ended_at)
        """)

        await db.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_session_open_per_room
            ON sessions(room_id) WHERE ended_at IS NULL
        """)

        await db.execute("""
            CREATE INDEX IF NOT EXISTS idx_message_session_time
            ON messages(session_id, timestamp)
        """)

        await db.execute("""
            CREATE INDEX IF NOT EXISTS idx_entity_room_type
            ON entities(room_id, type)
        """)

        await db.execute("""
            CREATE INDEX IF NOT EXISTS idx_fact_entity
            ON facts(entity_id)
        """)

        await db.execute("""
            CREATE INDEX IF NOT EXISTS idx_summary_session
            ON summaries(session_id)
        """)

        await db.execute("""
            CREATE INDEX IF NOT EXISTS idx_summary_message
            ON summary_messages(message_id)
        """)

        logger.debug("All indexes created successfully")

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None
            logger.info("SQLite database connection closed")

    # ------------------------------------------------------------------
    # Rooms and sessions
    # ------------------------------------------------------------------

    async def create_room(
        self, room_id: str, title: str, settings: dict[str, Any] | None = None
    ) -> Room:
        """Insert a room. An existing id is left untouched and returned."""
        db = self._require_db()
        room = Room(id=room_id, title=title, settings=settings or {})

        async with db.execute(
            """
            INSERT OR IGNORE INTO rooms (id, title, settings, created_at)
            VALUES (?, ?, ?, ?)
            """,
            (room.id, room.title, json.dumps(room.settings), _to_iso(room.created_at)),
        ) as cursor:
            inserted = cursor.rowcount > 0
        await db.commit()

        if not inserted:
            existing = await self.get_room(room_id)
            if existing is not None:
                return existing
        logger.debug(f"Room created: {room_id}")
        return room

    async def get_room(self, room_id: str) -> Room | None:
        db = self._require_db()
        async with db.execute(
            "SELECT id, title, settings, created_at FROM rooms WHERE id = ?",
            (room_id,),
        ) as cursor:
            row = await cursor.fetchone()

        if row is None:
            return None
        return Room(
            id=row[0],
            title=row[1],
            settings=json.loads(row[2]) if row[2] else {},
            created_at=_from_iso(row[3]),
        )

    async def create_session(self, room_id: str) -> Session:
        """Open a new session in the room.

        A room holds at most one open session; if one already exists it is
        returned instead.
        """
        db = self._require_db()
        session = Session(id=_new_id("session"), room_id=room_id)

        try:
            await db.execute(
                """
                INSERT INTO sessions (id, room_id, started_at, token_count)
                VALUES (?, ?, ?, 0)
                """,
                (session.id, room_id, _to_iso(session.started_at)),
            )
            await db.commit()
        except aiosqlite.IntegrityError:
            # Constraint failures abort only this statement. Pending writes
            # of other callers on the shared connection must survive.
            existing = await self.get_open_session(room_id)
            if existing is None:
                raise
            logger.debug(f"Room {room_id} already has open session {existing.id}")
            return existing
        logger.debug(f"Session created: {session.id} (room {room_id})")
        return session

    async def get_session(self, session_id: str) -> Session | None:
        db = self._require_db()
        async with db.execute(
            f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE id = ?", (session_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_session(row) if row else None

    async def get_open_session(self, room_id: str) -> Session | None:
        db = self._require_db()
        async with db.execute(
            f"""
            SELECT {_SESSION_COLUMNS} FROM sessions
            WHERE room_id = ? AND ended_at IS NULL
            ORDER BY started_at DESC
            LIMIT 1
            """,
            (room_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_session(row) if row else None

    async def end_session(
        self, session_id: str, summary: str | None = None
    ) -> Session | None:
        """Set ``ended_at`` on an open session.

        Returns:
            The updated session, or None if it does not exist
        """
        db = self._require_db()
        await db.execute(
            """
            UPDATE sessions
            SET ended_at = ?, summary = COALESCE(?, summary)
            WHERE id = ? AND ended_at IS NULL
            """,
            (_now_iso(), summary, session_id),
        )
        await db.commit()
        logger.debug(f"Session ended: {session_id}")
        return await self.get_session(session_id)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def append_message(
        self,
        session_id: str,
        role: MessageRole,
        content: str,
        player_name: str | None = None,
        token_count: int | None = None,
        timestamp: datetime | None = None,
    ) -> Message:
        db = self._require_db()
        message = Message(
            id=_new_id("msg"),
            session_id=session_id,
            role=role,
            content=content,
            player_name=player_name,
            token_count=token_count,
            timestamp=_from_iso(_to_iso(timestamp or datetime.now(timezone.utc))),
        )

        await db.execute(
            f"""
            INSERT INTO messages ({_MESSAGE_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, 0)
            """,
            (
                message.id,
                session_id,
                message.role.value,
                content,
                player_name,
                _to_iso(message.timestamp),
                token_count,
            ),
        )
        if token_count:
            await db.execute(
                "UPDATE sessions SET token_count = token_count + ? WHERE id = ?",
                (token_count, session_id),
            )
        await db.commit()
        return message

    async def get_message(self, message_id: str) -> Message | None:
        db = self._require_db()
        async with db.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = ?", (message_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_message(row) if row else None

    async def get_messages(
        self, session_id: str, limit: int | None = None
    ) -> list[Message]:
        """Get the most recent messages of a session.

        Args:
            session_id: Session identifier
            limit: Maximum number of messages, newest kept; None for all

        Returns:
            Messages in chronological order
        """
        db = self._require_db()
        async with db.execute(
            f"""
            SELECT {_MESSAGE_COLUMNS} FROM messages
            WHERE session_id = ?
            ORDER BY timestamp DESC, rowid DESC
            LIMIT ?
            """,
            (session_id, -1 if limit is None else limit),
        ) as cursor:
            rows = await cursor.fetchall()

        messages = [_row_to_message(row) for row in rows]
        messages.reverse()
        return messages

    async def mark_compressed(self, message_ids: Sequence[str]) -> int:
        """Flag messages as compressed.

        Only messages referenced by a recorded summary are changed. Ids
        without a summary are left untouched.

        Returns:
            Number of messages flagged by this call
        """
        if not message_ids:
            return 0
        db = self._require_db()
        ids = list(message_ids)
        placeholders = ", ".join("?" for _ in ids)

        cursor = await db.execute(
            f"""
            UPDATE messages SET compressed = 1
            WHERE compressed = 0
              AND id IN ({placeholders})
              AND id IN (SELECT message_id FROM summary_messages)
            """,
            ids,
        )
        updated = cursor.rowcount
        await cursor.close()
        await db.commit()

        if updated < len(ids):
            logger.debug(
                f"mark_compressed flagged {updated}/{len(ids)} messages; "
                f"the rest are unsummarized or already compressed"
            )
        return updated

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
        db = self._require_db()
        entity = Entity(
            id=_new_id("entity"),
            room_id=room_id,
            type=entity_type,
            name=name,
            description=description,
            data=data or {},
        )

        await db.execute(
            f"INSERT INTO entities ({_ENTITY_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                entity.id,
                room_id,
                entity.type.value,
                name,
                description,
                json.dumps(entity.data),
                _to_iso(entity.created_at),
                _to_iso(entity.updated_at),
            ),
        )
        await db.commit()
        logger.debug(f"Entity created: {entity.id} ({entity.type.value} {name})")
        return entity

    async def get_entity(self, entity_id: str) -> Entity | None:
        db = self._require_db()
        async with db.execute(
            f"SELECT {_ENTITY_COLUMNS} FROM entities WHERE id = ?", (entity_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_entity(row) if row else None

    async def update_entity(
        self,
        entity_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> Entity | None:
        """Update the given fields of an entity. ``data`` is merged, not replaced."""
        entity = await self.get_entity(entity_id)
        if entity is None:
            return None

        merged = {**entity.data, **(data or {})}
        db = self._require_db()
        await db.execute(
            """
            UPDATE entities
            SET name = ?, description = ?, data = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                name if name is not None else entity.name,
                description if description is not None else entity.description,
                json.dumps(merged),
                _now_iso(),
                entity_id,
            ),
        )
        await db.commit()
        logger.debug(f"Entity updated: {entity_id}")
        return await self.get_entity(entity_id)

    async def get_entities(
        self, room_id: str, entity_type: EntityType | None = None
    ) -> list[Entity]:
        db = self._require_db()
        if entity_type is not None:
            query = f"""
                SELECT {_ENTITY_COLUMNS} FROM entities
                WHERE room_id = ? AND type = ?
                ORDER BY created_at, rowid
            """
            params: tuple[Any, ...] = (room_id, EntityType(entity_type).value)
        else:
            query = f"""
                SELECT {_ENTITY_COLUMNS} FROM entities
                WHERE room_id = ?
                ORDER BY created_at, rowid
            """
            params = (room_id,)

        async with db.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        return [_row_to_entity(row) for row in rows]

    async def add_fact(
        self,
        entity_id: str,
        key: str,
        value: str,
        confidence: float = 1.0,
        source_message_id: str | None = None,
    ) -> Fact:
        db = self._require_db()
        fact = Fact(
            id=_new_id("fact"),
            entity_id=entity_id,
            key=key,
            value=value,
            confidence=confidence,
            source_message_id=source_message_id,
        )

        await db.execute(
            f"INSERT INTO facts ({_FACT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                fact.id,
                entity_id,
                key,
                value,
                confidence,
                source_message_id,
                _to_iso(fact.created_at),
            ),
        )
        await db.commit()
        return fact

    async def get_facts(self, entity_id: str) -> list[Fact]:
        db = self._require_db()
        async with db.execute(
            f"""
            SELECT {_FACT_COLUMNS} FROM facts
            WHERE entity_id = ?
            ORDER BY confidence DESC, created_at DESC
            """,
            (entity_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [_row_to_fact(row) for row in rows]

    # ------------------------------------------------------------------
    # Summaries
    # ------------------------------------------------------------------

    async def record_summary(self, summary: Summary) -> Summary:
        """Persist a summary together with the messages it covers."""
        db = self._require_db()
        await db.execute(
            """
            INSERT INTO summaries (
                id, session_id, type, title, content, token_count,
                created_at, metadata
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                summary.id,
                summary.session_id,
                summary.type.value,
                summary.title,
                summary.content,
                summary.token_count,
                _to_iso(summary.created_at),
                json.dumps(summary.metadata),
            ),
        )
        await db.executemany(
            """
            INSERT OR IGNORE INTO summary_messages (summary_id, message_id, position)
            VALUES (?, ?, ?)
            """,
            [
                (summary.id, message_id, position)
                for position, message_id in enumerate(summary.message_ids)
            ],
        )
        await db.commit()
        logger.debug(
            f"Summary recorded: {summary.id} ({len(summary.message_ids)} messages)"
        )
        return summary

    async def get_summaries(
        self, session_id: str, summary_type: SummaryType | None = None
    ) -> list[Summary]:
        db = self._require_db()
        query = """
            SELECT id, session_id, type, title, content, token_count,
                   created_at, metadata
            FROM summaries
            WHERE session_id = ?
        """
        params: list[Any] = [session_id]
        if summary_type is not None:
            query += " AND type = ?"
            params.append(SummaryType(summary_type).value)
        query += " ORDER BY created_at, rowid"

        async with db.execute(query, params) as cursor:
            rows = await cursor.fetchall()

        summaries = []
        for row in rows:
            async with db.execute(
                """
                SELECT message_id FROM summary_messages
                WHERE summary_id = ?
                ORDER BY position
                """,
                (row[0],),
            ) as cursor:
                message_ids = [r[0] for r in await cursor.fetchall()]
            summaries.append(
                Summary(
                    id=row[0],
                    session_id=row[1],
                    type=SummaryType(row[2]),
                    title=row[3],
                    content=row[4],
                    token_count=row[5] or 0,
                    created_at=_from_iso(row[6]),
                    metadata=json.loads(row[7]) if row[7] else {},
                    message_ids=message_ids,
                )
            )
        return summaries

    async def get_stats(self) -> MemoryStats:
        """Get row counts across all tables."""
        db = self._require_db()
        counts: dict[str, int] = {}
        for table in ("rooms", "sessions", "messages", "entities", "facts", "summaries"):
            async with db.execute(f"SELECT COUNT(*) FROM {table}") as cursor:
                row = await cursor.fetchone()
                counts[table] = row[0] if row else 0

        async with db.execute(
            "SELECT COUNT(*) FROM messages WHERE compressed = 1"
        ) as cursor:
            row = await cursor.fetchone()
            compressed = row[0] if row else 0

        sessions = counts["sessions"]
        return MemoryStats(
            total_rooms=counts["rooms"],
            total_sessions=sessions,
            total_messages=counts["messages"],
            total_entities=counts["entities"],
            total_facts=counts["facts"],
            total_summaries=counts["summaries"],
            compressed_messages=compressed,
            average_session_length=counts["messages"] // sessions if sessions else 0,
        )
