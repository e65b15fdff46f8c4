"""Exception hierarchy for the context memory engine.

Only caller errors and the facade timeout are raised from here. Store
errors (``sqlite3``/``aiosqlite``) propagate unchanged, and degradable
failures (cache, summarization, extraction) are logged and bypassed.
"""


class MemoryEngineError(Exception):
    """Base error for the memory engine."""

    pass


class NoOpenSessionError(MemoryEngineError):
    """A context was requested for a room without an open session."""

    def __init__(self, room_id: str):
        self.room_id = room_id
        super().__init__(f"No open session for room: {room_id}")


class InvalidContextOptionsError(MemoryEngineError):
    """Context options failed validation."""

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"Invalid context option '{field}': {message}")


class RecordNotFoundError(MemoryEngineError):
    """A referenced room, session or entity does not exist."""

    def __init__(self, kind: str, record_id: str):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} not found: {record_id}")


class ContextBuildTimeoutError(MemoryEngineError):
    """Building a context exceeded the facade timeout."""

    def __init__(self, room_id: str, timeout_seconds: float):
        self.room_id = room_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Context build for room {room_id} timed out after {timeout_seconds}s"
        )


class InsufficientMessagesError(MemoryEngineError):
    """Too few messages to produce a summary."""

    def __init__(self, session_id: str, found: int, required: int):
        self.session_id = session_id
        self.found = found
        self.required = required
        super().__init__(
            f"Not enough messages to summarize session {session_id} "
            f"({found} found, minimum {required})"
        )
