"""Storage backends for the narrator context memory engine."""

from __future__ import annotations

from .base import RecordStore
from .sqlite_store import SQLiteRecordStore

__all__ = ["RecordStore", "SQLiteRecordStore"]
