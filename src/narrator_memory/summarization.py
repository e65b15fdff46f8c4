"""Background compaction of session transcripts.

The scheduler keeps the live transcript bounded by folding older messages
into ``messages`` summaries. Work runs in detached asyncio tasks so the
write that triggered it never waits, and at most one task runs per session.

Ordering: a summary is recorded before any of its messages are flagged as
compressed. A crash between the two leaves a summary whose messages are
still live, never a compressed message without a summary.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Sequence
from threading import Lock
from typing import Any, Protocol, runtime_checkable

from loguru import logger

from .config import SummarizationConfig
from .exceptions import InsufficientMessagesError, RecordNotFoundError
from .models import (
    AutoScene,
    CompressionStats,
    Message,
    MessageRole,
    Summary,
    SummaryType,
)
from .scene_detection import DEFAULT_EVENT_KEYWORDS, SceneDetector
from .storage.base import RecordStore
from .token_counter import TokenCounter


@runtime_checkable
class Summarizer(Protocol):
    """Produces summary text for a run of messages."""

    async def summarize(self, messages: Sequence[Message]) -> str:
        ...


class RuleBasedSummarizer:
    """Deterministic summarizer used when no LLM-backed one is configured."""

    def __init__(
        self,
        event_keywords: Sequence[tuple[str, Sequence[str]]] = DEFAULT_EVENT_KEYWORDS,
    ):
        self.event_keywords = event_keywords

    async def summarize(self, messages: Sequence[Message]) -> str:
        if not messages:
            return "No messages"

        participants = list(
            dict.fromkeys(m.player_name for m in messages if m.player_name)
        )
        user_count = sum(1 for m in messages if m.role == MessageRole.USER)
        assistant_count = sum(1 for m in messages if m.role == MessageRole.ASSISTANT)
        start = messages[0].timestamp.isoformat(timespec="seconds")
        end = messages[-1].timestamp.isoformat(timespec="seconds")

        lines = [
            f"Summary of {len(messages)} messages",
            f"Participants: {', '.join(participants) or 'none'}",
            f"Player messages: {user_count}",
            f"Narrator replies: {assistant_count}",
            f"Period: {start} - {end}",
        ]

        content = " ".join(m.content.lower() for m in messages)
        events = [
            label
            for label, triggers in self.event_keywords
            if any(trigger in content for trigger in triggers)
        ]
        if events:
            lines.append(f"Key events: {', '.join(events)}")

        return "\n".join(lines)


class SummarizationScheduler:
    """Schedules and runs per-session compaction and scene detection.

    The in-flight set is the only shared state. Membership is a
    test-and-set under a lock, and a session id always leaves the set when
    its task finishes, whether it succeeded, failed or was cancelled.
    """

    def __init__(
        self,
        store: RecordStore,
        config: SummarizationConfig | None = None,
        summarizer: Summarizer | None = None,
        scene_detector: SceneDetector | None = None,
        token_counter: TokenCounter | None = None,
        history_limit: int = 1000,
        on_compacted: Callable[[Summary], Awaitable[None]] | None = None,
    ):
        """Initialize the scheduler.

        Args:
            store: Record store holding the transcripts
            config: Thresholds for compaction
            summarizer: Text producer for summaries
            scene_detector: Scene grouping and analysis
            token_counter: Token estimator for summaries and stats
            history_limit: Maximum messages read per session
            on_compacted: Awaited after messages were flagged as compressed
        """
        self.store = store
        self.config = config or SummarizationConfig()
        self.summarizer = summarizer or RuleBasedSummarizer()
        self.scene_detector = scene_detector or SceneDetector()
        self.token_counter = token_counter or TokenCounter()
        self.history_limit = history_limit
        self.on_compacted = on_compacted

        self._in_flight: set[str] = set()
        self._lock = Lock()
        self._tasks: set[asyncio.Task[None]] = set()
        self._scene_counts: dict[str, int] = {}

    # -- scheduling ---------------------------------------------------------

    def _try_claim(self, session_id: str) -> bool:
        with self._lock:
            if session_id in self._in_flight:
                return False
            self._in_flight.add(session_id)
            return True

    def _release(self, session_id: str) -> None:
        with self._lock:
            self._in_flight.discard(session_id)

    def is_processing(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._in_flight

    def maybe_schedule(self, session_id: str) -> bool:
        """Start a background compaction check unless one is already running.

        Must be called from a running event loop.

        Returns:
            True if a new task was started for ``session_id``
        """
        if not self.config.enabled:
            return False
        if not self._try_claim(session_id):
            logger.debug(f"Compaction already in flight for session {session_id}")
            return False

        coro = self._run(session_id)
        try:
            task = asyncio.create_task(coro, name=f"compaction:{session_id}")
        except RuntimeError:
            coro.close()
            self._release(session_id)
            raise

        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        # Also runs for a task cancelled before its first step.
        task.add_done_callback(lambda _: self._release(session_id))
        return True

    async def _run(self, session_id: str) -> None:
        try:
            await self.process_session(session_id)
        except asyncio.CancelledError:
            logger.debug(f"Compaction cancelled for session {session_id}")
            raise
        except Exception as e:
            logger.error(f"Background compaction failed for session {session_id}: {e}")

    async def process_session(self, session_id: str) -> Summary | None:
        """Compact the session if it reached the trigger threshold.

        Returns:
            The new ``messages`` summary, or None if nothing was compacted
        """
        messages = await self.store.get_messages(session_id, self.history_limit)
        if len(messages) < self.config.summary_trigger_threshold:
            return None

        summary = await self.compact(session_id, messages)

        if self.scene_detector.config.enabled:
            await self.detect_scenes(session_id, messages)

        return summary

    async def compact(
        self, session_id: str, messages: Sequence[Message] | None = None
    ) -> Summary | None:
        """Fold older uncompressed messages into one ``messages`` summary.

        The newest ``keep_recent`` messages are never touched. Messages that
        an earlier summary already covers are skipped, so summaries never
        overlap.
        """
        if messages is None:
            messages = await self.store.get_messages(session_id, self.history_limit)

        keep = self.config.keep_recent
        older = list(messages[:-keep]) if keep else list(messages)
        candidates = [m for m in older if not m.compressed]

        if len(candidates) < self.config.min_messages_for_summary:
            logger.debug(
                f"Skipping compaction for session {session_id}: "
                f"{len(candidates)} uncompressed older messages"
            )
            return None

        summary = await self._summarize(
            session_id,
            SummaryType.MESSAGES,
            candidates,
            title=f"Automatic summary ({len(candidates)} messages)",
        )
        marked = await self.store.mark_compressed(summary.message_ids)
        logger.info(
            f"Compacted {marked} messages of session {session_id} into {summary.id}"
        )

        if self.on_compacted is not None:
            await self.on_compacted(summary)
        return summary

    # -- summaries ----------------------------------------------------------

    async def create_summary(
        self,
        session_id: str,
        summary_type: SummaryType = SummaryType.MESSAGES,
        message_ids: Sequence[str] | None = None,
        title: str | None = None,
    ) -> Summary:
        """Create and record a summary on demand.

        Args:
            session_id: Session to summarize
            summary_type: ``messages``, ``scene`` or ``session``
            message_ids: Explicit messages to cover; defaults to the
                session history (always the full history for ``session``)
            title: Optional title, derived from the content otherwise

        Raises:
            RecordNotFoundError: If the session does not exist
            InsufficientMessagesError: If fewer than
                ``min_messages_for_summary`` messages are available
        """
        summary_type = SummaryType(summary_type)
        session = await self.store.get_session(session_id)
        if session is None:
            raise RecordNotFoundError("Session", session_id)

        if message_ids and summary_type != SummaryType.SESSION:
            messages = []
            for message_id in message_ids:
                message = await self.store.get_message(message_id)
                if message is not None and message.session_id == session_id:
                    messages.append(message)
        else:
            messages = await self.store.get_messages(session_id, self.history_limit)

        return await self._summarize(session_id, summary_type, messages, title=title)

    async def _summarize(
        self,
        session_id: str,
        summary_type: SummaryType,
        messages: Sequence[Message],
        title: str | None = None,
    ) -> Summary:
        required = self.config.min_messages_for_summary
        if len(messages) < required:
            raise InsufficientMessagesError(session_id, len(messages), required)

        start_time = time.perf_counter()
        metadata: dict[str, Any] = {"message_count": len(messages)}

        if summary_type == SummaryType.SCENE:
            analysis = self.scene_detector.analyzer.analyze(messages)
            if analysis.scene_detected and analysis.description:
                content = analysis.description
            else:
                content = await self.summarizer.summarize(messages)
            title = title or analysis.title or "Game scene"
            metadata["key_events"] = analysis.key_events
            metadata["participants"] = analysis.participants
        elif summary_type == SummaryType.SESSION:
            content = await self.summarizer.summarize(messages)
            title = title or f"Session summary ({len(messages)} messages)"
        else:
            content = await self.summarizer.summarize(messages)
            title = title or f"Summary of {len(messages)} messages"

        summary = Summary(
            session_id=session_id,
            type=summary_type,
            title=title,
            content=content,
            message_ids=[m.id for m in messages],
            token_count=self.token_counter.count(content),
            metadata=metadata,
        )
        await self.store.record_summary(summary)

        elapsed_ms = (time.perf_counter() - start_time) * 1000
        logger.info(
            f"Summary created: {summary.title} ({summary.token_count} tokens, "
            f"{elapsed_ms:.1f}ms)"
        )
        return summary

    # -- scenes -------------------------------------------------------------

    async def detect_scenes(
        self, session_id: str, messages: Sequence[Message] | None = None
    ) -> list[AutoScene]:
        """Detect scenes in a session. Failures are logged and yield no scenes."""
        try:
            if messages is None:
                messages = await self.store.get_messages(session_id, self.history_limit)
            scenes = self.scene_detector.detect(session_id, messages)
        except Exception as e:
            logger.error(f"Scene detection failed for session {session_id}: {e}")
            return []

        self._scene_counts[session_id] = len(scenes)
        return scenes

    # -- status -------------------------------------------------------------

    async def get_compression_stats(self, session_id: str) -> CompressionStats:
        start_time = time.perf_counter()
        messages = await self.store.get_messages(session_id, self.history_limit)
        summaries = await self.store.get_summaries(session_id)

        compressed = [m for m in messages if m.compressed]
        original_tokens = self.token_counter.count_messages(messages)
        compressed_tokens = self.token_counter.count_messages(compressed)

        return CompressionStats(
            total_summaries=len(summaries),
            messages_summarized=len(compressed),
            original_token_count=original_tokens,
            compressed_token_count=compressed_tokens,
            compression_ratio=(
                compressed_tokens / original_tokens if original_tokens > 0 else 0.0
            ),
            scenes_detected=self._scene_counts.get(session_id, 0),
            processing_time_ms=(time.perf_counter() - start_time) * 1000,
        )

    def get_processing_status(self) -> dict[str, Any]:
        with self._lock:
            active = sorted(self._in_flight)
        return {
            "active_sessions": active,
            "queue_size": len(active),
            "pending_tasks": len(self._tasks),
        }

    async def wait_idle(self) -> None:
        """Wait until every background task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self) -> int:
        tasks = [task for task in self._tasks if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Cancelled {len(tasks)} background compaction tasks")
        return len(tasks)
