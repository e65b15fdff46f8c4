"""Heuristic scene segmentation of a session transcript.

Messages are split into candidate groups on long pauses, explicit
transition phrases, or a size ceiling. Each large enough group goes to a
:class:`SceneAnalyzer`; a group becomes an :class:`AutoScene` only when the
analyzer reports at least one key event with enough confidence.

The default analyzer is a keyword heuristic, not a classifier. It is
tuned to miss scenes rather than report confident false ones.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import timedelta
from typing import Protocol, runtime_checkable

from loguru import logger

from .config import SceneDetectionConfig
from .models import AutoScene, Message, SceneAnalysis


@runtime_checkable
class SceneAnalyzer(Protocol):
    """Decides whether a group of messages forms a scene."""

    def analyze(self, messages: Sequence[Message]) -> SceneAnalysis:
        ...


# (event label, trigger substrings)
DEFAULT_EVENT_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("Combat encounter", ("attack", "battle", "fight", "initiative")),
    ("Dialogue with NPC", ("talk", "says", "asks", "conversation", "dialogue")),
    ("Exploration", ("explore", "search", "investigate", "examine")),
    ("Reward obtained", ("treasure", "reward", "loot", "gold")),
    ("Spellcasting", ("spell", "cast", "magic")),
)


class KeywordSceneAnalyzer:
    """Rule-based analyzer.

    ``confidence = min(0.9, 0.3 * events + 0.2 * participants + 0.3)``, so
    a single event needs at least one named participant to clear the
    default 0.7 threshold.
    """

    def __init__(
        self,
        event_keywords: Sequence[tuple[str, Sequence[str]]] = DEFAULT_EVENT_KEYWORDS,
        min_group_size: int = 5,
    ):
        self.event_keywords = event_keywords
        self.min_group_size = min_group_size

    def analyze(self, messages: Sequence[Message]) -> SceneAnalysis:
        participants = list(
            dict.fromkeys(m.player_name for m in messages if m.player_name)
        )
        content = " ".join(m.content.lower() for m in messages)

        key_events = [
            label
            for label, triggers in self.event_keywords
            if any(trigger in content for trigger in triggers)
        ]

        confidence = min(0.9, len(key_events) * 0.3 + len(participants) * 0.2 + 0.3)
        detected = len(messages) >= self.min_group_size and bool(key_events)
        description = (
            f"Scene with {', '.join(participants)}" if participants else "Scene"
        )

        return SceneAnalysis(
            scene_detected=detected,
            title=key_events[0] if key_events else None,
            description=description,
            key_events=key_events,
            participants=participants,
            confidence=confidence,
        )


class SceneDetector:
    """Groups messages into candidate scenes and promotes confident ones."""

    def __init__(
        self,
        config: SceneDetectionConfig | None = None,
        analyzer: SceneAnalyzer | None = None,
    ):
        self.config = config or SceneDetectionConfig()
        self.analyzer = analyzer or KeywordSceneAnalyzer(
            min_group_size=self.config.min_group_size
        )
        self._phrases = [p.lower() for p in self.config.transition_phrases]

    def is_transition(self, message: Message) -> bool:
        lowered = message.content.lower()
        return any(phrase in lowered for phrase in self._phrases)

    def group_messages(self, messages: Sequence[Message]) -> list[list[Message]]:
        """Split chronological messages into candidate scene groups.

        A group closes after the current message when the gap to the next
        one exceeds ``gap_minutes``, the current message contains a
        transition phrase, or the group has reached ``max_group_size``.
        """
        gap = timedelta(minutes=self.config.gap_minutes)
        groups: list[list[Message]] = []
        current: list[Message] = []

        for i, message in enumerate(messages):
            current.append(message)
            if i + 1 >= len(messages):
                break
            next_message = messages[i + 1]
            if (
                next_message.timestamp - message.timestamp > gap
                or self.is_transition(message)
                or len(current) >= self.config.max_group_size
            ):
                groups.append(current)
                current = []

        if current:
            groups.append(current)
        return groups

    def detect(self, session_id: str, messages: Sequence[Message]) -> list[AutoScene]:
        """Return scenes found in ``messages`` (chronological order)."""
        if not self.config.enabled:
            return []

        scenes = []
        for group in self.group_messages(messages):
            if len(group) < self.config.min_group_size:
                continue

            analysis = self.analyzer.analyze(group)
            if not (
                analysis.scene_detected
                and analysis.key_events
                and analysis.confidence > self.config.confidence_threshold
            ):
                continue

            scenes.append(
                AutoScene(
                    session_id=session_id,
                    title=analysis.title or "Untitled scene",
                    description=analysis.description,
                    start_message_id=group[0].id,
                    end_message_id=group[-1].id,
                    message_count=len(group),
                    participants=analysis.participants,
                    key_events=analysis.key_events,
                    entities_mentioned=analysis.entities_mentioned,
                    confidence=analysis.confidence,
                )
            )

        logger.info(f"Detected {len(scenes)} scenes in session {session_id}")
        return scenes
