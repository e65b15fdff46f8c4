"""Priority scoring for transcript messages and game entities.

Scores are pure functions of the record, the evaluation time and the
surrounding history. They never look at the token budget, so ranking and
selection can be tested separately.
"""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from datetime import datetime, timezone

from loguru import logger

from .config import ScoringConfig
from .models import (
    Entity,
    EntityRelevance,
    Message,
    MessageRelevance,
    MessageRole,
    PrioritizedEntity,
    PrioritizedMessage,
)


def _hours_between(later: datetime, earlier: datetime) -> float:
    """Elapsed hours, clamped at zero so future timestamps count as "now"."""
    return max(0.0, (later - earlier).total_seconds() / 3600.0)


def _clamp_unit(value: float) -> float:
    return max(0.0, min(1.0, value))


class PriorityScorer:
    """Assigns [0, 1] relevance scores to messages and entities.

    Message score::

        min(1, time * participant * keyword * entity * recency / normalizer)

    Entity score::

        0.4 * frequency + 0.3 * recency + 0.3 * connection
    """

    def __init__(self, config: ScoringConfig | None = None):
        self.config = config or ScoringConfig()
        self._keywords = [k.lower() for k in self.config.keywords if k.strip()]

    # -- messages -----------------------------------------------------------

    def count_keyword_hits(self, text: str) -> int:
        lowered = text.lower()
        return sum(1 for keyword in self._keywords if keyword in lowered)

    @staticmethod
    def count_entity_hits(text: str, entity_names: Sequence[str]) -> int:
        lowered = text.lower()
        return sum(1 for name in entity_names if name and name.lower() in lowered)

    def message_relevance(
        self,
        message: Message,
        now: datetime,
        *,
        entity_names: Sequence[str] = (),
        is_recent: bool = False,
    ) -> MessageRelevance:
        cfg = self.config
        hours = _hours_between(now, message.timestamp)
        time_weight = math.exp(-cfg.time_decay_per_hour * hours)

        participant_weight = (
            cfg.user_message_boost if message.role == MessageRole.USER else 1.0
        )

        keyword_weight = 1.0 + cfg.keyword_step * self.count_keyword_hits(
            message.content
        )
        if cfg.keyword_weight_cap is not None:
            keyword_weight = min(keyword_weight, cfg.keyword_weight_cap)

        entity_weight = 1.0 + cfg.entity_mention_step * self.count_entity_hits(
            message.content, entity_names
        )
        if cfg.entity_weight_cap is not None:
            entity_weight = min(entity_weight, cfg.entity_weight_cap)

        return MessageRelevance(
            time_weight=time_weight,
            participant_weight=participant_weight,
            keyword_weight=keyword_weight,
            entity_weight=entity_weight,
            recency_boost=cfg.recent_boost if is_recent else 1.0,
        )

    def combine_message_weights(self, relevance: MessageRelevance) -> float:
        product = (
            relevance.time_weight
            * relevance.participant_weight
            * relevance.keyword_weight
            * relevance.entity_weight
            * relevance.recency_boost
        )
        return _clamp_unit(product / self.config.score_normalizer)

    def score_message(
        self,
        message: Message,
        now: datetime,
        *,
        entity_names: Sequence[str] = (),
        is_recent: bool = False,
    ) -> float:
        relevance = self.message_relevance(
            message, now, entity_names=entity_names, is_recent=is_recent
        )
        return self.combine_message_weights(relevance)

    def prioritize_messages(
        self,
        messages: Sequence[Message],
        entities: Sequence[Entity] = (),
        now: datetime | None = None,
    ) -> list[PrioritizedMessage]:
        """Score messages (given in arrival order) and sort best-first.

        The last ``recent_window`` messages by position get the recency
        boost regardless of their timestamps. Python's sort is stable, so
        ties keep arrival order.
        """
        now = now or datetime.now(timezone.utc)
        entity_names = [e.name.lower() for e in entities if e.name]
        recent_start = len(messages) - self.config.recent_window

        prioritized = []
        for index, message in enumerate(messages):
            relevance = self.message_relevance(
                message,
                now,
                entity_names=entity_names,
                is_recent=index >= recent_start,
            )
            prioritized.append(
                PrioritizedMessage(
                    **message.model_dump(),
                    priority_score=self.combine_message_weights(relevance),
                    relevance_factors=relevance,
                )
            )

        prioritized.sort(key=lambda m: m.priority_score, reverse=True)
        return prioritized

    # -- entities -----------------------------------------------------------

    @staticmethod
    def mention_stats(
        entity: Entity, messages: Sequence[Message]
    ) -> tuple[int, datetime]:
        """Count case-insensitive name mentions and find the latest one.

        An entity that was never mentioned falls back to its creation time.
        """
        name = entity.name.lower()
        mentions = [m for m in messages if name and name in m.content.lower()]
        if not mentions:
            return 0, entity.created_at
        return len(mentions), max(m.timestamp for m in mentions)

    def entity_relevance(
        self,
        *,
        mention_count: int,
        max_mentions: int,
        last_mentioned: datetime,
        fact_count: int,
        now: datetime,
    ) -> EntityRelevance:
        cfg = self.config
        frequency_weight = mention_count / max_mentions if max_mentions > 0 else 0.0
        recency_weight = math.exp(
            -cfg.entity_decay_per_hour * _hours_between(now, last_mentioned)
        )
        connection_weight = min(1.0, fact_count / cfg.fact_saturation)
        return EntityRelevance(
            frequency_weight=frequency_weight,
            recency_weight=recency_weight,
            connection_weight=connection_weight,
        )

    def combine_entity_weights(self, relevance: EntityRelevance) -> float:
        cfg = self.config
        return _clamp_unit(
            cfg.entity_frequency_factor * relevance.frequency_weight
            + cfg.entity_recency_factor * relevance.recency_weight
            + cfg.entity_connection_factor * relevance.connection_weight
        )

    def prioritize_entities(
        self,
        entities: Sequence[Entity],
        messages: Sequence[Message],
        fact_counts: Mapping[str, int] | None = None,
        now: datetime | None = None,
    ) -> list[PrioritizedEntity]:
        """Score entities against the transcript and sort best-first."""
        now = now or datetime.now(timezone.utc)
        fact_counts = fact_counts or {}

        stats = [self.mention_stats(entity, messages) for entity in entities]
        max_mentions = max((count for count, _ in stats), default=0)

        prioritized = []
        for entity, (mention_count, last_mentioned) in zip(entities, stats):
            relevance = self.entity_relevance(
                mention_count=mention_count,
                max_mentions=max_mentions,
                last_mentioned=last_mentioned,
                fact_count=fact_counts.get(entity.id, 0),
                now=now,
            )
            prioritized.append(
                PrioritizedEntity(
                    **entity.model_dump(),
                    priority_score=self.combine_entity_weights(relevance),
                    mention_count=mention_count,
                    last_mentioned=last_mentioned,
                    relevance_factors=relevance,
                )
            )

        prioritized.sort(key=lambda e: e.priority_score, reverse=True)
        logger.debug(
            f"Prioritized {len(prioritized)} entities (max mentions={max_mentions})"
        )
        return prioritized
