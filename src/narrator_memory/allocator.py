"""Token-budgeted selection of prioritized messages, entities and facts.

Selection is greedy in priority order rather than a knapsack solved for
value per token. The priority score already encodes value, and a single
sorted pass is deterministic and linear. The cost is that one expensive
high-priority message can end message selection while cheaper,
lower-priority messages would still have fit.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from loguru import logger

from .models import Entity, Fact, Message, PrioritizedEntity, PrioritizedMessage
from .token_counter import TokenCounter


@dataclass
class AllocationResult:
    """Output of one allocation pass."""

    messages: list[PrioritizedMessage] = field(default_factory=list)
    entities: list[PrioritizedEntity] = field(default_factory=list)
    facts: list[Fact] = field(default_factory=list)
    total_tokens: int = 0
    available_tokens: int = 0
    messages_excluded: int = 0
    entities_excluded: int = 0

    @property
    def compression_ratio(self) -> float:
        # 0/0 is defined as 0
        if self.available_tokens <= 0:
            return 0.0
        return self.total_tokens / self.available_tokens


class BudgetAllocator:
    """Greedy selector that never exceeds the token budget.

    1. Messages, best-first, within ``message_budget_ratio`` of the budget
       and the message count cap.
    2. Entities, best-first, within whatever budget the messages left.
    3. Facts of the selected entities, within what is still left.

    A score below ``priority_threshold`` ends a pass: the input is sorted
    descending, so nothing after it can qualify.
    """

    def __init__(
        self,
        token_counter: TokenCounter | None = None,
        message_budget_ratio: float = 0.8,
        max_fact_entities: int = 10,
    ):
        self.token_counter = token_counter or TokenCounter()
        self.message_budget_ratio = message_budget_ratio
        self.max_fact_entities = max_fact_entities

    def available_tokens(
        self,
        messages: Sequence[Message],
        entities: Sequence[Entity],
        facts: Sequence[Fact] = (),
    ) -> int:
        counter = self.token_counter
        return (
            counter.count_messages(list(messages))
            + counter.count_entities(list(entities))
            + sum(counter.count_fact(f) for f in facts)
        )

    def allocate(
        self,
        messages: Sequence[PrioritizedMessage],
        entities: Sequence[PrioritizedEntity],
        *,
        max_tokens: int,
        max_messages: int,
        priority_threshold: float,
        facts_by_entity: Mapping[str, Sequence[Fact]] | None = None,
    ) -> AllocationResult:
        """Select a token-bounded subset of the prioritized inputs.

        Args:
            messages: Scored messages, sorted best-first
            entities: Scored entities, sorted best-first
            max_tokens: Hard ceiling on ``total_tokens``
            max_messages: Maximum number of messages to include
            priority_threshold: Minimum score for any message or entity
            facts_by_entity: Facts keyed by entity id. Facts of selected
                entities are added while they fit; ``None`` skips facts.

        Returns:
            AllocationResult whose ``total_tokens`` is at most ``max_tokens``
        """
        result = AllocationResult()
        all_facts = [f for fs in (facts_by_entity or {}).values() for f in fs]
        result.available_tokens = self.available_tokens(messages, entities, all_facts)

        message_budget = int(max_tokens * self.message_budget_ratio)
        tokens = 0
        for message in messages:
            if len(result.messages) >= max_messages:
                break
            if message.priority_score < priority_threshold:
                break
            cost = self.token_counter.count_message(message)
            if tokens + cost > message_budget:
                break
            result.messages.append(message)
            tokens += cost

        for entity in entities:
            if entity.priority_score < priority_threshold:
                break
            cost = self.token_counter.count_entity(entity)
            if tokens + cost > max_tokens:
                break
            result.entities.append(entity)
            tokens += cost

        if facts_by_entity:
            tokens = self._allocate_facts(result, facts_by_entity, tokens, max_tokens)

        result.total_tokens = tokens
        result.messages_excluded = len(messages) - len(result.messages)
        result.entities_excluded = len(entities) - len(result.entities)

        logger.debug(
            f"Allocated {len(result.messages)} messages, {len(result.entities)} "
            f"entities, {len(result.facts)} facts: {tokens}/{max_tokens} tokens"
        )
        return result

    def _allocate_facts(
        self,
        result: AllocationResult,
        facts_by_entity: Mapping[str, Sequence[Fact]],
        tokens: int,
        max_tokens: int,
    ) -> int:
        for entity in result.entities[: self.max_fact_entities]:
            for fact in facts_by_entity.get(entity.id, ()):
                cost = self.token_counter.count_fact(fact)
                if tokens + cost > max_tokens:
                    return tokens
                result.facts.append(fact)
                tokens += cost
        return tokens
