"""Token estimation for budget management.

Tokens are estimated at ~4 characters each, rounded up. No tokenizer is
involved; the estimate only has to be stable and language-agnostic.
"""

from __future__ import annotations

import json
import math

from .models import Entity, Fact, Message

CHARS_PER_TOKEN = 4


class TokenCounter:
    """Estimates token cost of transcript records."""

    def __init__(self, chars_per_token: int = CHARS_PER_TOKEN):
        self.chars_per_token = chars_per_token

    def count(self, text: str | None) -> int:
        """Estimate tokens in a text string (0 for empty or missing text)."""
        if not text:
            return 0
        return math.ceil(len(text) / self.chars_per_token)

    def count_message(self, message: Message) -> int:
        """Use the stored token count when present, else estimate from content."""
        if message.token_count is not None:
            return message.token_count
        return self.count(message.content)

    def count_entity(self, entity: Entity) -> int:
        return (
            self.count(entity.name)
            + self.count(entity.description)
            + self.count(json.dumps(entity.data, ensure_ascii=False, sort_keys=True))
        )

    def count_fact(self, fact: Fact) -> int:
        return self.count(fact.key + fact.value)

    def count_messages(self, messages: list[Message]) -> int:
        return sum(self.count_message(m) for m in messages)

    def count_entities(self, entities: list[Entity]) -> int:
        return sum(self.count_entity(e) for e in entities)
