"""Entity extraction from transcript text.

Extraction is a heuristic sitting behind the :class:`EntityExtractor`
protocol, so scoring and allocation never depend on its accuracy. The
default :class:`RegexEntityExtractor` recognises a handful of English
tabletop phrasings and makes no attempt at completeness.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from .models import EntityType, ExtractedEntity


@runtime_checkable
class EntityExtractor(Protocol):
    """Turns free text into entity candidates."""

    def extract(self, text: str) -> list[ExtractedEntity]:
        ...


@dataclass(frozen=True, slots=True)
class _PatternEntry:
    """A single compiled extraction pattern with metadata."""

    pattern: re.Pattern[str]
    entity_type: EntityType
    name_group: int
    attribute_key: str | None = None
    attribute_group: int | None = None
    description: str = "{name}"


_NAME = r"([A-Z][a-z]+(?:\s+[A-Z][a-z]+)?)"
_RACES = r"(elf|human|dwarf|halfling|dragonborn|tiefling|gnome|half-orc|half-elf)"
_CLASSES = (
    r"(fighter|wizard|ranger|rogue|cleric|barbarian|bard|sorcerer|warlock|"
    r"paladin|druid|monk)"
)
_PLACES = r"(tavern|inn|forest|city|town|castle|tower|cave|temple|keep|village)"
_NPC_ROLES = (
    r"(innkeeper|merchant|guard|blacksmith|priest|bartender|captain|"
    r"sage|mayor|hermit)"
)
_ITEMS = (
    r"(sword|shield|bow|arrow|potion|scroll|ring|amulet|staff|wand|armor|"
    r"helm|boots|cloak|dagger|axe|hammer)"
)
_ITEM_ADJECTIVES = r"(magic|enchanted|ancient|golden|silver|cursed|flaming)"


def _build_patterns() -> tuple[_PatternEntry, ...]:
    flags = re.IGNORECASE
    return (
        # "My name is Alara", "I am Alara"
        _PatternEntry(
            re.compile(rf"\b(?i:my name is|i am|i'm)\s+{_NAME}"),
            EntityType.CHARACTER,
            name_group=1,
            description="Character {name}",
        ),
        # "Alara the elf", "Alara, a wizard"
        _PatternEntry(
            re.compile(rf"{_NAME},?\s+(?:the|a|an)\s+(?i:{_RACES})\b"),
            EntityType.CHARACTER,
            name_group=1,
            attribute_key="race",
            attribute_group=2,
            description="Character {name}",
        ),
        _PatternEntry(
            re.compile(rf"{_NAME},?\s+(?:the|a|an)\s+(?i:{_CLASSES})\b"),
            EntityType.CHARACTER,
            name_group=1,
            attribute_key="class",
            attribute_group=2,
            description="Character {name}",
        ),
        # "the tavern called the Golden Dragon", "a cave named Hollowdeep"
        _PatternEntry(
            re.compile(
                rf"(?i:{_PLACES})\s+(?i:called|named)\s+(?i:the\s+)?{_NAME}"
            ),
            EntityType.LOCATION,
            name_group=2,
            attribute_key="kind",
            attribute_group=1,
            description="Location: {name}",
        ),
        # "the innkeeper Boris"
        _PatternEntry(
            re.compile(rf"(?i:the\s+{_NPC_ROLES})\s+{_NAME}"),
            EntityType.NPC,
            name_group=2,
            attribute_key="role",
            attribute_group=1,
            description="{attribute}: {name}",
        ),
        # "an enchanted sword"
        _PatternEntry(
            re.compile(rf"\b{_ITEM_ADJECTIVES}\s+{_ITEMS}s?\b", flags),
            EntityType.ITEM,
            name_group=0,
            description="Item: {name}",
        ),
        # "quest to recover the Crown"
        _PatternEntry(
            re.compile(rf"(?i:quest to)\s+([a-z]+\s+the\s+{_NAME})"),
            EntityType.QUEST,
            name_group=1,
            description="Quest: {name}",
        ),
    )


class RegexEntityExtractor:
    """Pattern-based extractor for the hot path. Pure and synchronous."""

    def __init__(self) -> None:
        self._patterns = _build_patterns()

    def extract(self, text: str) -> list[ExtractedEntity]:
        """Extract entity candidates, de-duplicated by (type, name)."""
        if not text or not text.strip():
            return []

        found: dict[tuple[EntityType, str], ExtractedEntity] = {}
        for entry in self._patterns:
            for match in entry.pattern.finditer(text):
                name = match.group(entry.name_group).strip()
                if len(name) < 2:
                    continue
                if entry.entity_type == EntityType.ITEM:
                    name = name.lower()

                attribute = None
                if entry.attribute_group is not None:
                    attribute = match.group(entry.attribute_group).lower()

                key = (entry.entity_type, name.lower())
                candidate = found.get(key)
                if candidate is None:
                    candidate = ExtractedEntity(
                        type=entry.entity_type,
                        name=name,
                        description=entry.description.format(
                            name=name, attribute=(attribute or "").title()
                        ),
                    )
                    found[key] = candidate
                if entry.attribute_key and attribute:
                    candidate.attributes.setdefault(entry.attribute_key, attribute)

        return list(found.values())
