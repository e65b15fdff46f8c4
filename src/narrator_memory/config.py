"""Configuration models for the narrator context memory engine."""

from __future__ import annotations

import os
import re
from typing import Any

import chardet
import yaml
from loguru import logger
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .exceptions import InvalidContextOptionsError
from .models import EntityType

DEFAULT_KEYWORDS: tuple[str, ...] = (
    "attack",
    "spell",
    "roll",
    "damage",
    "initiative",
    "check",
    "saving throw",
    "critical",
    "miss",
    "hit",
    "heal",
    "magic",
    "caster",
    "fighter",
    "rogue",
    "cleric",
    "wizard",
    "dragon",
    "dungeon",
    "treasure",
    "quest",
    "adventure",
    "combat",
    "battle",
    "monster",
    "npc",
    "character",
    "level",
)

DEFAULT_TRANSITION_PHRASES: tuple[str, ...] = (
    "meanwhile",
    "next scene",
    "later that",
    "the next morning",
    "some time later",
    "hours later",
    "scene change",
)


class StorageConfig(BaseModel):
    """Storage paths configuration."""

    sqlite_db_path: str = "./memory/narrator.db"

    @model_validator(mode="after")
    def _validate_paths(self) -> "StorageConfig":
        if self.sqlite_db_path == ":memory:":
            return self
        normalized = os.path.normpath(self.sqlite_db_path)
        parts = normalized.replace("\\", "/").split("/")
        if ".." in parts:
            raise ValueError(
                f"sqlite_db_path must not contain '..' components: "
                f"{self.sqlite_db_path!r}"
            )
        self.sqlite_db_path = normalized
        return self


class ContextConfig(BaseModel):
    """Context build and cache configuration."""

    max_tokens: int = Field(default=150_000, gt=0)
    max_messages: int = Field(default=100, ge=0)
    priority_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    message_budget_ratio: float = Field(default=0.8, gt=0.0, le=1.0)
    cache_ttl_seconds: float = Field(default=300.0, gt=0.0)
    cache_max_entries: int = Field(default=256, gt=0)
    history_limit: int = Field(default=1000, gt=0)
    max_fact_entities: int = Field(default=10, ge=0)
    build_timeout_seconds: float = Field(default=30.0, gt=0.0)


class ScoringConfig(BaseModel):
    """Weights for message and entity priority scoring."""

    time_decay_per_hour: float = Field(default=0.1, ge=0.0)
    user_message_boost: float = Field(default=1.2, gt=0.0)
    keyword_step: float = Field(default=0.1, ge=0.0)
    entity_mention_step: float = Field(default=0.2, ge=0.0)
    recent_boost: float = Field(default=2.0, gt=0.0)
    recent_window: int = Field(default=10, ge=0)
    score_normalizer: float = Field(default=5.0, gt=0.0)
    # None keeps the multiplicative weights unbounded before the final clamp
    keyword_weight_cap: float | None = Field(default=None, ge=1.0)
    entity_weight_cap: float | None = Field(default=None, ge=1.0)
    keywords: list[str] = Field(default_factory=lambda: list(DEFAULT_KEYWORDS))

    entity_frequency_factor: float = Field(default=0.4, ge=0.0)
    entity_recency_factor: float = Field(default=0.3, ge=0.0)
    entity_connection_factor: float = Field(default=0.3, ge=0.0)
    entity_decay_per_hour: float = Field(default=0.05, ge=0.0)
    fact_saturation: int = Field(default=10, gt=0)

    @model_validator(mode="after")
    def _validate_entity_factors(self) -> "ScoringConfig":
        total = (
            self.entity_frequency_factor
            + self.entity_recency_factor
            + self.entity_connection_factor
        )
        if abs(total - 1.0) > 0.01:
            raise ValueError(f"entity factors must sum to 1.0, got {total:.3f}")
        return self


class SceneDetectionConfig(BaseModel):
    """Heuristic scene segmentation configuration."""

    enabled: bool = True
    gap_minutes: float = Field(default=30.0, gt=0.0)
    max_group_size: int = Field(default=20, gt=0)
    min_group_size: int = Field(default=5, gt=0)
    confidence_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    transition_phrases: list[str] = Field(
        default_factory=lambda: list(DEFAULT_TRANSITION_PHRASES)
    )


class SummarizationConfig(BaseModel):
    """Background compaction configuration."""

    enabled: bool = True
    summary_trigger_threshold: int = Field(default=100, gt=0)
    min_messages_for_summary: int = Field(default=10, gt=0)
    keep_recent: int = Field(default=20, ge=0)


class ExtractionConfig(BaseModel):
    """Entity extraction configuration."""

    enabled: bool = True
    fact_confidence: float = Field(default=0.7, ge=0.0, le=1.0)


class MemoryConfig(BaseModel):
    """Top-level engine configuration."""

    storage: StorageConfig = Field(default_factory=StorageConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    summarization: SummarizationConfig = Field(default_factory=SummarizationConfig)
    scene_detection: SceneDetectionConfig = Field(
        default_factory=SceneDetectionConfig
    )
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)


class ContextOptions(BaseModel):
    """Per-call overrides for a context build.

    Unset fields fall back to :class:`ContextConfig`. The JSON form of a
    validated instance is the options part of the cache key.
    """

    model_config = {"extra": "forbid", "frozen": True}

    max_tokens: int | None = Field(default=None, gt=0)
    max_messages: int | None = Field(default=None, ge=0)
    priority_threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    include_entities: bool = True
    include_facts: bool = True
    entity_types: tuple[EntityType, ...] | None = None

    @field_validator("entity_types")
    @classmethod
    def _sort_entity_types(
        cls, value: tuple[EntityType, ...] | None
    ) -> tuple[EntityType, ...] | None:
        if value is None:
            return None
        return tuple(sorted(set(value), key=lambda t: t.value))

    @classmethod
    def parse(cls, options: "ContextOptions | dict[str, Any] | None") -> "ContextOptions":
        """Coerce caller input into options, raising a caller error if malformed."""
        if options is None:
            return cls()
        if isinstance(options, cls):
            return options
        try:
            return cls.model_validate(options)
        except ValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(loc) for loc in first["loc"]) or "options"
            raise InvalidContextOptionsError(field, first["msg"]) from e

    def cache_fragment(self) -> str:
        return self.model_dump_json()

    def resolve_max_tokens(self, config: ContextConfig) -> int:
        return self.max_tokens if self.max_tokens is not None else config.max_tokens

    def resolve_max_messages(self, config: ContextConfig) -> int:
        return (
            self.max_messages if self.max_messages is not None else config.max_messages
        )

    def resolve_priority_threshold(self, config: ContextConfig) -> float:
        return (
            self.priority_threshold
            if self.priority_threshold is not None
            else config.priority_threshold
        )


def load_text_file_with_guess_encoding(file_path: str) -> str | None:
    """Load a text file, trying common encodings before asking chardet."""
    for encoding in ("utf-8", "utf-8-sig", "cp1251", "ascii"):
        try:
            with open(file_path, "r", encoding=encoding) as file:
                return file.read()
        except UnicodeDecodeError:
            continue
    try:
        with open(file_path, "rb") as file:
            raw_data = file.read()
        detected = chardet.detect(raw_data)
        if detected["encoding"]:
            return raw_data.decode(detected["encoding"])
    except (OSError, UnicodeDecodeError, LookupError) as e:
        logger.error(f"Error detecting encoding for config file {file_path}: {e}")
    return None


def read_yaml(config_path: str) -> dict[str, Any]:
    """Read a YAML file, substituting ``${ENV_VAR}`` references.

    Raises:
        FileNotFoundError: If the file does not exist.
        IOError: If the file cannot be decoded.
    """
    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    content = load_text_file_with_guess_encoding(config_path)
    if content is None:
        raise IOError(f"Failed to read configuration file: {config_path}")

    pattern = re.compile(r"\$\{(\w+)\}")

    def replacer(match: re.Match[str]) -> str:
        return os.getenv(match.group(1), match.group(0))

    content = pattern.sub(replacer, content)

    try:
        return yaml.safe_load(content) or {}
    except yaml.YAMLError as e:
        logger.critical(f"Error parsing YAML file: {e}")
        raise


def load_memory_config(config_path: str, section: str | None = "memory") -> MemoryConfig:
    """Load :class:`MemoryConfig` from YAML.

    If ``section`` is present at the top level of the file, only that
    mapping is used; otherwise the whole document is treated as the config.
    """
    data = read_yaml(config_path)
    if section and isinstance(data.get(section), dict):
        data = data[section]
    try:
        return MemoryConfig.model_validate(data)
    except ValidationError as e:
        for err in e.errors():
            location = " -> ".join(str(loc) for loc in err["loc"])
            logger.critical(f"Invalid memory config at '{location}': {err['msg']}")
        raise
