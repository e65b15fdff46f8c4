"""
Narrator Memory - context memory engine for LLM-narrated tabletop sessions

Turns an unbounded session transcript plus extracted game entities into a
bounded, prioritized, cached context payload, while background compaction
keeps the live transcript from growing without limit.
"""

from .allocator import AllocationResult, BudgetAllocator
from .cache import ContextCache
from .config import ContextOptions, MemoryConfig, load_memory_config
from .exceptions import (
    ContextBuildTimeoutError,
    InsufficientMessagesError,
    InvalidContextOptionsError,
    MemoryEngineError,
    NoOpenSessionError,
    RecordNotFoundError,
)
from .extraction import EntityExtractor, RegexEntityExtractor
from .memory_service import MemoryService, MemoryServiceInterface
from .models import (
    AutoScene,
    Entity,
    EntityStats,
    EntityType,
    Fact,
    Message,
    MessageRole,
    OptimizedContext,
    PrioritizedEntity,
    PrioritizedMessage,
    Room,
    Session,
    Summary,
    SummaryType,
)
from .scene_detection import KeywordSceneAnalyzer, SceneAnalyzer, SceneDetector
from .scoring import PriorityScorer
from .storage import RecordStore, SQLiteRecordStore
from .summarization import RuleBasedSummarizer, SummarizationScheduler, Summarizer
from .token_counter import TokenCounter

__all__ = [
    "AllocationResult",
    "BudgetAllocator",
    "ContextCache",
    "ContextOptions",
    "MemoryConfig",
    "load_memory_config",
    "ContextBuildTimeoutError",
    "InsufficientMessagesError",
    "InvalidContextOptionsError",
    "MemoryEngineError",
    "NoOpenSessionError",
    "RecordNotFoundError",
    "EntityExtractor",
    "RegexEntityExtractor",
    "MemoryService",
    "MemoryServiceInterface",
    "AutoScene",
    "Entity",
    "EntityStats",
    "EntityType",
    "Fact",
    "Message",
    "MessageRole",
    "OptimizedContext",
    "PrioritizedEntity",
    "PrioritizedMessage",
    "Room",
    "Session",
    "Summary",
    "SummaryType",
    "KeywordSceneAnalyzer",
    "SceneAnalyzer",
    "SceneDetector",
    "PriorityScorer",
    "RecordStore",
    "SQLiteRecordStore",
    "RuleBasedSummarizer",
    "SummarizationScheduler",
    "Summarizer",
    "TokenCounter",
]
