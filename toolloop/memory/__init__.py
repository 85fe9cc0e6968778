"""Token counting and context compaction."""

from __future__ import annotations

from toolloop.memory.compactor import MemoryCompactor, create_strategy
from toolloop.memory.strategies import (
    CompactionOptions,
    CompactionResult,
    CompactionStrategy,
    HierarchicalStrategy,
    ImportanceStrategy,
    SemanticCompressionStrategy,
    SlidingWindowStrategy,
    score_importance,
)
from toolloop.memory.tokenizer import HeuristicTokenCounter, TiktokenCounter, truncate_to_tokens

__all__ = [
    "CompactionOptions",
    "CompactionResult",
    "CompactionStrategy",
    "HeuristicTokenCounter",
    "HierarchicalStrategy",
    "ImportanceStrategy",
    "MemoryCompactor",
    "SemanticCompressionStrategy",
    "SlidingWindowStrategy",
    "TiktokenCounter",
    "create_strategy",
    "score_importance",
    "truncate_to_tokens",
]
