"""MemoryCompactor: picks a strategy and applies it to the request view."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from toolloop.cancellation import CancellationToken
from toolloop.config import CompactionConfig, CompactionStrategyName
from toolloop.errors import ConfigurationError
from toolloop.memory.strategies import (
    CompactionOptions,
    CompactionResult,
    CompactionStrategy,
    HierarchicalStrategy,
    ImportanceScorer,
    ImportanceStrategy,
    SemanticCompressionStrategy,
    SlidingWindowStrategy,
    SummaryGenerator,
)
from toolloop.memory.tokenizer import TokenCounter, create_token_counter
from toolloop.telemetry import Telemetry, ensure_safe
from toolloop.types import Message

logger = logging.getLogger(__name__)


def create_strategy(
    name: CompactionStrategyName | str,
    generator: SummaryGenerator | None = None,
    scorer: ImportanceScorer | None = None,
    counter: TokenCounter | None = None,
) -> CompactionStrategy:
    """Build a strategy by name.

    ``semantic_compression`` and ``hierarchical`` need a generator;
    asking for them without one raises ``ConfigurationError``.
    """
    try:
        name = CompactionStrategyName(name)
    except ValueError as e:
        raise ConfigurationError(f"Unknown compaction strategy: {name}") from e

    if name == CompactionStrategyName.SLIDING_WINDOW:
        return SlidingWindowStrategy(generator, counter)
    if name == CompactionStrategyName.IMPORTANCE_BASED:
        return ImportanceStrategy(scorer, counter)
    if generator is None:
        raise ConfigurationError(f"Compaction strategy '{name}' needs a summary generator")
    if name == CompactionStrategyName.SEMANTIC_COMPRESSION:
        return SemanticCompressionStrategy(generator, counter)
    return HierarchicalStrategy(generator, counter)


class MemoryCompactor:
    """Keeps the context sent to the backend within the token budget.

    Example::

        compactor = MemoryCompactor(SlidingWindowStrategy(), CompactionOptions(max_tokens=4000))
        result = await compactor.compact(history)
        request_messages = result.messages
    """

    def __init__(
        self,
        strategy: CompactionStrategy | None = None,
        options: CompactionOptions | None = None,
        telemetry: Telemetry | None = None,
    ) -> None:
        self.strategy = strategy or SlidingWindowStrategy()
        self.options = options or CompactionOptions()
        self.telemetry = ensure_safe(telemetry)

    @classmethod
    def from_config(
        cls,
        config: CompactionConfig,
        generator: SummaryGenerator | None = None,
        scorer: ImportanceScorer | None = None,
        counter: TokenCounter | None = None,
        telemetry: Telemetry | None = None,
    ) -> MemoryCompactor:
        """Build from config; the sliding window only summarises when ``summarize_dropped`` is set."""
        if config.strategy == CompactionStrategyName.SLIDING_WINDOW and not config.summarize_dropped:
            generator = None
        if counter is None:
            counter = create_token_counter(config.tokenizer)
        return cls(
            create_strategy(config.strategy, generator, scorer, counter),
            CompactionOptions.from_config(config),
            telemetry,
        )

    async def compact(
        self,
        messages: Sequence[Message],
        options: CompactionOptions | None = None,
        token: CancellationToken | None = None,
    ) -> CompactionResult:
        result = await self.strategy.compact(messages, options or self.options, token)
        if result.was_compacted:
            logger.info(
                "Compacted context with %s: %d -> %d messages, %d -> %d tokens",
                self.strategy.name,
                len(messages),
                len(result.messages),
                result.tokens_before,
                result.tokens_after,
            )
            self.telemetry.increment("memory.compactions", strategy=self.strategy.name)
            self.telemetry.gauge("memory.tokens_after", result.tokens_after)
        return result
