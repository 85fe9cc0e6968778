"""Context compaction strategies.

Every strategy takes the full, append-only history and returns a reduced
*view* of it that fits ``max_tokens - reserve_tokens``. The leading
system message is always kept and never counts as a recent message.
All four strategies share the same contract and are interchangeable.
"""

from __future__ import annotations

import inspect
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import ClassVar

from toolloop.cancellation import CancellationToken, race
from toolloop.config import CompactionConfig
from toolloop.errors import Cancelled, ConfigurationError
from toolloop.memory.tokenizer import HeuristicTokenCounter, TokenCounter, truncate_to_tokens
from toolloop.types import Message, Role

logger = logging.getLogger(__name__)

SummaryGenerator = Callable[[str, str, int], Awaitable[str]]
ImportanceScorer = Callable[[Message, Sequence[Message]], "float | Awaitable[float]"]

SUMMARY_SYSTEM_PROMPT = (
    "Summarize the following conversation concisely, preserving key facts, "
    "decisions, and context needed to continue naturally."
)
MERGE_SYSTEM_PROMPT = (
    "Merge these two summaries into one cohesive summary, removing redundancy "
    "while preserving all unique information."
)
COMPRESSION_SYSTEM_PROMPT = (
    "You are a conversation summarizer. Compress the conversation into a much "
    "shorter form while preserving all key information, decisions, and context "
    "needed to continue the conversation naturally. Be concise but complete."
)


@dataclass
class CompactionOptions:
    max_tokens: int = 8000
    reserve_tokens: int = 2000
    min_messages_before_compaction: int = 10
    preserve_recent_count: int = 5

    @property
    def budget(self) -> int:
        return self.max_tokens - self.reserve_tokens

    @classmethod
    def from_config(cls, config: CompactionConfig) -> CompactionOptions:
        return cls(
            max_tokens=config.max_tokens,
            reserve_tokens=config.reserve_tokens,
            min_messages_before_compaction=config.min_messages_before_compaction,
            preserve_recent_count=config.preserve_recent_count,
        )


@dataclass
class CompactionResult:
    messages: list[Message]
    was_compacted: bool
    tokens_before: int
    tokens_after: int
    summary: str | None = None


def transcript(messages: Sequence[Message]) -> str:
    return "\n\n".join(f"{m.role.value.upper()}: {m.content}" for m in messages)


def compression_prompt(messages: Sequence[Message]) -> str:
    return (
        "Compress this conversation while preserving all key information:\n\n"
        f"{transcript(messages)}\n\n"
        "Provide a compressed version that captures:\n"
        "1. Key facts and information shared\n"
        "2. Decisions made\n"
        "3. Important context for continuing the conversation\n"
        "4. Any action items or commitments"
    )


def repair_tool_pairs(messages: list[Message]) -> list[Message]:
    """Drop tool results whose request is gone, and requests whose results are gone.

    Backends reject a tool message that does not follow the assistant
    message which issued the call.
    """
    requested: set[str] = set()
    answered: set[str] = {m.tool_call_id for m in messages if m.role == Role.TOOL and m.tool_call_id}
    out: list[Message] = []
    for message in messages:
        if message.role == Role.ASSISTANT and message.metadata.get("tool_calls"):
            ids = {tc["id"] for tc in message.metadata["tool_calls"]}
            if not ids <= answered:
                continue
            requested |= ids
        elif message.role == Role.TOOL and message.tool_call_id not in requested:
            continue
        out.append(message)
    return out


class CompactionStrategy(ABC):
    name: ClassVar[str] = ""

    def __init__(self, counter: TokenCounter | None = None) -> None:
        self.counter = counter or HeuristicTokenCounter()

    def tokens(self, messages: Sequence[Message]) -> int:
        return self.counter.count_messages(messages)

    @staticmethod
    def split_system(messages: Sequence[Message]) -> tuple[Message | None, list[Message]]:
        if messages and messages[0].role == Role.SYSTEM:
            return messages[0], list(messages[1:])
        return None, list(messages)

    @staticmethod
    def split_recent(conversation: list[Message], count: int) -> tuple[list[Message], list[Message]]:
        """Split into (older, recent); the recent window never starts with a tool result."""
        if count <= 0:
            return list(conversation), []
        start = max(0, len(conversation) - count)
        while start > 0 and conversation[start].role == Role.TOOL:
            start -= 1
        return conversation[:start], conversation[start:]

    async def compact(
        self,
        messages: Sequence[Message],
        options: CompactionOptions,
        token: CancellationToken | None = None,
    ) -> CompactionResult:
        """Return a view of ``messages`` within the budget; summary calls are raced against ``token``."""
        tokens_before = self.tokens(messages)
        if tokens_before <= options.budget:
            return CompactionResult(list(messages), False, tokens_before, tokens_before)

        system, conversation = self.split_system(messages)
        body, summary = await self._compact(system, conversation, options, token)
        head = [system] if system is not None else []
        body = self._fit(head, body, options.budget)
        result = head + body
        tokens_after = self.tokens(result)
        if tokens_after > options.budget:
            logger.warning(
                "Compacted context still exceeds budget (%d > %d tokens)",
                tokens_after,
                options.budget,
            )
        return CompactionResult(result, True, tokens_before, tokens_after, summary)

    def _fit(self, head: list[Message], body: list[Message], budget: int) -> list[Message]:
        """Drop the oldest body messages until head + body fits the budget."""
        body = repair_tool_pairs(body)
        while body and self.tokens(head + body) > budget:
            body = repair_tool_pairs(body[1:])
        return body

    @abstractmethod
    async def _compact(
        self,
        system: Message | None,
        conversation: list[Message],
        options: CompactionOptions,
        token: CancellationToken | None = None,
    ) -> tuple[list[Message], str | None]:
        """Return the compacted non-system messages and the summary text, if any."""


async def _generate(
    generator: SummaryGenerator,
    system_prompt: str,
    prompt: str,
    max_tokens: int,
    token: CancellationToken | None = None,
) -> str:
    return (await race(generator(system_prompt, prompt, max(1, max_tokens)), token)).strip()


# ---------------------------------------------------------------------------
# Sliding window
# ---------------------------------------------------------------------------


class SlidingWindowStrategy(CompactionStrategy):
    """Keep the recent window plus as many older messages as fit.

    With a generator, the dropped messages are replaced by one summary
    message; a summary that fails or does not fit is left out.
    """

    name = "sliding_window"

    def __init__(
        self,
        generator: SummaryGenerator | None = None,
        counter: TokenCounter | None = None,
        summary_max_tokens: int = 500,
    ) -> None:
        super().__init__(counter)
        self.generator = generator
        self.summary_max_tokens = summary_max_tokens

    async def _compact(self, system, conversation, options, token=None):
        head = [system] if system is not None else []
        older, recent = self.split_recent(conversation, options.preserve_recent_count)
        while recent and self.tokens(head + recent) > options.budget:
            recent = recent[1:]

        remaining = options.budget - self.tokens(head + recent)
        kept: list[Message] = []
        for message in reversed(older):
            cost = self.counter.count_message(message)
            if cost > remaining:
                break
            kept.insert(0, message)
            remaining -= cost

        dropped = older[: len(older) - len(kept)]
        if not dropped or self.generator is None:
            return kept + recent, None

        try:
            summary = await _generate(
                self.generator, SUMMARY_SYSTEM_PROMPT, transcript(dropped), self.summary_max_tokens, token
            )
        except Cancelled:
            raise
        except Exception as e:
            logger.warning("Failed to generate summary of %d dropped message(s): %s", len(dropped), e)
            return kept + recent, None

        summary_message = Message.system(f"[Previous conversation summary: {summary}]")
        summary_message.metadata["summary"] = True
        cost = self.counter.count_message(summary_message)
        while kept and cost > remaining:
            remaining += self.counter.count_message(kept.pop(0))
        if cost > remaining:
            logger.info("Summary does not fit the remaining budget; omitting it")
            return kept + recent, None
        return [summary_message] + kept + recent, summary


# ---------------------------------------------------------------------------
# Semantic compression
# ---------------------------------------------------------------------------


class SemanticCompressionStrategy(CompactionStrategy):
    """Condense everything before the recent window into one generated message."""

    name = "semantic_compression"

    def __init__(self, generator: SummaryGenerator, counter: TokenCounter | None = None) -> None:
        if generator is None:
            raise ConfigurationError("semantic_compression needs a summary generator")
        super().__init__(counter)
        self.generator = generator

    async def _compact(self, system, conversation, options, token=None):
        older, recent = self.split_recent(conversation, options.preserve_recent_count)
        if len(older) < options.min_messages_before_compaction:
            return recent, None

        try:
            compressed = await _generate(
                self.generator,
                COMPRESSION_SYSTEM_PROMPT,
                compression_prompt(older),
                options.budget // 2,
                token,
            )
        except Cancelled:
            raise
        except Exception as e:
            logger.warning("Compression failed, falling back to truncation: %s", e)
            return recent, None

        head = [system] if system is not None else []
        available = options.budget - self.tokens(head + recent)
        message = Message(
            role=Role.ASSISTANT,
            content=f"[Compressed conversation context]\n{compressed}",
            metadata={"compressed": True, "original_message_count": len(older)},
        )
        overhead = self.counter.count_message(message) - self.counter.count(message.content)
        content = truncate_to_tokens(message.content, available - overhead, self.counter)
        if not content:
            return recent, None
        message.content = content
        return [message] + recent, compressed


# ---------------------------------------------------------------------------
# Hierarchical
# ---------------------------------------------------------------------------


class HierarchicalStrategy(CompactionStrategy):
    """Three tiers: verbatim recent messages, a mid-term summary, a long-term summary.

    The budget left after the system message is split 60/25/15. The
    mid-term summary is regenerated on every call from the last 20
    messages outside the verbatim tier. Anything older is folded into the
    long-term summary once more than 10 not-yet-folded messages have
    accumulated.

    The long-term summary is state owned by this instance and survives
    across calls; use one instance per conversation and ``reset()`` it to
    start over.
    """

    name = "hierarchical"

    RECENT_SHARE = 0.60
    MID_TERM_SHARE = 0.25
    LONG_TERM_SHARE = 0.15
    MID_TERM_WINDOW = 20
    LONG_TERM_MIN_NEW = 10

    def __init__(self, generator: SummaryGenerator, counter: TokenCounter | None = None) -> None:
        if generator is None:
            raise ConfigurationError("hierarchical needs a summary generator")
        super().__init__(counter)
        self.generator = generator
        self.long_term_summary = ""
        self._folded: set[str] = set()

    def reset(self) -> None:
        self.long_term_summary = ""
        self._folded.clear()

    async def _fold(self, unfolded: list[Message], long_budget: int, token: CancellationToken | None) -> None:
        new_content = await _generate(
            self.generator, SUMMARY_SYSTEM_PROMPT, transcript(unfolded), long_budget, token
        )
        if self.long_term_summary:
            new_content = await _generate(
                self.generator,
                MERGE_SYSTEM_PROMPT,
                f"Existing summary:\n{self.long_term_summary}\n\nNew content:\n{new_content}",
                long_budget,
                token,
            )
        self.long_term_summary = new_content
        self._folded.update(m.id for m in unfolded)
        logger.debug("Folded %d message(s) into the long-term summary", len(unfolded))

    async def _compact(self, system, conversation, options, token=None):
        head = [system] if system is not None else []
        available = max(0, options.budget - self.tokens(head))
        recent_budget = int(available * self.RECENT_SHARE)
        mid_budget = int(available * self.MID_TERM_SHARE)
        long_budget = int(available * self.LONG_TERM_SHARE)

        recent: list[Message] = []
        used = 0
        for message in reversed(conversation):
            cost = self.counter.count_message(message)
            if used + cost > recent_budget:
                break
            recent.insert(0, message)
            used += cost
        while recent and recent[0].role == Role.TOOL:
            recent.pop(0)

        to_summarize = conversation[: len(conversation) - len(recent)]
        mid_term = ""
        if to_summarize:
            try:
                mid_term = await _generate(
                    self.generator,
                    SUMMARY_SYSTEM_PROMPT,
                    transcript(to_summarize[-self.MID_TERM_WINDOW :]),
                    mid_budget,
                    token,
                )
            except Cancelled:
                raise
            except Exception as e:
                logger.warning("Mid-term summary failed, leaving it out: %s", e)

        old = to_summarize[: -self.MID_TERM_WINDOW]
        unfolded = [m for m in old if m.id not in self._folded]
        if len(unfolded) > self.LONG_TERM_MIN_NEW:
            try:
                await self._fold(unfolded, long_budget, token)
            except Cancelled:
                raise
            except Exception as e:
                logger.warning("Long-term summary update failed, keeping the previous one: %s", e)

        body: list[Message] = []
        if self.long_term_summary:
            text = truncate_to_tokens(self.long_term_summary, long_budget, self.counter)
            if text:
                body.append(Message(role=Role.SYSTEM, content=f"[Long-term context]: {text}",
                                    metadata={"summary": "long_term"}))
        if mid_term:
            text = truncate_to_tokens(mid_term, mid_budget, self.counter)
            if text:
                body.append(Message(role=Role.SYSTEM, content=f"[Recent context summary]: {text}",
                                    metadata={"summary": "mid_term"}))

        summary = "\n\n".join(s for s in (self.long_term_summary, mid_term) if s) or None
        return body + recent, summary


# ---------------------------------------------------------------------------
# Importance based
# ---------------------------------------------------------------------------

_KEYWORDS = re.compile(r"\b(decided|agreed|important|remember|key|must|should)\b", re.IGNORECASE)


def score_importance(message: Message, context: Sequence[Message] = ()) -> float:
    """Heuristic importance in [0, 1].

    Base 0.5; +0.1 for a question, +0.1 for long content (over 200
    characters), +0.15 for decision keywords, +0.2 for tool traffic.
    """
    score = 0.5
    content = message.content or ""
    if "?" in content:
        score += 0.1
    if len(content) > 200:
        score += 0.1
    if _KEYWORDS.search(content):
        score += 0.15
    if (
        message.role == Role.TOOL
        or message.metadata.get("tool_call_id")
        or message.metadata.get("tool_calls")
    ):
        score += 0.2
    return max(0.0, min(1.0, score))


class ImportanceStrategy(CompactionStrategy):
    """Keep the recent window, then admit older messages by descending importance.

    Ties keep chronological order. The admitted messages are returned in
    their original order.
    """

    name = "importance_based"

    def __init__(self, scorer: ImportanceScorer | None = None, counter: TokenCounter | None = None) -> None:
        super().__init__(counter)
        self.scorer = scorer or score_importance

    async def _score(self, message: Message, conversation: Sequence[Message]) -> float:
        score = self.scorer(message, conversation)
        if inspect.isawaitable(score):
            score = await score
        return float(score)

    async def _compact(self, system, conversation, options, token=None):
        head = [system] if system is not None else []
        older, recent = self.split_recent(conversation, options.preserve_recent_count)
        while recent and self.tokens(head + recent) > options.budget:
            recent = recent[1:]

        scores = [await self._score(m, conversation) for m in older]
        remaining = options.budget - self.tokens(head + recent)
        admitted: list[int] = []
        for index in sorted(range(len(older)), key=lambda i: (-scores[i], i)):
            cost = self.counter.count_message(older[index])
            if cost <= remaining:
                admitted.append(index)
                remaining -= cost

        kept = [older[i] for i in sorted(admitted)]
        return kept + recent, None
