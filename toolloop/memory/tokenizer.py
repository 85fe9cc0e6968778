"""Token counting for context budgeting.

``HeuristicTokenCounter`` is deterministic and works offline; it is the
default. ``TiktokenCounter`` gives exact counts for OpenAI-style
encodings when the encoding files are available.
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Iterable
from typing import Protocol, runtime_checkable

from toolloop.types import Message

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "... [truncated]"

_WORD = re.compile(r"\S+")
_SPECIAL = re.compile(r"[^\w\s]")
_NUMBER = re.compile(r"\d+")
_CODE_HINTS = (
    re.compile(r"def\s+\w+\s*\("),
    re.compile(r"function\s+\w+\s*\("),
    re.compile(r"(const|let|var)\s+\w+\s*="),
    re.compile(r"import\s+.*from"),
    re.compile(r"class\s+\w+"),
    re.compile(r"=>"),
    re.compile(r"[{\[]\s*\n"),
)


@runtime_checkable
class TokenCounter(Protocol):
    def count(self, text: str) -> int: ...

    def count_message(self, message: Message) -> int: ...

    def count_messages(self, messages: Iterable[Message]) -> int: ...


class HeuristicTokenCounter:
    """Estimate tokens from words, punctuation, digits and script.

    Roughly 1.3 tokens per word, half a token per punctuation mark, one
    per two digits, +20% for code-like text and half a token per
    non-ASCII character. Strings under ten characters fall back to
    ``len / chars_per_token``.
    """

    def __init__(self, chars_per_token: float = 4.0, message_overhead: int = 4) -> None:
        self.chars_per_token = chars_per_token
        self.message_overhead = message_overhead

    def count(self, text: str) -> int:
        if not text:
            return 0
        if len(text) < 10:
            return math.ceil(len(text) / self.chars_per_token)

        tokens = len(_WORD.findall(text)) * 1.3
        tokens += len(_SPECIAL.findall(text)) * 0.5
        tokens += sum(math.ceil(len(n) / 2) for n in _NUMBER.findall(text))
        if any(p.search(text) for p in _CODE_HINTS):
            tokens *= 1.2
        tokens += sum(1 for ch in text if ord(ch) > 127) * 0.5
        return math.ceil(tokens)

    def count_message(self, message: Message) -> int:
        return self.message_overhead + self.count(message.role.value) + self.count(message.content)

    def count_messages(self, messages: Iterable[Message]) -> int:
        return sum(self.count_message(m) for m in messages)


class TiktokenCounter:
    """Exact counts with a ``tiktoken`` encoding (loaded on first use)."""

    def __init__(self, encoding: str = "cl100k_base", message_overhead: int = 4) -> None:
        self.encoding_name = encoding
        self.message_overhead = message_overhead
        self._encoder = None

    @property
    def encoder(self):
        if self._encoder is None:
            import tiktoken

            self._encoder = tiktoken.get_encoding(self.encoding_name)
        return self._encoder

    def count(self, text: str) -> int:
        if not text:
            return 0
        return len(self.encoder.encode(text))

    def count_message(self, message: Message) -> int:
        return self.message_overhead + self.count(message.role.value) + self.count(message.content)

    def count_messages(self, messages: Iterable[Message]) -> int:
        return sum(self.count_message(m) for m in messages)


def create_token_counter(name: str = "heuristic") -> TokenCounter:
    if name == "heuristic":
        return HeuristicTokenCounter()
    if name == "tiktoken":
        return TiktokenCounter()
    raise ValueError(f"Unknown token counter: {name}")


def truncate_to_tokens(
    text: str,
    max_tokens: int,
    counter: TokenCounter,
    marker: str = TRUNCATION_MARKER,
) -> str:
    """Cut ``text`` from the end so that it (plus ``marker``) fits in ``max_tokens``.

    Returns ``""`` when not even the marker fits.
    """
    if counter.count(text) <= max_tokens:
        return text
    available = max_tokens - counter.count(marker)
    if available <= 0:
        return ""

    low, high = 0, len(text)
    while low < high:
        mid = (low + high + 1) // 2
        if counter.count(text[:mid]) <= available:
            low = mid
        else:
            high = mid - 1

    result = text[:low].rstrip() + marker
    # The estimate is not strictly monotonic in length; walk back if needed.
    while low > 0 and counter.count(result) > max_tokens:
        low -= 1
        result = text[:low].rstrip() + marker
    return result if counter.count(result) <= max_tokens else ""
