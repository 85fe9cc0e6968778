"""Backend interface and streaming chunk types."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from toolloop.cancellation import race
from toolloop.errors import BackendTimeout
from toolloop.types import CompletionRequest, CompletionResponse, FinishReason, Message, ToolCall, Usage

logger = logging.getLogger(__name__)


@dataclass
class ToolCallDelta:
    """A fragment of a streamed tool call.

    Fragments sharing ``index`` belong to the same call; ``arguments`` is
    a piece of JSON text to be concatenated.
    """

    index: int
    id: str | None = None
    name: str | None = None
    arguments: str = ""


@dataclass
class StreamChunk:
    content: str = ""
    tool_calls: list[ToolCallDelta] = field(default_factory=list)
    finish_reason: FinishReason | None = None
    usage: Usage | None = None


@runtime_checkable
class Backend(Protocol):
    """Anything that can answer a ``CompletionRequest``."""

    name: str

    async def complete(self, request: CompletionRequest) -> CompletionResponse: ...

    def stream(self, request: CompletionRequest) -> AsyncIterator[StreamChunk]: ...


class ToolCallAccumulator:
    """Assembles streamed ``ToolCallDelta`` fragments into whole ``ToolCall`` objects."""

    def __init__(self) -> None:
        self._calls: dict[int, dict[str, Any]] = {}

    def add(self, delta: ToolCallDelta) -> None:
        call = self._calls.setdefault(delta.index, {"id": None, "name": "", "arguments": ""})
        if delta.id:
            call["id"] = delta.id
        if delta.name:
            call["name"] += delta.name
        call["arguments"] += delta.arguments

    def __bool__(self) -> bool:
        return bool(self._calls)

    def build(self) -> list[ToolCall]:
        calls: list[ToolCall] = []
        for index in sorted(self._calls):
            raw = self._calls[index]
            text = raw["arguments"].strip()
            try:
                arguments = json.loads(text) if text else {}
            except json.JSONDecodeError:
                logger.warning("Could not parse streamed arguments for '%s': %r", raw["name"], text)
                arguments = {"_raw": text}
            if not isinstance(arguments, dict):
                arguments = {"value": arguments}
            calls.append(
                ToolCall(id=raw["id"] or f"call_{index}", name=raw["name"], arguments=arguments)
            )
        return calls


def backend_generator(backend: Backend, temperature: float | None = 0.0, timeout: float | None = None):
    """Adapt a backend into the summary generator used by memory compaction.

    The returned coroutine function takes ``(system_prompt, prompt,
    max_tokens)`` and returns the generated text. A call that outlives
    ``timeout`` raises ``BackendTimeout``.
    """

    async def generate(system_prompt: str, prompt: str, max_tokens: int) -> str:
        request = CompletionRequest(
            messages=[Message.system(system_prompt), Message.user(prompt)],
            temperature=temperature,
            max_tokens=max_tokens,
        )
        response = await race(
            backend.complete(request),
            timeout=timeout,
            timeout_error=BackendTimeout(
                f"Summary call to '{backend.name}' did not answer within {timeout}s",
                backend=backend.name,
            ),
        )
        return response.content

    return generate
