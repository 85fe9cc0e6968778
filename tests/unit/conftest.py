"""Shared fakes for the unit tests."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest

from toolloop.backends.base import StreamChunk, ToolCallDelta
from toolloop.types import CompletionRequest, CompletionResponse, FinishReason, ToolCall


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedBackend:
    """Backend that replays a script.

    Each script item is a ``CompletionResponse``, an exception to raise,
    a callable ``request -> response`` (reused forever when it is the
    last item), or, for ``stream()``, a list of ``StreamChunk``.
    """

    def __init__(self, script: list[Any], name: str = "scripted") -> None:
        self.script = list(script)
        self.name = name
        self.requests: list[CompletionRequest] = []

    @property
    def calls(self) -> int:
        return len(self.requests)

    def _next(self, request: CompletionRequest) -> Any:
        self.requests.append(request)
        if not self.script:
            raise AssertionError("ScriptedBackend ran out of script")
        item = self.script[0]
        if not (callable(item) and len(self.script) == 1):
            self.script.pop(0)
        return item

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        item = self._next(request)
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            item = item(request)
            if hasattr(item, "__await__"):
                item = await item
        return item

    async def stream(self, request: CompletionRequest) -> AsyncIterator[StreamChunk]:
        item = self._next(request)
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            item = item(request)
            if hasattr(item, "__aiter__"):
                async for chunk in item:
                    yield chunk
                return
        if isinstance(item, list):
            for chunk in item:
                yield chunk
            return
        for word in item.content.split(" "):
            if word:
                yield StreamChunk(content=word + " ")
        for index, tc in enumerate(item.tool_calls or []):
            yield StreamChunk(tool_calls=[ToolCallDelta(index=index, id=tc.id, name=tc.name, arguments="")])
            text = json.dumps(tc.arguments)
            middle = len(text) // 2
            yield StreamChunk(tool_calls=[ToolCallDelta(index=index, arguments=text[:middle])])
            yield StreamChunk(tool_calls=[ToolCallDelta(index=index, arguments=text[middle:])])
        yield StreamChunk(finish_reason=item.finish_reason)


def text_response(content: str) -> CompletionResponse:
    return CompletionResponse(content=content)


def tool_response(name: str, arguments: dict[str, Any], call_id: str = "call-1") -> CompletionResponse:
    return CompletionResponse(
        content="",
        tool_calls=[ToolCall(id=call_id, name=name, arguments=arguments)],
        finish_reason=FinishReason.TOOL_CALLS,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def scripted() -> Callable[..., ScriptedBackend]:
    """Factory fixture: ``scripted([response, error, ...])``."""
    return ScriptedBackend


@pytest.fixture
def text() -> Callable[[str], CompletionResponse]:
    return text_response


@pytest.fixture
def tool_call() -> Callable[..., CompletionResponse]:
    return tool_response
