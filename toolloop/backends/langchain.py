"""Backend adapter over LangChain chat models (LiteLLM by default)."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from functools import lru_cache
from typing import Any

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage

from toolloop.backends.base import StreamChunk, ToolCallDelta
from toolloop.errors import classify_exception
from toolloop.types import (
    CompletionRequest,
    CompletionResponse,
    FinishReason,
    Message,
    Role,
    ToolCall,
    Usage,
    new_id,
)

logger = logging.getLogger(__name__)

_FINISH_REASONS: dict[str, FinishReason] = {
    "stop": FinishReason.STOP,
    "end_turn": FinishReason.STOP,
    "stop_sequence": FinishReason.STOP,
    "tool_calls": FinishReason.TOOL_CALLS,
    "tool_use": FinishReason.TOOL_CALLS,
    "function_call": FinishReason.TOOL_CALLS,
    "length": FinishReason.LENGTH,
    "max_tokens": FinishReason.LENGTH,
    "content_filter": FinishReason.CONTENT_FILTER,
}


@lru_cache(maxsize=32)
def get_chat_model(model_name: str = "gpt-4o-mini", temperature: float = 0.0) -> BaseChatModel:
    """Return a cached LangChain chat model via LiteLLM.

    Supports any model string that LiteLLM understands:
      - "gpt-4o" / "gpt-4o-mini"
      - "claude-sonnet-4-5"
      - "gemini/gemini-2.0-flash"
      - "ollama/llama3"
      - etc.
    """
    from langchain_litellm import ChatLiteLLM

    return ChatLiteLLM(model=model_name, temperature=temperature)


def to_langchain_messages(messages: list[Message]) -> list[BaseMessage]:
    converted: list[BaseMessage] = []
    for message in messages:
        if message.role == Role.SYSTEM:
            converted.append(SystemMessage(content=message.content))
        elif message.role == Role.USER:
            converted.append(HumanMessage(content=message.content))
        elif message.role == Role.ASSISTANT:
            converted.append(
                AIMessage(
                    content=message.content,
                    tool_calls=[
                        {"id": tc.id, "name": tc.name, "args": tc.arguments, "type": "tool_call"}
                        for tc in message.tool_calls
                    ],
                )
            )
        else:
            converted.append(
                ToolMessage(content=message.content, tool_call_id=message.tool_call_id or "")
            )
    return converted


def _text(content: Any) -> str:
    """Flatten LangChain content (a string or a list of content blocks) to text."""
    if isinstance(content, str):
        return content
    parts: list[str] = []
    for block in content or []:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(str(block.get("text", "")))
    return "".join(parts)


def _usage(message: AIMessage) -> Usage | None:
    meta = getattr(message, "usage_metadata", None)
    if not meta:
        return None
    prompt = meta.get("input_tokens", 0)
    completion = meta.get("output_tokens", 0)
    return Usage(
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=meta.get("total_tokens", prompt + completion),
    )


def _finish_reason(message: AIMessage, has_tool_calls: bool) -> FinishReason:
    if has_tool_calls:
        return FinishReason.TOOL_CALLS
    raw = (message.response_metadata or {}).get("finish_reason") or (
        message.response_metadata or {}
    ).get("stop_reason")
    return _FINISH_REASONS.get(str(raw), FinishReason.STOP) if raw else FinishReason.STOP


def from_langchain_message(message: AIMessage) -> CompletionResponse:
    tool_calls = [
        ToolCall(id=str(tc.get("id") or f"call_{i}"), name=tc.get("name", ""), arguments=tc.get("args") or {})
        for i, tc in enumerate(message.tool_calls or [])
    ]
    return CompletionResponse(
        content=_text(message.content),
        tool_calls=tool_calls or None,
        usage=_usage(message),
        finish_reason=_finish_reason(message, bool(tool_calls)),
        id=message.id or new_id("resp"),
    )


class LangChainBackend:
    """Answer ``CompletionRequest``s with any LangChain ``BaseChatModel``.

    Example::

        backend = LangChainBackend(get_chat_model("gpt-4o-mini"), name="openai")
        response = await backend.complete(CompletionRequest(messages=[Message.user("hi")]))
    """

    def __init__(self, model: BaseChatModel, name: str | None = None) -> None:
        self.model = model
        self.name = name or getattr(model, "model", None) or type(model).__name__

    @classmethod
    def from_model_name(cls, model_name: str, temperature: float = 0.0) -> LangChainBackend:
        return cls(get_chat_model(model_name, temperature), name=model_name)

    def _prepare(self, request: CompletionRequest) -> tuple[Any, dict[str, Any]]:
        runnable: Any = self.model
        if request.tools:
            runnable = self.model.bind_tools(request.tools)  # type: ignore[attr-defined]
        kwargs: dict[str, Any] = {}
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        if request.max_tokens is not None:
            kwargs["max_tokens"] = request.max_tokens
        return runnable, kwargs

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        runnable, kwargs = self._prepare(request)
        try:
            response = await runnable.ainvoke(to_langchain_messages(request.messages), **kwargs)
        except Exception as e:
            error = classify_exception(e, self.name)
            if error is e:
                raise
            raise error from e
        return from_langchain_message(response)

    async def stream(self, request: CompletionRequest) -> AsyncIterator[StreamChunk]:
        runnable, kwargs = self._prepare(request)
        try:
            async for chunk in runnable.astream(to_langchain_messages(request.messages), **kwargs):
                deltas = [
                    ToolCallDelta(
                        index=tc.get("index") if tc.get("index") is not None else i,
                        id=tc.get("id"),
                        name=tc.get("name"),
                        arguments=tc.get("args") or "",
                    )
                    for i, tc in enumerate(getattr(chunk, "tool_call_chunks", None) or [])
                ]
                raw_reason = (getattr(chunk, "response_metadata", None) or {}).get("finish_reason")
                yield StreamChunk(
                    content=_text(chunk.content),
                    tool_calls=deltas,
                    finish_reason=_FINISH_REASONS.get(str(raw_reason)) if raw_reason else None,
                    usage=_usage(chunk),
                )
        except Exception as e:
            error = classify_exception(e, self.name)
            if error is e:
                raise
            raise error from e
