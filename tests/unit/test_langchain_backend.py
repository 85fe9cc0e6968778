"""Tests for the LangChain backend adapter, using LangChain's fake chat model."""

from __future__ import annotations

from typing import Any

import pytest
from langchain_core.language_models.fake_chat_models import GenericFakeChatModel
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage

from toolloop.backends.langchain import LangChainBackend, from_langchain_message, to_langchain_messages
from toolloop.errors import RateLimited
from toolloop.types import CompletionRequest, FinishReason, Message, ToolCall, ToolResult, Usage


class FakeToolModel(GenericFakeChatModel):
    """Fake model that accepts ``bind_tools`` and records the tools it was given."""

    bound: list[Any] = []

    def bind_tools(self, tools, **kwargs):
        self.bound.append(tools)
        return self


class FailingModel(GenericFakeChatModel):
    def _generate(self, messages, stop=None, run_manager=None, **kwargs):
        raise RuntimeError("Rate limit exceeded, please retry")


def _request(*tools: dict) -> CompletionRequest:
    return CompletionRequest(messages=[Message.user("hi")], tools=list(tools) or None)


# ── Conversion ────────────────────────────────────────────────


class TestConversion:
    def test_to_langchain_messages(self):
        call = ToolCall(id="c1", name="add", arguments={"a": 1})
        converted = to_langchain_messages(
            [
                Message.system("sys"),
                Message.user("hi"),
                Message.assistant("", tool_calls=[call]),
                Message.tool_result(ToolResult("c1", result=2), "add"),
            ]
        )
        assert [type(m) for m in converted] == [SystemMessage, HumanMessage, AIMessage, ToolMessage]
        assert converted[2].tool_calls[0]["name"] == "add"
        assert converted[2].tool_calls[0]["args"] == {"a": 1}
        assert converted[3].tool_call_id == "c1"
        assert converted[3].content == "2"

    def test_from_langchain_message_text(self):
        message = AIMessage(
            content=[{"type": "text", "text": "Hello "}, {"type": "text", "text": "there"}],
            response_metadata={"finish_reason": "length"},
            usage_metadata={"input_tokens": 3, "output_tokens": 2, "total_tokens": 5},
        )
        response = from_langchain_message(message)
        assert response.content == "Hello there"
        assert response.finish_reason == FinishReason.LENGTH
        assert response.usage == Usage(3, 2, 5)
        assert not response.has_tool_calls

    def test_from_langchain_message_tool_calls(self):
        message = AIMessage(content="", tool_calls=[{"id": "c9", "name": "add", "args": {"a": 1, "b": 2}}])
        response = from_langchain_message(message)
        assert response.tool_calls == [ToolCall("c9", "add", {"a": 1, "b": 2})]
        assert response.finish_reason == FinishReason.TOOL_CALLS


# ── Backend ───────────────────────────────────────────────────


class TestLangChainBackend:
    @pytest.mark.asyncio
    async def test_complete_text(self):
        backend = LangChainBackend(GenericFakeChatModel(messages=iter(["hello world"])), name="fake")
        response = await backend.complete(_request())
        assert response.content == "hello world"
        assert response.finish_reason == FinishReason.STOP
        assert backend.name == "fake"

    @pytest.mark.asyncio
    async def test_complete_binds_tools_only_when_present(self):
        reply = AIMessage(content="", tool_calls=[{"id": "c1", "name": "add", "args": {"a": 2, "b": 3}}])
        model = FakeToolModel(messages=iter([reply, "plain"]))
        model.bound.clear()
        backend = LangChainBackend(model)

        definition = {"name": "add", "description": "Add", "parameters": {"type": "object"}}
        response = await backend.complete(_request(definition))
        assert response.tool_calls == [ToolCall("c1", "add", {"a": 2, "b": 3})]
        assert model.bound == [[definition]]

        await backend.complete(_request())
        assert len(model.bound) == 1

    @pytest.mark.asyncio
    async def test_errors_are_classified(self):
        backend = LangChainBackend(FailingModel(messages=iter([])), name="flaky")
        with pytest.raises(RateLimited) as exc_info:
            await backend.complete(_request())
        assert exc_info.value.backend == "flaky"
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    @pytest.mark.asyncio
    async def test_stream_text(self):
        backend = LangChainBackend(GenericFakeChatModel(messages=iter(["hello streaming world"])))
        chunks = [chunk async for chunk in backend.stream(_request())]
        assert len(chunks) > 1
        assert "".join(c.content for c in chunks) == "hello streaming world"
        assert all(c.tool_calls == [] for c in chunks)
