"""Tests for the middleware pipeline and built-in stages."""

from __future__ import annotations

import pytest

from toolloop.config import RetryConfig
from toolloop.errors import AuthenticationFailed, BackendUnavailable, RateLimited
from toolloop.pipeline.middleware import (
    CacheStage,
    Capability,
    FunctionStage,
    MiddlewareContext,
    MiddlewarePipeline,
    RateLimitStage,
    RetryStage,
    Stage,
)
from toolloop.types import AgentContext, CompletionRequest, CompletionResponse, Message, ToolCall, ToolResult


def _ctx(content: str = "hi", metadata: dict | None = None) -> MiddlewareContext:
    request = CompletionRequest(messages=[Message.user(content)])
    agent = AgentContext(messages=list(request.messages), tools=None, metadata=metadata or {})
    return MiddlewareContext(request=request, agent=agent)


def _recorder(name: str, log: list[str]) -> FunctionStage:
    async def before(ctx):
        log.append(f"{name}.before")

    async def after(response, ctx):
        log.append(f"{name}.after")

    async def on_error(error, ctx):
        log.append(f"{name}.error")

    return FunctionStage(name, before_request=before, after_response=after, on_error=on_error)


# ── Capabilities ──────────────────────────────────────────────


class TestCapabilities:
    def test_derived_from_overridden_hooks(self):
        class BeforeOnly(Stage):
            async def before_request(self, ctx):
                return ctx

        class ToolHooks(Stage):
            async def on_tool_call(self, call, ctx):
                return call

            async def on_tool_result(self, result, ctx):
                return result

        assert BeforeOnly.capabilities == Capability.BEFORE_REQUEST
        assert ToolHooks.capabilities == Capability.ON_TOOL_CALL | Capability.ON_TOOL_RESULT
        assert Stage.capabilities == Capability.NONE

    def test_function_stage_capabilities_per_instance(self):
        async def on_error(error, ctx):
            pass

        stage = FunctionStage("err", on_error=on_error)
        assert stage.capabilities == Capability.ON_ERROR
        assert FunctionStage("empty").capabilities == Capability.NONE

    def test_builtin_stage_capabilities(self):
        assert CacheStage.capabilities == Capability.BEFORE_REQUEST | Capability.AFTER_RESPONSE
        assert RetryStage.capabilities == Capability.ON_ERROR | Capability.AFTER_RESPONSE


# ── Ordering ──────────────────────────────────────────────────


class TestOrdering:
    @pytest.mark.asyncio
    async def test_before_forward_after_reverse(self):
        log: list[str] = []
        pipeline = MiddlewarePipeline([_recorder("a", log), _recorder("b", log)])
        ctx = await pipeline.run_before_request(_ctx())
        await pipeline.run_after_response(CompletionResponse(content="x"), ctx)
        assert log == ["a.before", "b.before", "b.after", "a.after"]

    @pytest.mark.asyncio
    async def test_on_error_visits_every_stage(self):
        log: list[str] = []
        pipeline = MiddlewarePipeline().use(_recorder("a", log)).use(_recorder("b", log))
        await pipeline.run_on_error(RuntimeError("x"), _ctx())
        assert log == ["a.error", "b.error"]

    @pytest.mark.asyncio
    async def test_raising_stage_aborts_phase(self):
        log: list[str] = []

        async def explode(ctx):
            raise ValueError("bad stage")

        pipeline = MiddlewarePipeline([FunctionStage("boom", before_request=explode), _recorder("b", log)])
        with pytest.raises(ValueError):
            await pipeline.run_before_request(_ctx())
        assert log == []

    @pytest.mark.asyncio
    async def test_answer_stops_before_request(self):
        log: list[str] = []

        async def answer(ctx):
            ctx.answer(CompletionResponse(content="canned"))

        pipeline = MiddlewarePipeline([FunctionStage("short", before_request=answer), _recorder("b", log)])
        ctx = await pipeline.run_before_request(_ctx())
        assert ctx.answered
        assert ctx.cached_response.content == "canned"
        assert log == []

    @pytest.mark.asyncio
    async def test_tool_hooks_transform_in_order(self):
        async def rename(call, ctx):
            return ToolCall(id=call.id, name=call.name.upper(), arguments=call.arguments)

        async def suffix(call, ctx):
            return ToolCall(id=call.id, name=call.name + "!", arguments=call.arguments)

        async def annotate(result, ctx):
            return ToolResult(result.tool_call_id, result={"wrapped": result.result})

        pipeline = MiddlewarePipeline(
            [
                FunctionStage("a", on_tool_call=rename),
                FunctionStage("b", on_tool_call=suffix, on_tool_result=annotate),
            ]
        )
        ctx = _ctx()
        call = await pipeline.run_on_tool_call(ToolCall(id="1", name="add"), ctx)
        assert call.name == "ADD!"
        result = await pipeline.run_on_tool_result(ToolResult("1", result=5), ctx)
        assert result.result == {"wrapped": 5}


# ── Built-in stages ───────────────────────────────────────────


class TestCacheStage:
    @pytest.mark.asyncio
    async def test_miss_then_hit(self, clock):
        cache = CacheStage(ttl=60, clock=clock)
        pipeline = MiddlewarePipeline([cache])

        first = await pipeline.run_before_request(_ctx("what is 2+2?"))
        assert not first.answered
        response = CompletionResponse(content="4")
        await pipeline.run_after_response(response, first)
        assert len(cache) == 1

        second = await pipeline.run_before_request(_ctx("what is 2+2?"))
        assert second.cached_response is response
        assert second.metadata["cache_hits"] == 1
        assert (cache.hits, cache.misses) == (1, 1)

    @pytest.mark.asyncio
    async def test_different_request_misses(self, clock):
        cache = CacheStage(clock=clock)
        ctx = await cache.before_request(_ctx("a"))
        await cache.after_response(CompletionResponse(content="A"), ctx)
        other = await cache.before_request(_ctx("b"))
        assert not other.answered

    @pytest.mark.asyncio
    async def test_entries_expire(self, clock):
        cache = CacheStage(ttl=10, clock=clock)
        ctx = await cache.before_request(_ctx())
        await cache.after_response(CompletionResponse(content="x"), ctx)
        clock.advance(11)
        again = await cache.before_request(_ctx())
        assert not again.answered
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_evicts_oldest_when_full(self, clock):
        cache = CacheStage(max_size=2, clock=clock)
        for content in ("a", "b", "c"):
            ctx = await cache.before_request(_ctx(content))
            await cache.after_response(CompletionResponse(content=content.upper()), ctx)
        assert len(cache) == 2
        assert not (await cache.before_request(_ctx("a"))).answered
        assert (await cache.before_request(_ctx("c"))).answered

    @pytest.mark.asyncio
    async def test_hit_is_not_stored_again(self, clock):
        cache = CacheStage(clock=clock)
        ctx = await cache.before_request(_ctx())
        await cache.after_response(CompletionResponse(content="x"), ctx)
        clock.advance(5)
        hit = await cache.before_request(_ctx())
        await cache.after_response(hit.cached_response, hit)
        clock.advance(cache.ttl - 1)
        # Still keyed to the first store, so it expires on the original schedule.
        assert not (await cache.before_request(_ctx())).answered


class TestRateLimitStage:
    @pytest.mark.asyncio
    async def test_rejects_over_limit_until_window_passes(self, clock):
        stage = RateLimitStage(max_requests=2, window=60.0, clock=clock)
        await stage.before_request(_ctx())
        await stage.before_request(_ctx())
        with pytest.raises(RateLimited) as exc_info:
            await stage.before_request(_ctx())
        assert exc_info.value.retry_after == pytest.approx(60.0)
        assert not exc_info.value.retryable

        clock.advance(60.0)
        await stage.before_request(_ctx())


class TestRetryStage:
    @pytest.mark.asyncio
    async def test_requests_retry_for_transient_errors(self):
        stage = RetryStage(RetryConfig(max_retries=2, base_delay=1.0, jitter=0.0))
        ctx = _ctx()
        await stage.on_error(BackendUnavailable("down"), ctx)
        assert ctx.retry_requested
        assert ctx.retry_delay == 1.0
        assert ctx.metadata["retry_count"] == 1

    @pytest.mark.asyncio
    async def test_stops_after_max_retries(self):
        stage = RetryStage(RetryConfig(max_retries=2, jitter=0.0))
        ctx = _ctx(metadata={"retry_count": 2})
        await stage.on_error(BackendUnavailable("down"), ctx)
        assert not ctx.retry_requested

    @pytest.mark.asyncio
    async def test_ignores_permanent_errors(self):
        ctx = _ctx()
        await RetryStage().on_error(AuthenticationFailed(), ctx)
        assert not ctx.retry_requested

    @pytest.mark.asyncio
    async def test_successful_response_resets_count(self):
        stage = RetryStage()
        ctx = _ctx(metadata={"retry_count": 2})
        await stage.after_response(CompletionResponse(content="ok"), ctx)
        assert ctx.metadata["retry_count"] == 0
