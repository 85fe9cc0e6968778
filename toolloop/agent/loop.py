"""Agent execution loop: backend call, tool dispatch, repeat.

Each iteration:

1. compact a view of the history (the history itself is append-only)
2. middleware ``before_request`` (a stage may answer from cache)
3. interceptor request chain, backend call, interceptor response chain
4. middleware ``after_response``
5. no tool calls: done; otherwise run the tools, append one tool message
   per call, and go again

The loop stops on a response without tool calls or raises
``MaxIterationsExceeded`` once the cap is reached.

With a ``DegradationManager`` the loop follows the backend's circuit:
tools and streaming switch off as it degrades, and while it is offline
the run is answered with a fallback text instead of a backend call.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Sequence

from toolloop.agent.events import AgentEvent, EventKind
from toolloop.backends.base import Backend, StreamChunk, ToolCallAccumulator, backend_generator
from toolloop.cancellation import CancellationToken, race
from toolloop.cancellation import sleep as cancellable_sleep
from toolloop.config import AgentConfig
from toolloop.errors import BackendTimeout, Cancelled, MaxIterationsExceeded, classify_exception
from toolloop.memory.compactor import MemoryCompactor
from toolloop.persistence import Turn, TurnSink
from toolloop.pipeline.interceptors import InterceptorChain, RequestContext
from toolloop.pipeline.middleware import MiddlewareContext, MiddlewarePipeline
from toolloop.resilience.circuit_breaker import CircuitState
from toolloop.resilience.degradation import DegradationLevel, DegradationManager, simplify_response
from toolloop.resilience.policy import ResilienceRegistry, ResilientBackend
from toolloop.telemetry import Telemetry, ensure_safe, span
from toolloop.tools.base import ToolRegistry
from toolloop.types import (
    AgentContext,
    AgentResponse,
    CompletionRequest,
    CompletionResponse,
    FinishReason,
    Message,
    Role,
    ToolCall,
    ToolResult,
    Usage,
    new_id,
)

logger = logging.getLogger(__name__)


def partition_tool_calls(
    tool_calls: Sequence[ToolCall],
    parallel_safe: frozenset[str],
) -> list[list[ToolCall]]:
    """Partition tool calls into batches for parallel/sequential execution.

    Consecutive parallel-safe tools are grouped into one concurrent batch.
    Any other tool gets a batch of its own, in order.
    """
    if len(tool_calls) <= 1:
        return [[tc] for tc in tool_calls]

    batches: list[list[ToolCall]] = []
    current_parallel: list[ToolCall] = []

    for tc in tool_calls:
        if tc.name in parallel_safe:
            current_parallel.append(tc)
        else:
            if current_parallel:
                batches.append(current_parallel)
                current_parallel = []
            batches.append([tc])

    if current_parallel:
        batches.append(current_parallel)

    return batches


class AgentExecutionLoop:
    """Drive a conversation with a backend, executing the tools it asks for.

    Usage:
        loop = AgentExecutionLoop(
            backend=LangChainBackend.from_model_name("gpt-4o-mini"),
            tools=create_default_registry(),
            config=AgentConfig(max_iterations=5),
            resilience=ResilienceRegistry(),
        )
        response = await loop.run("What is (2 + 3) * 4?")
    """

    def __init__(
        self,
        backend: Backend,
        tools: ToolRegistry | None = None,
        config: AgentConfig | None = None,
        *,
        pipeline: MiddlewarePipeline | None = None,
        interceptors: InterceptorChain | None = None,
        compactor: MemoryCompactor | None = None,
        telemetry: Telemetry | None = None,
        turn_sink: TurnSink | None = None,
        resilience: ResilienceRegistry | None = None,
        degradation: DegradationManager | None = None,
    ) -> None:
        self.config = config or AgentConfig()
        self.telemetry = ensure_safe(telemetry)
        if resilience is not None and not isinstance(backend, ResilientBackend):
            backend = ResilientBackend.from_registry(backend, resilience, call_timeout=self.config.call_timeout)
        self.backend = backend
        self.tools = tools or ToolRegistry()
        self.pipeline = pipeline or MiddlewarePipeline()
        self.interceptors = interceptors or InterceptorChain()
        if compactor is None and self.config.compaction.enabled:
            compactor = MemoryCompactor.from_config(
                self.config.compaction,
                generator=backend_generator(self.backend, timeout=self.config.call_timeout),
                telemetry=self.telemetry,
            )
        self.compactor = compactor
        self.turn_sink = turn_sink
        self.degradation = degradation

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _new_context(self, input: str | Sequence[Message]) -> AgentContext:
        messages: list[Message] = []
        if isinstance(input, str):
            seed = [Message.user(input)]
        else:
            seed = list(input)
        if self.config.system_prompt and not (seed and seed[0].role == Role.SYSTEM):
            messages.append(Message.system(self.config.system_prompt))
        messages.extend(seed)
        return AgentContext(messages=messages, tools=self.tools)

    async def _view(self, ctx: AgentContext, token: CancellationToken | None) -> list[Message]:
        if self.compactor is None:
            return list(ctx.messages)
        result = await self.compactor.compact(ctx.messages, token=token)
        return result.messages

    def _allows(self, feature: str) -> bool:
        return self.degradation is None or self.degradation.is_enabled(feature)

    def _sync_degradation(self) -> None:
        if self.degradation is None or not isinstance(self.backend, ResilientBackend):
            return
        breaker = self.backend.breaker
        state = breaker.state
        if state == CircuitState.OPEN and breaker.is_call_permitted():
            # The breaker only moves to half-open on the next call; let that probe through.
            state = CircuitState.HALF_OPEN
        self.degradation.sync_with_breaker(state)

    def _offline(self) -> bool:
        return self.degradation is not None and self.degradation.level == DegradationLevel.OFFLINE

    def _degrade(self, response: CompletionResponse) -> CompletionResponse:
        if response.has_tool_calls and not self._allows("tools"):
            logger.warning("Dropping %d tool call(s): tools are disabled", len(response.tool_calls))
            return simplify_response(response)
        return response

    async def _prepare(
        self, ctx: AgentContext, iteration: int, token: CancellationToken | None
    ) -> MiddlewareContext:
        self._sync_degradation()
        request = CompletionRequest(
            messages=await self._view(ctx, token),
            tools=(self.tools.list_definitions() or None) if self._allows("tools") else None,
            temperature=self.config.temperature,
            max_tokens=self.config.max_tokens,
        )
        mctx = MiddlewareContext(request=request, agent=ctx, iteration=iteration)
        mctx = await self.pipeline.run_before_request(mctx)
        if not mctx.answered and self._offline():
            logger.warning("Backend is offline; answering with the fallback response")
            self.telemetry.increment("degradation.fallbacks")
            mctx.answer(self.degradation.fallback_response("offline"))
        return mctx

    async def _complete(self, request: CompletionRequest, token: CancellationToken | None) -> CompletionResponse:
        if isinstance(self.backend, ResilientBackend):
            # Per-attempt timeouts are applied inside the resilience stack.
            return await self.backend.complete(request, token)
        try:
            return await race(
                self.backend.complete(request),
                token,
                timeout=self.config.call_timeout,
                timeout_error=BackendTimeout(
                    f"Backend '{self.backend.name}' did not answer within {self.config.call_timeout}s",
                    backend=self.backend.name,
                ),
            )
        except Cancelled:
            raise
        except Exception as e:
            error = classify_exception(e, self.backend.name)
            if error is e:
                raise
            raise error from e

    async def _invoke(
        self,
        mctx: MiddlewareContext,
        token: CancellationToken | None,
    ) -> CompletionResponse:
        """Run the interceptor chains around one backend call, re-attempting on request."""
        rctx = RequestContext(original_request=mctx.request, token=token)
        while True:
            try:
                request = await self.interceptors.process_request(mctx.request, rctx)
                response = await self._complete(request, token)
                return await self.interceptors.process_response(response, rctx)
            except Cancelled:
                raise
            except Exception as e:
                mctx.retry_requested = False
                mctx.retry_delay = 0.0
                await self.pipeline.run_on_error(e, mctx)
                decision = await self.interceptors.process_error(e, rctx)
                error = decision.error or e
                if not (mctx.retry_requested or decision.retry):
                    self.telemetry.increment("agent.backend_errors")
                    if error is e:
                        raise
                    raise error from e
                delay = max(mctx.retry_delay, decision.delay)
                logger.info("Re-attempting backend call in %.2fs after %s", delay, type(error).__name__)
                await cancellable_sleep(delay, token)

    async def _execute_tool(
        self,
        call: ToolCall,
        mctx: MiddlewareContext,
        token: CancellationToken | None,
    ) -> ToolResult:
        if token is not None:
            token.raise_if_cancelled()
        original_id = call.id
        call = await self.pipeline.run_on_tool_call(call, mctx)
        with span(self.telemetry, "tool.execute", tool=call.name):
            result = await self.tools.dispatch(call, timeout=self.config.tool_timeout, token=token)
        result.tool_call_id = original_id
        if not result.ok:
            self.telemetry.increment("tool.errors", tool=call.name)
        return await self.pipeline.run_on_tool_result(result, mctx)

    def _batches(self, tool_calls: list[ToolCall]) -> list[list[ToolCall]]:
        if not self.config.parallel_tools:
            return [[tc] for tc in tool_calls]
        return partition_tool_calls(tool_calls, self.tools.parallel_safe_names())

    async def _run_batch(
        self,
        batch: list[ToolCall],
        mctx: MiddlewareContext,
        token: CancellationToken | None,
    ) -> list[ToolResult]:
        if len(batch) == 1:
            return [await self._execute_tool(batch[0], mctx, token)]
        outcomes = await asyncio.gather(
            *(self._execute_tool(tc, mctx, token) for tc in batch),
            return_exceptions=True,
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        return list(outcomes)  # type: ignore[arg-type]

    def _record_turn(self, response: AgentResponse, input_messages: list[Message], started_at: float) -> None:
        if self.turn_sink is None:
            return
        try:
            self.turn_sink.append(Turn.from_response(response, input_messages, started_at, time.time()))
        except Exception:
            logger.exception("Failed to persist turn %s", response.id)
            self.telemetry.increment("persistence.errors")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(
        self,
        input: str | Sequence[Message],
        token: CancellationToken | None = None,
    ) -> AgentResponse:
        """Run to completion and return the final response.

        Raises ``MaxIterationsExceeded`` when the backend keeps asking for
        tools, ``Cancelled`` when the token fires, and any backend error
        the pipeline did not recover from.
        """
        ctx = self._new_context(input)
        input_messages = list(ctx.messages)
        run_id = new_id("run")
        started_at = time.time()
        tool_results: list[ToolResult] = []
        usage = Usage()

        with span(self.telemetry, "agent.run"):
            for iteration in range(1, self.config.max_iterations + 1):
                if token is not None:
                    token.raise_if_cancelled()
                self.telemetry.increment("agent.iterations")

                mctx = await self._prepare(ctx, iteration, token)
                if mctx.answered:
                    logger.debug("Iteration %d answered by middleware", iteration)
                    response = mctx.cached_response
                else:
                    response = await self._invoke(mctx, token)
                response = self._degrade(response)
                response = await self.pipeline.run_after_response(response, mctx)
                if response.usage is not None:
                    usage = usage + response.usage

                ctx.messages.append(Message.assistant(response.content, response.tool_calls))
                if not response.has_tool_calls:
                    result = AgentResponse(
                        content=response.content,
                        messages=list(ctx.messages),
                        tool_results=tool_results,
                        usage=usage,
                        iterations=iteration,
                        id=run_id,
                    )
                    logger.info("Run %s finished after %d iteration(s)", run_id, iteration)
                    self._record_turn(result, input_messages, started_at)
                    return result

                for batch in self._batches(response.tool_calls):
                    for tc, tool_result in zip(batch, await self._run_batch(batch, mctx, token)):
                        tool_results.append(tool_result)
                        ctx.messages.append(Message.tool_result(tool_result, tc.name))

        self.telemetry.increment("agent.max_iterations_exceeded")
        logger.warning("Run %s hit the iteration cap (%d)", run_id, self.config.max_iterations)
        raise MaxIterationsExceeded(self.config.max_iterations)

    async def _stream_backend(
        self,
        request: CompletionRequest,
        token: CancellationToken | None,
    ) -> AsyncIterator[StreamChunk]:
        if isinstance(self.backend, ResilientBackend):
            source = self.backend.stream(request, token)
        else:
            source = self.backend.stream(request)
        iterator = source.__aiter__()

        async def next_chunk() -> tuple[bool, StreamChunk | None]:
            try:
                return True, await iterator.__anext__()
            except StopAsyncIteration:
                return False, None

        try:
            while True:
                try:
                    has_chunk, chunk = await race(
                        next_chunk(),
                        token,
                        timeout=self.config.call_timeout,
                        timeout_error=BackendTimeout(
                            f"Backend '{self.backend.name}' stream stalled for {self.config.call_timeout}s",
                            backend=self.backend.name,
                        ),
                    )
                except Cancelled:
                    raise
                except Exception as e:
                    error = classify_exception(e, self.backend.name)
                    if error is e:
                        raise
                    raise error from e
                if not has_chunk:
                    return
                yield chunk
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

    async def stream(
        self,
        input: str | Sequence[Message],
        token: CancellationToken | None = None,
    ) -> AsyncIterator[AgentEvent]:
        """Run the loop, yielding events as they happen.

        Text arrives as ``content`` events, then ``tool_call`` /
        ``tool_result`` pairs, and finally one ``done`` event carrying the
        ``AgentResponse``. If the token fires, the content streamed so far
        is emitted as an ``interrupted`` event and the stream ends.
        Streamed backend calls are never re-attempted.
        """
        ctx = self._new_context(input)
        input_messages = list(ctx.messages)
        run_id = new_id("run")
        started_at = time.time()
        tool_results: list[ToolResult] = []
        usage = Usage()
        iteration = 0
        parts: list[str] = []

        def event(kind: EventKind, **payload) -> AgentEvent:
            return AgentEvent(kind=kind, run_id=run_id, iteration=iteration, payload=payload)

        try:
            for iteration in range(1, self.config.max_iterations + 1):
                if token is not None:
                    token.raise_if_cancelled()
                self.telemetry.increment("agent.iterations")
                parts = []

                mctx = await self._prepare(ctx, iteration, token)
                if mctx.answered:
                    response = mctx.cached_response
                    if response.content:
                        yield event(EventKind.CONTENT, delta=response.content)
                elif not self._allows("streaming"):
                    response = await self._invoke(mctx, token)
                    if response.content:
                        yield event(EventKind.CONTENT, delta=response.content)
                else:
                    rctx = RequestContext(original_request=mctx.request, token=token)
                    accumulator = ToolCallAccumulator()
                    chunk_usage: Usage | None = None
                    finish_reason: FinishReason | None = None
                    try:
                        request = await self.interceptors.process_request(mctx.request, rctx)
                        async for chunk in self._stream_backend(request, token):
                            if chunk.content:
                                parts.append(chunk.content)
                                yield event(EventKind.CONTENT, delta=chunk.content)
                            for delta in chunk.tool_calls:
                                accumulator.add(delta)
                            if chunk.usage is not None:
                                chunk_usage = chunk.usage
                            if chunk.finish_reason is not None:
                                finish_reason = chunk.finish_reason
                    except Cancelled:
                        raise
                    except Exception as e:
                        await self.pipeline.run_on_error(e, mctx)
                        decision = await self.interceptors.process_error(e, rctx)
                        error = decision.error or e
                        self.telemetry.increment("agent.backend_errors")
                        if error is e:
                            raise
                        raise error from e

                    tool_calls = accumulator.build()
                    response = CompletionResponse(
                        content="".join(parts),
                        tool_calls=tool_calls or None,
                        usage=chunk_usage,
                        finish_reason=FinishReason.TOOL_CALLS if tool_calls else (finish_reason or FinishReason.STOP),
                    )
                    response = await self.interceptors.process_response(response, rctx)

                parts = []
                response = self._degrade(response)
                response = await self.pipeline.run_after_response(response, mctx)
                if response.usage is not None:
                    usage = usage + response.usage
                ctx.messages.append(Message.assistant(response.content, response.tool_calls))

                if not response.has_tool_calls:
                    result = AgentResponse(
                        content=response.content,
                        messages=list(ctx.messages),
                        tool_results=tool_results,
                        usage=usage,
                        iterations=iteration,
                        id=run_id,
                    )
                    self._record_turn(result, input_messages, started_at)
                    yield event(EventKind.DONE, response=result)
                    return

                for batch in self._batches(response.tool_calls):
                    for tc in batch:
                        yield event(EventKind.TOOL_CALL, tool_call=tc)
                    for tc, tool_result in zip(batch, await self._run_batch(batch, mctx, token)):
                        tool_results.append(tool_result)
                        ctx.messages.append(Message.tool_result(tool_result, tc.name))
                        yield event(EventKind.TOOL_RESULT, tool_result=tool_result, tool_name=tc.name)
        except Cancelled as e:
            partial = "".join(parts)
            if partial:
                ctx.messages.append(Message.assistant(partial, interrupted=True))
            logger.info("Run %s interrupted at iteration %d", run_id, iteration)
            self.telemetry.increment("agent.interrupted")
            yield event(EventKind.INTERRUPTED, content=partial, reason=e.reason)
            return

        self.telemetry.increment("agent.max_iterations_exceeded")
        raise MaxIterationsExceeded(self.config.max_iterations)
