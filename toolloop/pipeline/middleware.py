"""Middleware pipeline surrounding each backend call.

A ``Stage`` overrides any subset of five hooks. Which hooks a stage
implements is recorded once, when the class is defined, as its
``capabilities`` flag set; the pipeline only visits stages that hold the
capability for the phase being run.

Ordering:

- ``before_request``: registration order, each stage sees the context the
  previous one returned. Stops early once a stage answers the request.
- ``after_response``: reverse registration order.
- ``on_error``: every stage, registration order.
- ``on_tool_call`` / ``on_tool_result``: registration order, transforming.

A stage that raises aborts the rest of that phase and the error propagates.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict, deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import IntFlag, auto
from typing import Any, ClassVar

from toolloop.config import RetryConfig
from toolloop.errors import RateLimited, is_retryable
from toolloop.resilience.dedup import make_key
from toolloop.resilience.retry import compute_delay
from toolloop.types import AgentContext, CompletionRequest, CompletionResponse, ToolCall, ToolResult

logger = logging.getLogger(__name__)


class Capability(IntFlag):
    NONE = 0
    BEFORE_REQUEST = auto()
    AFTER_RESPONSE = auto()
    ON_ERROR = auto()
    ON_TOOL_CALL = auto()
    ON_TOOL_RESULT = auto()


_HOOKS: dict[str, Capability] = {
    "before_request": Capability.BEFORE_REQUEST,
    "after_response": Capability.AFTER_RESPONSE,
    "on_error": Capability.ON_ERROR,
    "on_tool_call": Capability.ON_TOOL_CALL,
    "on_tool_result": Capability.ON_TOOL_RESULT,
}


@dataclass
class MiddlewareContext:
    """What a stage sees for one backend call."""

    request: CompletionRequest
    agent: AgentContext
    iteration: int = 0
    cached_response: CompletionResponse | None = None
    retry_requested: bool = False
    retry_delay: float = 0.0
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def metadata(self) -> dict[str, Any]:
        """Run-scoped scratch space shared by all stages."""
        return self.agent.metadata

    @property
    def messages(self):
        return self.agent.messages

    @property
    def answered(self) -> bool:
        return self.cached_response is not None

    def answer(self, response: CompletionResponse) -> None:
        """Short-circuit the backend call with ``response``."""
        self.cached_response = response


class Stage:
    """Base class for middleware stages. Override only the hooks you need."""

    name: ClassVar[str] = "stage"
    capabilities: ClassVar[Capability] = Capability.NONE

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        caps = Capability.NONE
        for hook, flag in _HOOKS.items():
            if getattr(cls, hook) is not getattr(Stage, hook):
                caps |= flag
        cls.capabilities = caps

    async def before_request(self, ctx: MiddlewareContext) -> MiddlewareContext:
        return ctx

    async def after_response(self, response: CompletionResponse, ctx: MiddlewareContext) -> CompletionResponse:
        return response

    async def on_error(self, error: BaseException, ctx: MiddlewareContext) -> None:
        return None

    async def on_tool_call(self, call: ToolCall, ctx: MiddlewareContext) -> ToolCall:
        return call

    async def on_tool_result(self, result: ToolResult, ctx: MiddlewareContext) -> ToolResult:
        return result


class FunctionStage(Stage):
    """Build a stage from plain coroutine functions.

    Example::

        async def tag(ctx):
            ctx.metadata["tagged"] = True
            return ctx

        pipeline.use(FunctionStage("tagger", before_request=tag))
    """

    def __init__(
        self,
        name: str,
        *,
        before_request: Callable[..., Awaitable[Any]] | None = None,
        after_response: Callable[..., Awaitable[Any]] | None = None,
        on_error: Callable[..., Awaitable[Any]] | None = None,
        on_tool_call: Callable[..., Awaitable[Any]] | None = None,
        on_tool_result: Callable[..., Awaitable[Any]] | None = None,
    ) -> None:
        self.name = name  # type: ignore[misc]
        self._fns = {
            "before_request": before_request,
            "after_response": after_response,
            "on_error": on_error,
            "on_tool_call": on_tool_call,
            "on_tool_result": on_tool_result,
        }
        caps = Capability.NONE
        for hook, fn in self._fns.items():
            if fn is not None:
                caps |= _HOOKS[hook]
        self.capabilities = caps  # type: ignore[misc]

    async def before_request(self, ctx: MiddlewareContext) -> MiddlewareContext:
        result = await self._fns["before_request"](ctx)
        return ctx if result is None else result

    async def after_response(self, response: CompletionResponse, ctx: MiddlewareContext) -> CompletionResponse:
        result = await self._fns["after_response"](response, ctx)
        return response if result is None else result

    async def on_error(self, error: BaseException, ctx: MiddlewareContext) -> None:
        await self._fns["on_error"](error, ctx)

    async def on_tool_call(self, call: ToolCall, ctx: MiddlewareContext) -> ToolCall:
        result = await self._fns["on_tool_call"](call, ctx)
        return call if result is None else result

    async def on_tool_result(self, result: ToolResult, ctx: MiddlewareContext) -> ToolResult:
        transformed = await self._fns["on_tool_result"](result, ctx)
        return result if transformed is None else transformed


class MiddlewarePipeline:
    """Ordered collection of stages."""

    def __init__(self, stages: list[Stage] | None = None) -> None:
        self._stages: list[Stage] = list(stages or [])

    def use(self, stage: Stage) -> MiddlewarePipeline:
        self._stages.append(stage)
        return self

    def __len__(self) -> int:
        return len(self._stages)

    @property
    def stages(self) -> list[Stage]:
        return list(self._stages)

    def _with(self, capability: Capability) -> list[Stage]:
        return [s for s in self._stages if s.capabilities & capability]

    async def run_before_request(self, ctx: MiddlewareContext) -> MiddlewareContext:
        for stage in self._with(Capability.BEFORE_REQUEST):
            ctx = await stage.before_request(ctx)
            if ctx.answered:
                logger.debug("Stage '%s' answered the request", stage.name)
                break
        return ctx

    async def run_after_response(self, response: CompletionResponse, ctx: MiddlewareContext) -> CompletionResponse:
        for stage in reversed(self._with(Capability.AFTER_RESPONSE)):
            response = await stage.after_response(response, ctx)
        return response

    async def run_on_error(self, error: BaseException, ctx: MiddlewareContext) -> None:
        for stage in self._with(Capability.ON_ERROR):
            await stage.on_error(error, ctx)

    async def run_on_tool_call(self, call: ToolCall, ctx: MiddlewareContext) -> ToolCall:
        for stage in self._with(Capability.ON_TOOL_CALL):
            call = await stage.on_tool_call(call, ctx)
        return call

    async def run_on_tool_result(self, result: ToolResult, ctx: MiddlewareContext) -> ToolResult:
        for stage in self._with(Capability.ON_TOOL_RESULT):
            result = await stage.on_tool_result(result, ctx)
        return result


# ---------------------------------------------------------------------------
# Built-in stages
# ---------------------------------------------------------------------------


class LoggingStage(Stage):
    name = "logging"

    def __init__(self, level: int = logging.INFO) -> None:
        self.level = level

    async def before_request(self, ctx: MiddlewareContext) -> MiddlewareContext:
        logger.log(
            self.level,
            "[iter %d] request: %d message(s), %d tool(s)",
            ctx.iteration,
            len(ctx.request.messages),
            len(ctx.request.tools or []),
        )
        return ctx

    async def after_response(self, response: CompletionResponse, ctx: MiddlewareContext) -> CompletionResponse:
        logger.log(
            self.level,
            "[iter %d] response: finish=%s tool_calls=%d tokens=%s",
            ctx.iteration,
            response.finish_reason,
            len(response.tool_calls or []),
            response.usage.total_tokens if response.usage else "?",
        )
        return response

    async def on_error(self, error: BaseException, ctx: MiddlewareContext) -> None:
        logger.log(self.level, "[iter %d] error: %s: %s", ctx.iteration, type(error).__name__, error)

    async def on_tool_call(self, call: ToolCall, ctx: MiddlewareContext) -> ToolCall:
        logger.log(self.level, "[iter %d] tool call: %s(%s)", ctx.iteration, call.name, call.arguments)
        return call

    async def on_tool_result(self, result: ToolResult, ctx: MiddlewareContext) -> ToolResult:
        logger.log(
            self.level,
            "[iter %d] tool result %s: %s",
            ctx.iteration,
            result.tool_call_id,
            "error" if result.error else "ok",
        )
        return result


class CacheStage(Stage):
    """Answer repeated requests from a bounded TTL cache.

    The key is the fingerprint of the request's semantic content. Only
    responses produced by the backend (cache misses) are stored; the
    oldest entry is evicted when the cache is full.
    """

    name = "cache"

    def __init__(
        self,
        ttl: float = 300.0,
        max_size: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self.max_size = max_size
        self._clock = clock
        self._entries: OrderedDict[str, tuple[CompletionResponse, float]] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    async def before_request(self, ctx: MiddlewareContext) -> MiddlewareContext:
        key = make_key(ctx.request.fingerprint_payload())
        ctx.extra["cache_key"] = key
        entry = self._entries.get(key)
        if entry is not None:
            response, stored_at = entry
            if self._clock() - stored_at <= self.ttl:
                self.hits += 1
                ctx.metadata["cache_hits"] = ctx.metadata.get("cache_hits", 0) + 1
                ctx.extra["cache_hit"] = True
                ctx.answer(response)
                return ctx
            del self._entries[key]
        self.misses += 1
        return ctx

    async def after_response(self, response: CompletionResponse, ctx: MiddlewareContext) -> CompletionResponse:
        key = ctx.extra.get("cache_key")
        if key is None or ctx.extra.get("cache_hit"):
            return response
        while len(self._entries) >= self.max_size:
            self._entries.popitem(last=False)
        self._entries[key] = (response, self._clock())
        return response


class RateLimitStage(Stage):
    """Reject requests beyond ``max_requests`` per sliding ``window`` seconds."""

    name = "rate_limit"

    def __init__(
        self,
        max_requests: int = 60,
        window: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window = window
        self._clock = clock
        self._timestamps: deque[float] = deque()

    async def before_request(self, ctx: MiddlewareContext) -> MiddlewareContext:
        now = self._clock()
        while self._timestamps and now - self._timestamps[0] >= self.window:
            self._timestamps.popleft()
        if len(self._timestamps) >= self.max_requests:
            retry_after = self.window - (now - self._timestamps[0])
            raise RateLimited(
                f"Rate limit exceeded: {self.max_requests} requests per {self.window:g}s",
                retry_after=retry_after,
                retryable=False,
            )
        self._timestamps.append(now)
        return ctx


class RetryStage(Stage):
    """Ask the loop to re-attempt a failed backend call.

    The retry count lives in the run metadata and is reset after every
    successful response.
    """

    name = "retry"

    def __init__(
        self,
        config: RetryConfig | None = None,
        predicate: Callable[[BaseException], bool] = is_retryable,
    ) -> None:
        self.config = config or RetryConfig()
        self.predicate = predicate

    async def on_error(self, error: BaseException, ctx: MiddlewareContext) -> None:
        count = ctx.metadata.get("retry_count", 0)
        if count >= self.config.max_retries or not self.predicate(error):
            return
        ctx.metadata["retry_count"] = count + 1
        ctx.retry_requested = True
        ctx.retry_delay = max(
            ctx.retry_delay,
            compute_delay(self.config, count, retry_after=getattr(error, "retry_after", None)),
        )

    async def after_response(self, response: CompletionResponse, ctx: MiddlewareContext) -> CompletionResponse:
        ctx.metadata["retry_count"] = 0
        return response
