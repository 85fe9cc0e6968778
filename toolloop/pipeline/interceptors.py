"""Interceptor chains for requests, responses and errors.

Unlike middleware stages, a request or response interceptor can stop
its chain outright: returning ``InterceptorResult(data, proceed=False)``
substitutes ``data`` and skips the remaining interceptors, and a result
carrying ``error`` aborts the call by raising it.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field, replace
from typing import Any, Generic, Literal, TypeVar

from toolloop.cancellation import CancellationToken
from toolloop.errors import AgentError, PromptInjectionDetected, is_retryable
from toolloop.telemetry import Telemetry, ensure_safe
from toolloop.types import CompletionRequest, CompletionResponse, Message, Role, new_id

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RequestContext:
    """Shared by every interceptor touching one backend call (and its re-attempts)."""

    original_request: CompletionRequest
    request_id: str = field(default_factory=lambda: new_id("req"))
    started_at: float = field(default_factory=time.monotonic)
    metadata: dict[str, Any] = field(default_factory=dict)
    token: CancellationToken | None = None


@dataclass
class InterceptorResult(Generic[T]):
    data: T
    proceed: bool = True
    error: BaseException | None = None


@dataclass
class ErrorDecision:
    retry: bool = False
    error: BaseException | None = None
    delay: float = 0.0


RequestInterceptor = Callable[[CompletionRequest, RequestContext], Awaitable[InterceptorResult[CompletionRequest]]]
ResponseInterceptor = Callable[[CompletionResponse, RequestContext], Awaitable[InterceptorResult[CompletionResponse]]]
ErrorInterceptor = Callable[[BaseException, RequestContext], Awaitable[ErrorDecision]]


class InterceptorChain:
    def __init__(self) -> None:
        self.request_interceptors: list[RequestInterceptor] = []
        self.response_interceptors: list[ResponseInterceptor] = []
        self.error_interceptors: list[ErrorInterceptor] = []

    def add_request(self, interceptor: RequestInterceptor) -> InterceptorChain:
        self.request_interceptors.append(interceptor)
        return self

    def add_response(self, interceptor: ResponseInterceptor) -> InterceptorChain:
        self.response_interceptors.append(interceptor)
        return self

    def add_error(self, interceptor: ErrorInterceptor) -> InterceptorChain:
        self.error_interceptors.append(interceptor)
        return self

    async def process_request(self, request: CompletionRequest, ctx: RequestContext) -> CompletionRequest:
        current = request
        for interceptor in self.request_interceptors:
            result = await interceptor(current, ctx)
            if result.error is not None:
                raise result.error
            current = result.data
            if not result.proceed:
                break
        return current

    async def process_response(self, response: CompletionResponse, ctx: RequestContext) -> CompletionResponse:
        current = response
        for interceptor in reversed(self.response_interceptors):
            result = await interceptor(current, ctx)
            if result.error is not None:
                raise result.error
            current = result.data
            if not result.proceed:
                break
        return current

    async def process_error(self, error: BaseException, ctx: RequestContext) -> ErrorDecision:
        """Run error interceptors until one asks for a retry.

        An interceptor may replace the error. One that itself raises is
        logged and skipped.
        """
        current = error
        for interceptor in self.error_interceptors:
            try:
                decision = await interceptor(current, ctx)
            except Exception:
                logger.exception("Error interceptor %r failed", interceptor)
                continue
            if decision.error is not None:
                current = decision.error
            if decision.retry:
                return ErrorDecision(retry=True, error=current, delay=decision.delay)
        return ErrorDecision(retry=False, error=current)


# ---------------------------------------------------------------------------
# Composition
# ---------------------------------------------------------------------------


def compose_request_interceptors(*interceptors: RequestInterceptor) -> RequestInterceptor:
    """Fold several request interceptors into one, honouring ``proceed`` and ``error``."""

    async def composed(request: CompletionRequest, ctx: RequestContext) -> InterceptorResult[CompletionRequest]:
        current = request
        for interceptor in interceptors:
            result = await interceptor(current, ctx)
            if result.error is not None or not result.proceed:
                return result
            current = result.data
        return InterceptorResult(current)

    return composed


def compose_response_interceptors(*interceptors: ResponseInterceptor) -> ResponseInterceptor:
    async def composed(response: CompletionResponse, ctx: RequestContext) -> InterceptorResult[CompletionResponse]:
        current = response
        for interceptor in interceptors:
            result = await interceptor(current, ctx)
            if result.error is not None or not result.proceed:
                return result
            current = result.data
        return InterceptorResult(current)

    return composed


# ---------------------------------------------------------------------------
# Built-in interceptors
# ---------------------------------------------------------------------------


def logging_request_interceptor(level: int = logging.DEBUG) -> RequestInterceptor:
    async def intercept(request: CompletionRequest, ctx: RequestContext) -> InterceptorResult[CompletionRequest]:
        logger.log(level, "[%s] -> %d message(s)", ctx.request_id, len(request.messages))
        return InterceptorResult(request)

    return intercept


def logging_response_interceptor(level: int = logging.DEBUG) -> ResponseInterceptor:
    async def intercept(response: CompletionResponse, ctx: RequestContext) -> InterceptorResult[CompletionResponse]:
        elapsed = time.monotonic() - ctx.started_at
        logger.log(level, "[%s] <- %s in %.1fms", ctx.request_id, response.finish_reason, elapsed * 1000)
        return InterceptorResult(response)

    return intercept


def logging_error_interceptor(level: int = logging.WARNING) -> ErrorInterceptor:
    async def intercept(error: BaseException, ctx: RequestContext) -> ErrorDecision:
        logger.log(level, "[%s] !! %s: %s", ctx.request_id, type(error).__name__, error)
        return ErrorDecision()

    return intercept


def metrics_interceptors(
    telemetry: Telemetry,
) -> tuple[RequestInterceptor, ResponseInterceptor, ErrorInterceptor]:
    """Request count, latency, token usage and error counts, per backend call."""
    sink = ensure_safe(telemetry)

    async def on_request(request: CompletionRequest, ctx: RequestContext) -> InterceptorResult[CompletionRequest]:
        sink.increment("requests.total")
        return InterceptorResult(request)

    async def on_response(response: CompletionResponse, ctx: RequestContext) -> InterceptorResult[CompletionResponse]:
        sink.timing("requests.latency", time.monotonic() - ctx.started_at)
        if response.usage is not None:
            sink.increment("tokens.prompt", response.usage.prompt_tokens)
            sink.increment("tokens.completion", response.usage.completion_tokens)
        return InterceptorResult(response)

    async def on_error(error: BaseException, ctx: RequestContext) -> ErrorDecision:
        code = error.code if isinstance(error, AgentError) else type(error).__name__
        sink.increment("requests.errors", code=code)
        return ErrorDecision()

    return on_request, on_response, on_error


def _compile(patterns: Iterable[str | re.Pattern[str]]) -> list[re.Pattern[str]]:
    return [p if isinstance(p, re.Pattern) else re.compile(p, re.IGNORECASE) for p in patterns]


def content_filter_request_interceptor(
    patterns: Iterable[str | re.Pattern[str]],
    replacement: str = "[FILTERED]",
) -> RequestInterceptor:
    """Replace pattern matches in outgoing user messages."""
    compiled = _compile(patterns)

    async def intercept(request: CompletionRequest, ctx: RequestContext) -> InterceptorResult[CompletionRequest]:
        messages: list[Message] = []
        for message in request.messages:
            if message.role == Role.USER:
                content = message.content
                for pattern in compiled:
                    content = pattern.sub(replacement, content)
                if content != message.content:
                    message = replace(message, content=content)
            messages.append(message)
        return InterceptorResult(replace(request, messages=messages))

    return intercept


def content_filter_response_interceptor(
    patterns: Iterable[str | re.Pattern[str]],
    replacement: str = "[FILTERED]",
) -> ResponseInterceptor:
    """Replace pattern matches in the backend's text output."""
    compiled = _compile(patterns)

    async def intercept(response: CompletionResponse, ctx: RequestContext) -> InterceptorResult[CompletionResponse]:
        content = response.content
        for pattern in compiled:
            content = pattern.sub(replacement, content)
        if content == response.content:
            return InterceptorResult(response)
        return InterceptorResult(replace(response, content=content))

    return intercept


DEFAULT_INJECTION_PATTERNS: tuple[str, ...] = (
    r"ignore\s+(all\s+)?(previous|prior|above)\s+(instructions|prompts)",
    r"disregard\s+(all\s+)?(previous|prior|above)",
    r"forget\s+(everything|all)\s+(you|that)",
    r"you\s+are\s+now\s+(a|an)\s+",
    r"new\s+instructions?\s*:",
    r"system\s*prompt\s*:",
    r"\[\s*system\s*\]",
    r"<\s*/?\s*system\s*>",
)

InjectionAction = Literal["warn", "block", "sanitize"]


def injection_detection_interceptor(
    patterns: Iterable[str | re.Pattern[str]] = DEFAULT_INJECTION_PATTERNS,
    action: InjectionAction = "warn",
    replacement: str = "[REDACTED]",
) -> RequestInterceptor:
    """Look for prompt-injection phrasing in user messages.

    ``warn`` logs and records the matches in ``ctx.metadata``; ``block``
    aborts the call with ``PromptInjectionDetected``; ``sanitize``
    replaces the matches and lets the call continue.
    """
    compiled = _compile(patterns)

    async def intercept(request: CompletionRequest, ctx: RequestContext) -> InterceptorResult[CompletionRequest]:
        matched: list[str] = []
        messages: list[Message] = []
        for message in request.messages:
            if message.role != Role.USER:
                messages.append(message)
                continue
            content = message.content
            for pattern in compiled:
                if pattern.search(content):
                    matched.append(pattern.pattern)
                    if action == "sanitize":
                        content = pattern.sub(replacement, content)
            messages.append(replace(message, content=content) if content != message.content else message)

        if not matched:
            return InterceptorResult(request)

        ctx.metadata["injection_patterns"] = matched
        if action == "block":
            logger.warning("[%s] Blocked request: possible prompt injection", ctx.request_id)
            return InterceptorResult(request, proceed=False, error=PromptInjectionDetected(matched))
        if action == "sanitize":
            logger.warning("[%s] Sanitized possible prompt injection", ctx.request_id)
            return InterceptorResult(replace(request, messages=messages))
        logger.warning("[%s] Possible prompt injection: %s", ctx.request_id, matched)
        return InterceptorResult(request)

    return intercept


def transform_request_interceptor(
    fn: Callable[[CompletionRequest], CompletionRequest],
) -> RequestInterceptor:
    async def intercept(request: CompletionRequest, ctx: RequestContext) -> InterceptorResult[CompletionRequest]:
        return InterceptorResult(fn(request))

    return intercept


def transform_response_interceptor(
    fn: Callable[[CompletionResponse], CompletionResponse],
) -> ResponseInterceptor:
    async def intercept(response: CompletionResponse, ctx: RequestContext) -> InterceptorResult[CompletionResponse]:
        return InterceptorResult(fn(response))

    return intercept


def retry_error_interceptor(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    predicate: Callable[[BaseException], bool] = is_retryable,
) -> ErrorInterceptor:
    """Ask for a retry of retryable errors, at most ``max_retries`` times per call.

    The delay doubles with each attempt: ``min(base_delay * 2**n, max_delay)``.
    """

    async def intercept(error: BaseException, ctx: RequestContext) -> ErrorDecision:
        count = ctx.metadata.get("interceptor_retries", 0)
        if count >= max_retries or not predicate(error):
            return ErrorDecision(error=error)
        ctx.metadata["interceptor_retries"] = count + 1
        delay = min(base_delay * 2**count, max_delay)
        logger.info("[%s] Retrying in %.2fs (%d/%d)", ctx.request_id, delay, count + 1, max_retries)
        return ErrorDecision(retry=True, error=error, delay=delay)

    return intercept
