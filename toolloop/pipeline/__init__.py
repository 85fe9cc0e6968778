"""Middleware stages and interceptor chains around each backend call."""

from __future__ import annotations

from toolloop.pipeline.interceptors import (
    ErrorDecision,
    InterceptorChain,
    InterceptorResult,
    RequestContext,
)
from toolloop.pipeline.middleware import (
    CacheStage,
    Capability,
    FunctionStage,
    LoggingStage,
    MiddlewareContext,
    MiddlewarePipeline,
    RateLimitStage,
    RetryStage,
    Stage,
)

__all__ = [
    "CacheStage",
    "Capability",
    "ErrorDecision",
    "FunctionStage",
    "InterceptorChain",
    "InterceptorResult",
    "LoggingStage",
    "MiddlewareContext",
    "MiddlewarePipeline",
    "RateLimitStage",
    "RequestContext",
    "RetryStage",
    "Stage",
]
