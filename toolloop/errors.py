"""Error taxonomy.

Every failure the core raises or absorbs is one of these. ``retryable``
tells the retry layer whether a re-attempt can help; ``retry_after``
carries a backend-provided minimum wait in seconds.
"""

from __future__ import annotations

import asyncio
import re
from typing import Any


class AgentError(Exception):
    """Base class for all toolloop errors."""

    code: str = "agent_error"
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        retryable: bool | None = None,
        retry_after: float | None = None,
        cause: BaseException | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.retryable = self.default_retryable if retryable is None else retryable
        self.retry_after = retry_after
        self.cause = cause
        self.context = context or {}
        if cause is not None:
            self.__cause__ = cause

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "retry_after": self.retry_after,
            "context": self.context,
        }


# ---------------------------------------------------------------------------
# Backend errors
# ---------------------------------------------------------------------------


class BackendError(AgentError):
    code = "backend_error"

    def __init__(
        self,
        message: str,
        *,
        backend: str = "",
        status_code: int | None = None,
        **kwargs: Any,
    ) -> None:
        if "retryable" not in kwargs or kwargs["retryable"] is None:
            kwargs["retryable"] = _status_retryable(status_code) or self.default_retryable
        super().__init__(message, **kwargs)
        self.backend = backend
        self.status_code = status_code


class BackendUnavailable(BackendError):
    code = "backend_unavailable"
    default_retryable = True


class RateLimited(BackendError):
    code = "rate_limited"
    default_retryable = True

    def __init__(self, message: str = "Rate limit exceeded", **kwargs: Any) -> None:
        kwargs.setdefault("status_code", 429)
        super().__init__(message, **kwargs)


class AuthenticationFailed(BackendError):
    code = "authentication_failed"

    def __init__(self, message: str = "Authentication failed", **kwargs: Any) -> None:
        kwargs.setdefault("status_code", 401)
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)


class BackendTimeout(BackendError):
    code = "timeout"
    default_retryable = True


# ---------------------------------------------------------------------------
# Resilience rejections
# ---------------------------------------------------------------------------


class CircuitOpen(AgentError):
    code = "circuit_open"
    default_retryable = True


class BulkheadRejected(AgentError):
    code = "bulkhead_rejected"
    default_retryable = True


class BulkheadTimeout(BulkheadRejected):
    code = "bulkhead_timeout"


# ---------------------------------------------------------------------------
# Tool & loop errors
# ---------------------------------------------------------------------------


class ToolNotFound(AgentError):
    code = "tool_not_found"

    def __init__(self, name: str) -> None:
        super().__init__(f"Tool not found: {name}", context={"tool": name})
        self.tool_name = name


class ToolExecutionFailed(AgentError):
    code = "tool_execution_failed"

    def __init__(self, name: str, message: str, *, cause: BaseException | None = None) -> None:
        super().__init__(f"Tool '{name}' failed: {message}", cause=cause, context={"tool": name})
        self.tool_name = name


class MaxIterationsExceeded(AgentError):
    code = "max_iterations"

    def __init__(self, iterations: int) -> None:
        super().__init__(
            f"Maximum iterations ({iterations}) exceeded",
            context={"iterations": iterations},
        )
        self.iterations = iterations


class Cancelled(AgentError):
    code = "cancelled"

    def __init__(self, reason: str | None = None) -> None:
        super().__init__(reason or "Operation cancelled", retryable=False)
        self.reason = reason


class ConfigurationError(AgentError):
    code = "configuration"


class PromptInjectionDetected(AgentError):
    code = "prompt_injection"

    def __init__(self, patterns: list[str]) -> None:
        super().__init__("Potential prompt injection detected", context={"patterns": patterns})
        self.patterns = patterns


# ---------------------------------------------------------------------------
# Classification helpers
# ---------------------------------------------------------------------------

_RETRYABLE_MESSAGE = re.compile(
    r"timeout|timed out|rate limit|too many requests|\b429\b|\b50[0234]\b|overloaded|unavailable",
    re.IGNORECASE,
)


def _status_retryable(status_code: int | None) -> bool:
    if status_code is None:
        return False
    return status_code in (408, 429) or status_code >= 500


def is_retryable(exc: BaseException) -> bool:
    """Default retry predicate."""
    if isinstance(exc, (Cancelled, asyncio.CancelledError)):
        return False
    if isinstance(exc, AgentError):
        return exc.retryable
    if isinstance(exc, TimeoutError):
        return True
    return bool(_RETRYABLE_MESSAGE.search(str(exc)))


def classify_exception(exc: BaseException, backend: str = "") -> AgentError:
    """Map a foreign exception onto the taxonomy.

    Already-classified errors pass through unchanged. Vendor SDK errors
    are recognised by a ``status_code`` attribute, built-in timeouts and,
    as a last resort, their message.
    """
    if isinstance(exc, AgentError):
        return exc
    if isinstance(exc, asyncio.CancelledError):
        return Cancelled()

    message = str(exc) or type(exc).__name__
    status = getattr(exc, "status_code", None)
    if not isinstance(status, int):
        status = None

    if isinstance(exc, TimeoutError):
        return BackendTimeout(message, backend=backend, cause=exc)
    if status == 429 or re.search(r"rate limit|too many requests", message, re.IGNORECASE):
        retry_after = getattr(exc, "retry_after", None)
        return RateLimited(
            message,
            backend=backend,
            retry_after=float(retry_after) if retry_after is not None else None,
            cause=exc,
        )
    if status in (401, 403) or re.search(r"authenticat|api key", message, re.IGNORECASE):
        return AuthenticationFailed(message, backend=backend, status_code=status or 401, cause=exc)
    if re.search(r"timeout|timed out", message, re.IGNORECASE):
        return BackendTimeout(message, backend=backend, cause=exc)
    if (status is not None and status >= 500) or re.search(
        r"\b50[0234]\b|unavailable|overloaded", message, re.IGNORECASE
    ):
        return BackendUnavailable(message, backend=backend, status_code=status, cause=exc)
    return BackendError(message, backend=backend, status_code=status, cause=exc)
