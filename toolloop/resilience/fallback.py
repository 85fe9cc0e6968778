"""Fallback across several backends."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from toolloop.backends.base import Backend
from toolloop.errors import Cancelled, CircuitOpen
from toolloop.resilience.circuit_breaker import CircuitBreaker
from toolloop.types import CompletionRequest, CompletionResponse

logger = logging.getLogger(__name__)


class FallbackBackend:
    """Try each backend in order until one answers.

    Backends whose breaker currently refuses calls are skipped without
    being invoked. Cancellation is never masked by a fallback attempt.
    The last error is re-raised when every candidate fails.
    """

    def __init__(
        self,
        backends: Sequence[Backend],
        breakers: dict[str, CircuitBreaker] | None = None,
        name: str = "fallback",
    ) -> None:
        if not backends:
            raise ValueError("FallbackBackend needs at least one backend")
        self.backends = list(backends)
        self.breakers = breakers or {}
        self.name = name

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        last_error: Exception | None = None
        for backend in self.backends:
            breaker = self.breakers.get(backend.name) or getattr(backend, "breaker", None)
            if breaker is not None and not breaker.is_call_permitted():
                logger.info("Skipping backend '%s': circuit open", backend.name)
                last_error = CircuitOpen(f"Circuit '{backend.name}' is open")
                continue
            try:
                return await backend.complete(request)
            except Cancelled:
                raise
            except Exception as e:
                logger.warning("Backend '%s' failed, trying next: %s", backend.name, e)
                last_error = e

        assert last_error is not None
        raise last_error

    def stream(self, request: CompletionRequest):
        # Streams cannot be replayed against another backend once started.
        return self.backends[0].stream(request)


def with_fallback(*backends: Backend, breakers: dict[str, CircuitBreaker] | None = None) -> FallbackBackend:
    return FallbackBackend(backends, breakers)
