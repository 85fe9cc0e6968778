"""Composition of the resilience primitives around a backend.

Every call goes through, outermost first::

    deduplicate -> bulkhead -> circuit breaker -> retry -> backend (call_timeout)

Streams go through the bulkhead and the breaker only: a partially
consumed stream can be neither shared nor replayed.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator

from toolloop.backends.base import Backend, StreamChunk
from toolloop.cancellation import CancellationToken, race
from toolloop.config import ResilienceConfig
from toolloop.errors import BackendTimeout, classify_exception
from toolloop.resilience.bulkhead import Bulkhead
from toolloop.resilience.circuit_breaker import CircuitBreaker
from toolloop.resilience.dedup import RequestDeduplicator, make_key
from toolloop.resilience.retry import RetryExecutor
from toolloop.telemetry import Telemetry, ensure_safe, span
from toolloop.types import CompletionRequest, CompletionResponse

logger = logging.getLogger(__name__)


class ResilienceRegistry:
    """Hands out one breaker, bulkhead and deduplicator per backend name.

    Create one per process and pass it to every loop that should share
    protection state.
    """

    def __init__(self, config: ResilienceConfig | None = None, telemetry: Telemetry | None = None) -> None:
        self.config = config or ResilienceConfig()
        self.telemetry = ensure_safe(telemetry)
        self._breakers: dict[str, CircuitBreaker] = {}
        self._bulkheads: dict[str, Bulkhead] = {}
        self._dedups: dict[str, RequestDeduplicator] = {}

    def breaker(self, name: str) -> CircuitBreaker:
        if name not in self._breakers:
            self._breakers[name] = CircuitBreaker(name, self.config.circuit_breaker, self.telemetry)
        return self._breakers[name]

    def bulkhead(self, name: str) -> Bulkhead:
        if name not in self._bulkheads:
            self._bulkheads[name] = Bulkhead(name, self.config.bulkhead, self.telemetry)
        return self._bulkheads[name]

    def deduplicator(self, name: str) -> RequestDeduplicator:
        if name not in self._dedups:
            self._dedups[name] = RequestDeduplicator(self.config.dedup_ttl, self.telemetry)
        return self._dedups[name]


class ResilientBackend:
    """A ``Backend`` wrapping another one with the full protection stack."""

    def __init__(
        self,
        backend: Backend,
        *,
        breaker: CircuitBreaker | None = None,
        bulkhead: Bulkhead | None = None,
        retry: RetryExecutor | None = None,
        deduplicator: RequestDeduplicator | None = None,
        call_timeout: float | None = 60.0,
        telemetry: Telemetry | None = None,
    ) -> None:
        self.inner = backend
        self.name = backend.name
        self.breaker = breaker or CircuitBreaker(backend.name, telemetry=telemetry)
        self.bulkhead = bulkhead or Bulkhead(backend.name, telemetry=telemetry)
        self.retry = retry or RetryExecutor(telemetry=telemetry)
        self.deduplicator = deduplicator
        self.call_timeout = call_timeout
        self.telemetry = ensure_safe(telemetry)

    @classmethod
    def from_registry(
        cls,
        backend: Backend,
        registry: ResilienceRegistry,
        call_timeout: float | None = 60.0,
    ) -> ResilientBackend:
        config = registry.config
        return cls(
            backend,
            breaker=registry.breaker(backend.name),
            bulkhead=registry.bulkhead(backend.name),
            retry=RetryExecutor(config.retry, telemetry=registry.telemetry),
            deduplicator=registry.deduplicator(backend.name) if config.deduplicate else None,
            call_timeout=call_timeout,
            telemetry=registry.telemetry,
        )

    async def _attempt(self, request: CompletionRequest, token: CancellationToken | None) -> CompletionResponse:
        try:
            with span(self.telemetry, "backend.call", backend=self.name):
                return await race(
                    self.inner.complete(request),
                    token,
                    timeout=self.call_timeout,
                    timeout_error=BackendTimeout(
                        f"Backend '{self.name}' did not answer within {self.call_timeout}s",
                        backend=self.name,
                    ),
                )
        except Exception as e:
            error = classify_exception(e, self.name)
            if error is e:
                raise
            raise error from e

    async def _protected(self, request: CompletionRequest, token: CancellationToken | None) -> CompletionResponse:
        async def guarded() -> CompletionResponse:
            return await self.breaker.call(
                lambda: self.retry.execute(lambda: self._attempt(request, token), token)
            )

        return await self.bulkhead.execute(guarded, token)

    async def complete(
        self,
        request: CompletionRequest,
        token: CancellationToken | None = None,
    ) -> CompletionResponse:
        if self.deduplicator is None:
            return await self._protected(request, token)
        key = make_key(request.fingerprint_payload())
        # The shared call must not die with the first caller; each caller races its own token.
        return await self.deduplicator.execute(key, lambda: self._protected(request, None), token)

    async def stream(
        self,
        request: CompletionRequest,
        token: CancellationToken | None = None,
    ) -> AsyncIterator[StreamChunk]:
        async with self.bulkhead.slot(token):
            async with self.breaker.guard():
                try:
                    async for chunk in self.inner.stream(request):
                        yield chunk
                except GeneratorExit:
                    raise
                except Exception as e:
                    error = classify_exception(e, self.name)
                    if error is e:
                        raise
                    raise error from e
