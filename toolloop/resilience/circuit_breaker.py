"""Circuit breaker guarding one backend.

State machine::

    closed --(failure_threshold consecutive failures)--> open
    open   --(reset_timeout elapsed, next call)--------> half_open
    half_open --(success_threshold probe successes)----> closed
    half_open --(any probe failure)--------------------> open

In half-open exactly one probe may be in flight; other callers are
rejected with ``CircuitOpen`` until it settles. Transitions contain no
``await`` and are therefore atomic on the event loop.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import StrEnum
from typing import TypeVar

from toolloop.config import CircuitBreakerConfig
from toolloop.errors import Cancelled, CircuitOpen
from toolloop.telemetry import Telemetry, ensure_safe

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitStats:
    state: CircuitState
    failure_count: int
    success_count: int
    last_failure_at: float | None
    probe_in_flight: bool


class CircuitBreaker:
    """Fail fast while a backend is unhealthy.

    Example::

        breaker = CircuitBreaker("openai", CircuitBreakerConfig(failure_threshold=3))
        response = await breaker.call(lambda: backend.complete(request))
    """

    def __init__(
        self,
        name: str = "default",
        config: CircuitBreakerConfig | None = None,
        telemetry: Telemetry | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.telemetry = ensure_safe(telemetry)
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_at: float | None = None
        self._probe_in_flight = False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> CircuitState:
        return self._state

    def stats(self) -> CircuitStats:
        return CircuitStats(
            state=self._state,
            failure_count=self._failure_count,
            success_count=self._success_count,
            last_failure_at=self._last_failure_at,
            probe_in_flight=self._probe_in_flight,
        )

    def is_call_permitted(self) -> bool:
        """Whether a call made now would be admitted (without admitting it)."""
        if self._state == CircuitState.CLOSED:
            return True
        if self._state == CircuitState.OPEN:
            return self._reset_timeout_elapsed()
        return not self._probe_in_flight

    def reset(self) -> None:
        self._transition(CircuitState.CLOSED)
        self._last_failure_at = None
        self._probe_in_flight = False

    def _reset_timeout_elapsed(self) -> bool:
        if self._last_failure_at is None:
            return True
        return self._clock() - self._last_failure_at >= self.config.reset_timeout

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        if new_state == CircuitState.CLOSED:
            self._failure_count = 0
            self._success_count = 0
        elif new_state == CircuitState.HALF_OPEN:
            self._success_count = 0

        logger.info("Circuit '%s': %s -> %s", self.name, old_state, new_state)
        self.telemetry.event(
            "circuit.state_change", breaker=self.name, old=str(old_state), new=str(new_state)
        )
        if self.config.on_state_change is not None:
            try:
                self.config.on_state_change(old_state, new_state)
            except Exception:
                logger.exception("on_state_change callback failed for circuit '%s'", self.name)

    # ------------------------------------------------------------------
    # Admission & outcome recording
    # ------------------------------------------------------------------

    def _acquire(self) -> bool:
        """Admit a call or raise ``CircuitOpen``. Returns True when the call is the probe."""
        if self._state == CircuitState.OPEN:
            if not self._reset_timeout_elapsed():
                self.telemetry.increment("circuit.rejected", breaker=self.name)
                raise CircuitOpen(
                    f"Circuit '{self.name}' is open",
                    context={"breaker": self.name},
                )
            self._transition(CircuitState.HALF_OPEN)

        if self._state == CircuitState.HALF_OPEN:
            if self._probe_in_flight:
                self.telemetry.increment("circuit.rejected", breaker=self.name)
                raise CircuitOpen(
                    f"Circuit '{self.name}' is half-open and probing",
                    context={"breaker": self.name},
                )
            self._probe_in_flight = True
            return True
        return False

    def _on_success(self, probe: bool) -> None:
        if probe:
            self._probe_in_flight = False
        if self._state == CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self.config.success_threshold:
                self._transition(CircuitState.CLOSED)
        else:
            self._failure_count = 0

    def _on_failure(self, error: BaseException, probe: bool) -> None:
        if probe:
            self._probe_in_flight = False
        if isinstance(error, (Cancelled, asyncio.CancelledError, GeneratorExit)):
            return
        if self.config.failure_filter is not None and not self.config.failure_filter(error):
            return

        self._failure_count += 1
        self._last_failure_at = self._clock()
        self.telemetry.increment("circuit.failure", breaker=self.name)
        if self._state == CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN)
        elif self._failure_count >= self.config.failure_threshold:
            self._transition(CircuitState.OPEN)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def guard(self) -> AsyncIterator[None]:
        """Run the enclosed block under the breaker.

        Used for streams, where the guarded work is not a single awaitable.
        """
        probe = self._acquire()
        try:
            yield
        except BaseException as e:
            self._on_failure(e, probe)
            raise
        else:
            self._on_success(probe)

    async def call(self, fn: Callable[[], Awaitable[T]]) -> T:
        async with self.guard():
            return await fn()
