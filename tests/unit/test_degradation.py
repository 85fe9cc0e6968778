"""Tests for graceful degradation and its effect on the agent loop."""

from __future__ import annotations

import pytest

from toolloop.agent.events import EventKind
from toolloop.agent.loop import AgentExecutionLoop
from toolloop.config import AgentConfig, CircuitBreakerConfig, RetryConfig
from toolloop.errors import BackendUnavailable
from toolloop.resilience.circuit_breaker import CircuitBreaker, CircuitState
from toolloop.resilience.degradation import (
    DEFAULT_FALLBACKS,
    DegradationLevel,
    DegradationManager,
    simplify_response,
)
from toolloop.resilience.policy import ResilientBackend
from toolloop.resilience.retry import RetryExecutor
from toolloop.telemetry import InMemoryTelemetry
from toolloop.tools.base import ToolRegistry, tool
from toolloop.types import CompletionResponse, FinishReason, ToolCall, Usage


def _registry() -> ToolRegistry:
    @tool(parallel_safe=True)
    async def add(a: int, b: int) -> dict:
        """Add two integers."""
        return {"result": a + b}

    registry = ToolRegistry()
    registry.register(add)
    return registry


def _loop(backend, manager: DegradationManager) -> AgentExecutionLoop:
    return AgentExecutionLoop(backend, _registry(), AgentConfig(), degradation=manager)


def _guarded(inner, clock) -> ResilientBackend:
    breaker = CircuitBreaker(
        inner.name,
        CircuitBreakerConfig(failure_threshold=1, reset_timeout=30.0, success_threshold=1),
        clock=clock,
    )
    return ResilientBackend(inner, breaker=breaker, retry=RetryExecutor(RetryConfig(max_retries=0)))


async def _trip(backend: ResilientBackend) -> None:
    async def fail():
        raise BackendUnavailable("down")

    with pytest.raises(BackendUnavailable):
        await backend.breaker.call(fail)
    assert backend.breaker.state == CircuitState.OPEN


# ── DegradationManager ────────────────────────────────────────


class TestLevels:
    def test_feature_flags_per_level(self):
        manager = DegradationManager()
        assert manager.is_enabled("tools") and manager.is_enabled("streaming")

        manager.set_level("reduced")
        assert manager.is_enabled("tools")
        assert not manager.is_enabled("streaming")

        manager.set_level(DegradationLevel.MINIMAL)
        assert not manager.is_enabled("tools")
        assert manager.is_enabled("caching")
        assert manager.features.complexity == 3

        manager.set_level("offline")
        assert not any(manager.is_enabled(f) for f in ("tools", "streaming", "caching", "memory"))

    def test_unknown_level_raises(self):
        with pytest.raises(ValueError, match="Unknown degradation level"):
            DegradationManager().set_level("degraded")

    def test_level_change_is_counted_once(self):
        telemetry = InMemoryTelemetry()
        manager = DegradationManager(telemetry=telemetry)
        manager.set_level("minimal")
        manager.set_level("minimal")
        assert telemetry.counters["degradation.level_change"] == 1

    def test_custom_flags(self):
        manager = DegradationManager()
        assert not manager.is_enabled("beta_search")
        manager.set_custom("beta_search", True)
        assert manager.is_enabled("beta_search")
        manager.set_level("reduced")
        assert manager.is_enabled("beta_search")

    @pytest.mark.parametrize(
        "error_rate, latency, expected",
        [
            (0.0, 0.5, DegradationLevel.FULL),
            (0.2, 0.5, DegradationLevel.REDUCED),
            (0.0, 6.0, DegradationLevel.REDUCED),
            (0.4, 0.5, DegradationLevel.MINIMAL),
            (0.6, 0.5, DegradationLevel.OFFLINE),
            (0.0, 31.0, DegradationLevel.OFFLINE),
        ],
    )
    def test_adjust_for_health(self, error_rate, latency, expected):
        manager = DegradationManager()
        assert manager.adjust_for_health(error_rate, latency) == expected
        assert manager.level == expected


class TestBreakerSync:
    def test_open_circuit_goes_offline(self):
        manager = DegradationManager()
        assert manager.sync_with_breaker(CircuitState.OPEN) == DegradationLevel.OFFLINE

    def test_half_open_lifts_offline_to_minimal_only(self):
        manager = DegradationManager("offline")
        assert manager.sync_with_breaker("half_open") == DegradationLevel.MINIMAL

        manager.set_level("reduced")
        assert manager.sync_with_breaker("half_open") == DegradationLevel.REDUCED

    def test_closed_circuit_recovers_one_step_at_a_time(self):
        manager = DegradationManager("offline")
        levels = [manager.sync_with_breaker(CircuitState.CLOSED) for _ in range(4)]
        assert levels == [
            DegradationLevel.MINIMAL,
            DegradationLevel.REDUCED,
            DegradationLevel.FULL,
            DegradationLevel.FULL,
        ]


class TestFallbacks:
    def test_defaults_and_overrides(self):
        manager = DegradationManager()
        assert manager.fallback("offline") == DEFAULT_FALLBACKS["offline"]
        manager.register_fallback("offline", "Back soon.")
        assert manager.fallback_response("offline").content == "Back soon."
        assert manager.fallback("missing", "n/a") == "n/a"

    def test_unknown_key_gets_generic_text(self):
        response = DegradationManager(fallbacks={}).fallback_response("offline")
        assert "limited capabilities" in response.content
        assert response.id.startswith("degraded_")


def test_simplify_response_drops_tool_calls():
    response = CompletionResponse(
        content="let me check",
        tool_calls=[ToolCall("c1", "add", {"a": 1, "b": 2})],
        usage=Usage(1, 1, 2),
        finish_reason=FinishReason.TOOL_CALLS,
    )
    simplified = simplify_response(response)
    assert not simplified.has_tool_calls
    assert simplified.finish_reason == FinishReason.STOP
    assert (simplified.content, simplified.usage, simplified.id) == ("let me check", response.usage, response.id)


# ── Loop integration ──────────────────────────────────────────


class TestLoopDegradation:
    @pytest.mark.asyncio
    async def test_minimal_level_disables_tools(self, scripted, tool_call):
        backend = scripted([tool_call("add", {"a": 1, "b": 2})])
        response = await _loop(backend, DegradationManager("minimal")).run("add please")

        assert backend.requests[0].tools is None
        assert response.iterations == 1
        assert response.tool_results == []

    @pytest.mark.asyncio
    async def test_reduced_level_streams_as_one_completion(self, scripted, text):
        backend = scripted([text("hello world")])
        events = [e async for e in _loop(backend, DegradationManager("reduced")).stream("hi")]

        contents = [e.payload["delta"] for e in events if e.kind == EventKind.CONTENT]
        assert contents == ["hello world"]
        assert backend.requests[0].tools is not None
        assert events[-1].kind == EventKind.DONE

    @pytest.mark.asyncio
    async def test_open_circuit_answers_with_fallback(self, scripted, text, clock):
        inner = scripted([text("unused")])
        backend = _guarded(inner, clock)
        await _trip(backend)
        manager = DegradationManager()

        response = await _loop(backend, manager).run("hi")
        assert manager.level == DegradationLevel.OFFLINE
        assert response.content == DEFAULT_FALLBACKS["offline"]
        assert inner.calls == 0

    @pytest.mark.asyncio
    async def test_recovers_gradually_once_the_circuit_closes(self, scripted, text, clock):
        inner = scripted([lambda request: text("back")])
        backend = _guarded(inner, clock)
        await _trip(backend)
        manager = DegradationManager()
        loop = _loop(backend, manager)
        await loop.run("hi")

        clock.advance(31.0)
        response = await loop.run("hi")
        assert response.content == "back"
        assert inner.requests[0].tools is None
        assert manager.level == DegradationLevel.MINIMAL
        assert backend.breaker.state == CircuitState.CLOSED

        await loop.run("hi")
        assert manager.level == DegradationLevel.REDUCED
        await loop.run("hi")
        assert manager.level == DegradationLevel.FULL
        assert inner.requests[-1].tools is not None
