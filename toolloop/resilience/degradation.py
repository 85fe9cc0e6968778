"""Graceful degradation: feature flags that narrow as backend health drops.

Levels, from healthy to unavailable::

    full     everything on
    reduced  no streaming
    minimal  no streaming, no tools
    offline  nothing; the loop answers with a canned fallback

The level can be set directly, derived from error rate and latency, or
synced with a circuit breaker. Recovery from a closed circuit is gradual:
one level per sync.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import StrEnum

from toolloop.resilience.circuit_breaker import CircuitState
from toolloop.telemetry import Telemetry, ensure_safe
from toolloop.types import CompletionResponse, FinishReason, new_id

logger = logging.getLogger(__name__)


class DegradationLevel(StrEnum):
    FULL = "full"
    REDUCED = "reduced"
    MINIMAL = "minimal"
    OFFLINE = "offline"


@dataclass(frozen=True)
class FeatureFlags:
    tools: bool = True
    streaming: bool = True
    caching: bool = True
    memory: bool = True
    complexity: int = 10
    custom: dict[str, bool] = field(default_factory=dict)


LEVEL_FEATURES: dict[DegradationLevel, FeatureFlags] = {
    DegradationLevel.FULL: FeatureFlags(),
    DegradationLevel.REDUCED: FeatureFlags(streaming=False, complexity=7),
    DegradationLevel.MINIMAL: FeatureFlags(tools=False, streaming=False, memory=False, complexity=3),
    DegradationLevel.OFFLINE: FeatureFlags(
        tools=False, streaming=False, caching=False, memory=False, complexity=0
    ),
}

# One step up per healthy observation.
_RECOVERY: dict[DegradationLevel, DegradationLevel] = {
    DegradationLevel.OFFLINE: DegradationLevel.MINIMAL,
    DegradationLevel.MINIMAL: DegradationLevel.REDUCED,
    DegradationLevel.REDUCED: DegradationLevel.FULL,
}

DEFAULT_FALLBACKS: dict[str, str] = {
    "provider_unavailable": (
        "I'm currently experiencing some difficulties connecting to my backend services. "
        "Please try again in a moment."
    ),
    "rate_limited": (
        "I'm receiving a high volume of requests right now. Please wait a moment before trying again."
    ),
    "tool_unavailable": (
        "Some of my capabilities are temporarily limited. I'll do my best to help with what's available."
    ),
    "offline": "I'm currently offline for maintenance. Please check back shortly.",
}


class DegradationManager:
    """Holds the current degradation level and the fallback texts.

    Example::

        manager = DegradationManager()
        manager.sync_with_breaker(breaker.state)
        if not manager.is_enabled("tools"):
            request.tools = None
    """

    def __init__(
        self,
        level: DegradationLevel | str = DegradationLevel.FULL,
        fallbacks: dict[str, str] | None = None,
        telemetry: Telemetry | None = None,
    ) -> None:
        self._level = DegradationLevel(level)
        self._custom: dict[str, bool] = {}
        self.fallbacks = dict(DEFAULT_FALLBACKS if fallbacks is None else fallbacks)
        self.telemetry = ensure_safe(telemetry)

    @property
    def level(self) -> DegradationLevel:
        return self._level

    @property
    def features(self) -> FeatureFlags:
        flags = LEVEL_FEATURES[self._level]
        if self._custom:
            flags = replace(flags, custom={**flags.custom, **self._custom})
        return flags

    def set_level(self, level: DegradationLevel | str) -> None:
        try:
            new_level = DegradationLevel(level)
        except ValueError:
            raise ValueError(f"Unknown degradation level: {level}") from None
        if new_level == self._level:
            return
        old_level, self._level = self._level, new_level
        logger.info("Degradation level changed: %s -> %s", old_level, new_level)
        self.telemetry.increment(
            "degradation.level_change", from_level=str(old_level), to_level=str(new_level)
        )

    def adjust_for_health(self, error_rate: float, latency: float) -> DegradationLevel:
        """Pick a level from the recent error rate (0..1) and latency in seconds."""
        if error_rate > 0.5 or latency > 30.0:
            level = DegradationLevel.OFFLINE
        elif error_rate > 0.3 or latency > 10.0:
            level = DegradationLevel.MINIMAL
        elif error_rate > 0.1 or latency > 5.0:
            level = DegradationLevel.REDUCED
        else:
            level = DegradationLevel.FULL
        self.set_level(level)
        return level

    def sync_with_breaker(self, state: CircuitState | str) -> DegradationLevel:
        """Follow a circuit breaker: open goes offline, half-open allows minimal, closed recovers a step."""
        state = CircuitState(state)
        if state == CircuitState.OPEN:
            self.set_level(DegradationLevel.OFFLINE)
        elif state == CircuitState.HALF_OPEN:
            if self._level == DegradationLevel.OFFLINE:
                self.set_level(DegradationLevel.MINIMAL)
        elif self._level in _RECOVERY:
            self.set_level(_RECOVERY[self._level])
        return self._level

    def is_enabled(self, feature: str) -> bool:
        flags = self.features
        if feature in ("tools", "streaming", "caching", "memory"):
            return getattr(flags, feature)
        return flags.custom.get(feature, False)

    def set_custom(self, feature: str, enabled: bool) -> None:
        self._custom[feature] = enabled

    def register_fallback(self, key: str, content: str) -> None:
        self.fallbacks[key] = content

    def fallback(self, key: str, default: str | None = None) -> str | None:
        return self.fallbacks.get(key, default)

    def fallback_response(self, key: str) -> CompletionResponse:
        content = self.fallback(key) or (
            "I apologize, but I'm currently operating with limited capabilities."
        )
        return CompletionResponse(content=content, finish_reason=FinishReason.STOP, id=new_id("degraded"))


def simplify_response(response: CompletionResponse) -> CompletionResponse:
    """Drop tool calls from ``response``; used while tools are disabled."""
    if not response.tool_calls:
        return response
    return CompletionResponse(
        content=response.content,
        tool_calls=None,
        usage=response.usage,
        finish_reason=FinishReason.STOP,
        id=response.id,
    )
