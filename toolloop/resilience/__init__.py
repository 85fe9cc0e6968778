"""Resilience primitives composed around every backend call."""

from __future__ import annotations

from toolloop.resilience.bulkhead import Bulkhead, BulkheadStats
from toolloop.resilience.circuit_breaker import CircuitBreaker, CircuitState, CircuitStats
from toolloop.resilience.dedup import RequestDeduplicator, make_key
from toolloop.resilience.degradation import DegradationLevel, DegradationManager, FeatureFlags, simplify_response
from toolloop.resilience.fallback import FallbackBackend, with_fallback
from toolloop.resilience.policy import ResilienceRegistry, ResilientBackend
from toolloop.resilience.retry import RetryExecutor, compute_delay

__all__ = [
    "Bulkhead",
    "BulkheadStats",
    "CircuitBreaker",
    "CircuitState",
    "CircuitStats",
    "DegradationLevel",
    "DegradationManager",
    "FallbackBackend",
    "FeatureFlags",
    "RequestDeduplicator",
    "ResilienceRegistry",
    "ResilientBackend",
    "RetryExecutor",
    "compute_delay",
    "make_key",
    "simplify_response",
    "with_fallback",
]
