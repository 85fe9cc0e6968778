"""Tests for telemetry sinks."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from toolloop.telemetry import (
    InMemoryTelemetry,
    NullTelemetry,
    SafeTelemetry,
    ensure_safe,
    span,
)


def test_in_memory_records_everything():
    telemetry = InMemoryTelemetry()
    telemetry.increment("requests.total")
    telemetry.increment("requests.total", 2)
    telemetry.gauge("queue", 3)
    telemetry.timing("latency", 0.5)
    telemetry.event("circuit.state_change", old="closed", new="open")

    assert telemetry.counters["requests.total"] == 3
    assert telemetry.gauges["queue"] == 3
    assert telemetry.timings["latency"] == [0.5]
    assert telemetry.event_names() == ["circuit.state_change"]
    assert telemetry.events[0].attributes == {"old": "closed", "new": "open"}


def test_safe_telemetry_swallows_sink_failures():
    inner = MagicMock()
    inner.increment.side_effect = RuntimeError("statsd down")
    safe = SafeTelemetry(inner)
    safe.increment("x")
    inner.increment.assert_called_once_with("x", 1)


def test_ensure_safe():
    assert isinstance(ensure_safe(None), NullTelemetry)
    assert isinstance(ensure_safe(InMemoryTelemetry()), SafeTelemetry)
    already = SafeTelemetry(InMemoryTelemetry())
    assert ensure_safe(already) is already


def test_span_records_outcome():
    telemetry = InMemoryTelemetry()
    with span(telemetry, "tool"):
        pass
    with pytest.raises(ValueError):
        with span(telemetry, "tool"):
            raise ValueError("x")
    assert len(telemetry.timings["tool.duration"]) == 2
