"""Telemetry sinks.

Components receive a sink through their constructor and report counters,
gauges, timings and events to it. Sinks are synchronous and never awaited
by the core; ``SafeTelemetry`` keeps a failing sink from breaking a run.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class Telemetry(Protocol):
    def increment(self, name: str, value: int = 1, **tags: Any) -> None: ...

    def gauge(self, name: str, value: float, **tags: Any) -> None: ...

    def timing(self, name: str, seconds: float, **tags: Any) -> None: ...

    def event(self, name: str, **attributes: Any) -> None: ...


@contextmanager
def span(telemetry: Telemetry, name: str, **tags: Any) -> Iterator[None]:
    """Record the duration of the enclosed block as ``<name>.duration``."""
    start = time.perf_counter()
    outcome = "ok"
    try:
        yield
    except BaseException:
        outcome = "error"
        raise
    finally:
        telemetry.timing(f"{name}.duration", time.perf_counter() - start, outcome=outcome, **tags)


class NullTelemetry:
    """Discards everything."""

    def increment(self, name: str, value: int = 1, **tags: Any) -> None:
        pass

    def gauge(self, name: str, value: float, **tags: Any) -> None:
        pass

    def timing(self, name: str, seconds: float, **tags: Any) -> None:
        pass

    def event(self, name: str, **attributes: Any) -> None:
        pass


class LoggingTelemetry:
    """Writes every datapoint to the ``toolloop.telemetry`` logger at DEBUG."""

    def __init__(self, level: int = logging.DEBUG) -> None:
        self.level = level

    def increment(self, name: str, value: int = 1, **tags: Any) -> None:
        logger.log(self.level, "counter %s +%d %s", name, value, tags or "")

    def gauge(self, name: str, value: float, **tags: Any) -> None:
        logger.log(self.level, "gauge %s=%s %s", name, value, tags or "")

    def timing(self, name: str, seconds: float, **tags: Any) -> None:
        logger.log(self.level, "timing %s %.1fms %s", name, seconds * 1000, tags or "")

    def event(self, name: str, **attributes: Any) -> None:
        logger.log(self.level, "event %s %s", name, attributes or "")


@dataclass
class RecordedEvent:
    name: str
    attributes: dict[str, Any] = field(default_factory=dict)


class InMemoryTelemetry:
    """Keeps datapoints in memory. Mostly useful in tests."""

    def __init__(self) -> None:
        self.counters: dict[str, int] = defaultdict(int)
        self.gauges: dict[str, float] = {}
        self.timings: dict[str, list[float]] = defaultdict(list)
        self.events: list[RecordedEvent] = []

    def increment(self, name: str, value: int = 1, **tags: Any) -> None:
        self.counters[name] += value

    def gauge(self, name: str, value: float, **tags: Any) -> None:
        self.gauges[name] = value

    def timing(self, name: str, seconds: float, **tags: Any) -> None:
        self.timings[name].append(seconds)

    def event(self, name: str, **attributes: Any) -> None:
        self.events.append(RecordedEvent(name, attributes))

    def event_names(self) -> list[str]:
        return [e.name for e in self.events]


class SafeTelemetry:
    """Wraps another sink and logs, rather than raises, its failures."""

    def __init__(self, inner: Telemetry) -> None:
        self.inner = inner

    def _guarded(self, method: str, *args: Any, **kwargs: Any) -> None:
        try:
            getattr(self.inner, method)(*args, **kwargs)
        except Exception as e:
            logger.warning("Telemetry sink %s.%s failed: %s", type(self.inner).__name__, method, e)

    def increment(self, name: str, value: int = 1, **tags: Any) -> None:
        self._guarded("increment", name, value, **tags)

    def gauge(self, name: str, value: float, **tags: Any) -> None:
        self._guarded("gauge", name, value, **tags)

    def timing(self, name: str, seconds: float, **tags: Any) -> None:
        self._guarded("timing", name, seconds, **tags)

    def event(self, name: str, **attributes: Any) -> None:
        self._guarded("event", name, **attributes)


def ensure_safe(telemetry: Telemetry | None) -> Telemetry:
    """Return a sink that is safe to call from the core."""
    if telemetry is None:
        return NullTelemetry()
    if isinstance(telemetry, (SafeTelemetry, NullTelemetry)):
        return telemetry
    return SafeTelemetry(telemetry)
