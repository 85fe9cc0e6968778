"""In-flight request deduplication.

Concurrent callers presenting the same key share one underlying call and
all receive its outcome (value or error). The entry is removed as soon as
the call settles; a TTL sweep also evicts entries that somehow outlive it.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from toolloop.cancellation import CancellationToken, race
from toolloop.telemetry import Telemetry, ensure_safe

logger = logging.getLogger(__name__)

T = TypeVar("T")


def make_key(payload: Any) -> str:
    """Stable fingerprint of a JSON-serialisable payload (sorted keys)."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


@dataclass
class _Entry:
    task: asyncio.Task
    created_at: float
    waiters: int = 0


class RequestDeduplicator:
    def __init__(
        self,
        ttl: float = 5.0,
        telemetry: Telemetry | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self.telemetry = ensure_safe(telemetry)
        self._clock = clock
        self._pending: dict[str, _Entry] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def _sweep(self) -> None:
        now = self._clock()
        stale = [k for k, e in self._pending.items() if now - e.created_at > self.ttl]
        for key in stale:
            logger.debug("Evicting stale dedup entry %s", key[:12])
            del self._pending[key]

    def _forget(self, key: str, task: asyncio.Task) -> None:
        entry = self._pending.get(key)
        if entry is not None and entry.task is task:
            del self._pending[key]

    async def execute(
        self,
        key: str,
        fn: Callable[[], Awaitable[T]],
        token: CancellationToken | None = None,
    ) -> T:
        """Run ``fn`` once per in-flight ``key``; later callers join the running call.

        Each caller awaits the shared call through a shield, so one
        caller's cancellation does not cancel it for the others.
        """
        self._sweep()

        entry = self._pending.get(key)
        if entry is not None and not entry.task.done():
            self.telemetry.increment("dedup.hit")
            task = entry.task
        else:
            task = asyncio.ensure_future(fn())
            entry = _Entry(task=task, created_at=self._clock())
            self._pending[key] = entry
            task.add_done_callback(lambda t, k=key: self._forget(k, t))
            # Mark the exception retrieved even if every waiter walked away.
            task.add_done_callback(lambda t: t.cancelled() or t.exception())
            self.telemetry.increment("dedup.miss")

        entry.waiters += 1
        try:
            return await race(asyncio.shield(task), token)
        finally:
            entry.waiters -= 1
            if entry.waiters == 0 and not task.done():
                # Nobody is left to receive the outcome.
                self._forget(key, task)
                task.cancel()
