"""Bulkhead: caps concurrent work on a backend and queues the overflow."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TypeVar

from toolloop.cancellation import CancellationToken, race
from toolloop.config import BulkheadConfig
from toolloop.errors import BulkheadRejected, BulkheadTimeout, Cancelled
from toolloop.telemetry import Telemetry, ensure_safe

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class BulkheadStats:
    active: int
    queued: int
    max_concurrent: int
    max_queue: int


class Bulkhead:
    """Admit at most ``max_concurrent`` calls; queue up to ``max_queue`` more in FIFO order.

    A full queue rejects immediately with ``BulkheadRejected``. A waiter
    that is not admitted within ``queue_timeout`` is removed from the
    queue and fails with ``BulkheadTimeout``.
    """

    def __init__(
        self,
        name: str = "default",
        config: BulkheadConfig | None = None,
        telemetry: Telemetry | None = None,
    ) -> None:
        self.name = name
        self.config = config or BulkheadConfig()
        self.telemetry = ensure_safe(telemetry)
        self._active = 0
        self._queue: deque[asyncio.Future[None]] = deque()

    def stats(self) -> BulkheadStats:
        return BulkheadStats(
            active=self._active,
            queued=len(self._queue),
            max_concurrent=self.config.max_concurrent,
            max_queue=self.config.max_queue,
        )

    async def _acquire(self, token: CancellationToken | None) -> None:
        if token is not None:
            token.raise_if_cancelled()
        if self._active < self.config.max_concurrent:
            self._active += 1
            return

        if len(self._queue) >= self.config.max_queue:
            self.telemetry.increment("bulkhead.rejected", bulkhead=self.name)
            raise BulkheadRejected(
                f"Bulkhead '{self.name}' is full ({self._active} active, {len(self._queue)} queued)",
                context={"bulkhead": self.name},
            )

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._queue.append(waiter)
        self.telemetry.gauge("bulkhead.queued", len(self._queue), bulkhead=self.name)
        try:
            await race(
                asyncio.shield(waiter),
                token,
                timeout=self.config.queue_timeout,
                timeout_error=BulkheadTimeout(
                    f"Timed out after {self.config.queue_timeout}s waiting for bulkhead '{self.name}'",
                    context={"bulkhead": self.name},
                ),
            )
        except (BulkheadTimeout, Cancelled, asyncio.CancelledError):
            if waiter.done() and not waiter.cancelled():
                # The slot was handed over while we were giving up; pass it on.
                self._release()
            else:
                waiter.cancel()
                try:
                    self._queue.remove(waiter)
                except ValueError:
                    pass
            self.telemetry.increment("bulkhead.abandoned", bulkhead=self.name)
            raise

    def _release(self) -> None:
        while self._queue:
            waiter = self._queue.popleft()
            if not waiter.done():
                # Slot ownership moves straight to the next waiter.
                waiter.set_result(None)
                return
        self._active -= 1

    @asynccontextmanager
    async def slot(self, token: CancellationToken | None = None) -> AsyncIterator[None]:
        await self._acquire(token)
        try:
            yield
        finally:
            self._release()

    async def execute(
        self,
        fn: Callable[[], Awaitable[T]],
        token: CancellationToken | None = None,
    ) -> T:
        async with self.slot(token):
            return await fn()
