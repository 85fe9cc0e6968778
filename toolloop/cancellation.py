"""Cooperative cancellation token and the race helper used at every suspension point."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable
from typing import TypeVar

from toolloop.errors import Cancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """A one-shot cancellation signal shared between a caller and a run.

    Example::

        token = CancellationToken()
        task = asyncio.create_task(loop.run("hi", token=token))
        token.cancel("user pressed ctrl-c")
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._children: list[CancellationToken] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        logger.debug("Cancellation requested: %s", reason or "no reason given")
        for child in self._children:
            child.cancel(reason)

    def child(self) -> CancellationToken:
        """Return a token that is cancelled together with this one."""
        token = CancellationToken()
        if self.cancelled:
            token.cancel(self._reason)
        else:
            self._children.append(token)
        return token

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled(self._reason)

    async def wait(self) -> None:
        await self._event.wait()


async def race(
    awaitable: Awaitable[T],
    token: CancellationToken | None = None,
    timeout: float | None = None,
    timeout_error: BaseException | None = None,
) -> T:
    """Await ``awaitable`` unless the token fires or ``timeout`` expires first.

    Whichever happens first wins; the loser is cancelled. Raises
    ``Cancelled`` on cancellation and ``timeout_error`` (default
    ``TimeoutError``) on expiry.
    """
    if token is not None and token.cancelled:
        if inspect.iscoroutine(awaitable):
            awaitable.close()
        raise Cancelled(token.reason)

    task = asyncio.ensure_future(awaitable)
    if token is None and timeout is None:
        return await task

    waiters: set[asyncio.Future] = {task}
    cancel_waiter: asyncio.Task | None = None
    if token is not None:
        cancel_waiter = asyncio.ensure_future(token.wait())
        waiters.add(cancel_waiter)

    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        if cancel_waiter is not None and not cancel_waiter.done():
            cancel_waiter.cancel()

    if task in done:
        return task.result()

    task.cancel()
    try:
        await task
    except (asyncio.CancelledError, Exception):
        # The loser's outcome is irrelevant once the race is decided.
        pass

    if token is not None and token.cancelled:
        raise Cancelled(token.reason)
    raise timeout_error if timeout_error is not None else TimeoutError(
        f"Operation timed out after {timeout}s"
    )


async def sleep(delay: float, token: CancellationToken | None = None) -> None:
    """``asyncio.sleep`` that wakes early and raises ``Cancelled`` when the token fires."""
    if delay <= 0:
        if token is not None:
            token.raise_if_cancelled()
        return
    if token is None:
        await asyncio.sleep(delay)
        return
    token.raise_if_cancelled()
    try:
        await asyncio.wait_for(token.wait(), timeout=delay)
    except TimeoutError:
        return
    raise Cancelled(token.reason)
