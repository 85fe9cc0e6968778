"""Tests for the cancellation token, race and cancellable sleep."""

from __future__ import annotations

import asyncio

import pytest

from toolloop.cancellation import CancellationToken, race, sleep
from toolloop.errors import BackendTimeout, Cancelled


class TestCancellationToken:
    def test_cancel_is_idempotent_and_keeps_first_reason(self):
        token = CancellationToken()
        token.cancel("first")
        token.cancel("second")
        assert token.cancelled
        assert token.reason == "first"

    def test_raise_if_cancelled(self):
        token = CancellationToken()
        token.raise_if_cancelled()
        token.cancel("stop")
        with pytest.raises(Cancelled, match="stop"):
            token.raise_if_cancelled()

    def test_child_follows_parent(self):
        parent = CancellationToken()
        child = parent.child()
        parent.cancel("parent gone")
        assert child.cancelled
        assert child.reason == "parent gone"

    def test_child_of_cancelled_parent_starts_cancelled(self):
        parent = CancellationToken()
        parent.cancel()
        assert parent.child().cancelled

    def test_cancelling_child_leaves_parent(self):
        parent = CancellationToken()
        parent.child().cancel()
        assert not parent.cancelled


class TestRace:
    @pytest.mark.asyncio
    async def test_returns_value(self):
        async def work():
            return 7

        assert await race(work(), CancellationToken(), timeout=1.0) == 7

    @pytest.mark.asyncio
    async def test_timeout_cancels_loser(self):
        cancelled = asyncio.Event()

        async def slow():
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        with pytest.raises(TimeoutError):
            await race(slow(), timeout=0.01)
        assert cancelled.is_set()

    @pytest.mark.asyncio
    async def test_custom_timeout_error(self):
        with pytest.raises(BackendTimeout):
            await race(asyncio.sleep(10), timeout=0.01, timeout_error=BackendTimeout("too slow"))

    @pytest.mark.asyncio
    async def test_token_wins(self):
        token = CancellationToken()

        async def cancel_soon():
            await asyncio.sleep(0.01)
            token.cancel("user")

        asyncio.get_running_loop().create_task(cancel_soon())
        with pytest.raises(Cancelled, match="user"):
            await race(asyncio.sleep(10), token)

    @pytest.mark.asyncio
    async def test_already_cancelled_token_raises_before_starting(self):
        token = CancellationToken()
        token.cancel()
        coro = asyncio.sleep(0)
        with pytest.raises(Cancelled):
            await race(coro, token)
        coro.close()

    @pytest.mark.asyncio
    async def test_errors_propagate(self):
        async def boom():
            raise KeyError("k")

        with pytest.raises(KeyError):
            await race(boom(), CancellationToken(), timeout=1.0)


class TestSleep:
    @pytest.mark.asyncio
    async def test_wakes_early_on_cancel(self):
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.01, token.cancel)
        with pytest.raises(Cancelled):
            await asyncio.wait_for(sleep(10, token), timeout=1.0)

    @pytest.mark.asyncio
    async def test_completes_without_cancel(self):
        await sleep(0.001, CancellationToken())
        await sleep(0)
