"""Tests for backoff computation and the retry executor."""

from __future__ import annotations

import asyncio

import pytest

from toolloop.cancellation import CancellationToken
from toolloop.config import RetryConfig
from toolloop.errors import AuthenticationFailed, BackendUnavailable, Cancelled, RateLimited
from toolloop.resilience.retry import RetryExecutor, compute_delay


def _flaky(failures: int, error_factory=lambda: BackendUnavailable("503")):
    state = {"calls": 0}

    async def fn():
        state["calls"] += 1
        if state["calls"] <= failures:
            raise error_factory()
        return "ok"

    return fn, state


def _recording_sleep():
    delays = []

    async def fake_sleep(delay, token=None):
        delays.append(delay)

    return fake_sleep, delays


# ── compute_delay ─────────────────────────────────────────────


class TestComputeDelay:
    def test_exponential_growth_without_jitter(self):
        config = RetryConfig(base_delay=1.0, multiplier=2.0, jitter=0.0)
        assert [compute_delay(config, n) for n in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped_at_max_delay(self):
        config = RetryConfig(base_delay=1.0, max_delay=5.0, jitter=0.0)
        assert compute_delay(config, 10) == 5.0

    def test_jitter_bounds(self):
        config = RetryConfig(base_delay=1.0, jitter=0.2)
        assert compute_delay(config, 0, rng=lambda: 0.0) == pytest.approx(0.8)
        assert compute_delay(config, 0, rng=lambda: 1.0) == pytest.approx(1.2)
        assert compute_delay(config, 0, rng=lambda: 0.5) == pytest.approx(1.0)

    def test_retry_after_is_a_floor(self):
        config = RetryConfig(base_delay=1.0, max_delay=30.0, jitter=0.0)
        assert compute_delay(config, 0, retry_after=10.0) == 10.0
        assert compute_delay(config, 0, retry_after=100.0) == 30.0


# ── RetryExecutor ─────────────────────────────────────────────


class TestRetryExecutor:
    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self):
        fn, state = _flaky(2)
        sleep, delays = _recording_sleep()
        executor = RetryExecutor(RetryConfig(max_retries=3), sleep=sleep, rng=lambda: 0.5)

        assert await executor.execute(fn) == "ok"
        assert state["calls"] == 3
        assert delays == pytest.approx([1.0, 2.0])

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        fn, state = _flaky(100)
        sleep, delays = _recording_sleep()
        executor = RetryExecutor(RetryConfig(max_retries=2), sleep=sleep)

        with pytest.raises(BackendUnavailable):
            await executor.execute(fn)
        assert state["calls"] == 3
        assert len(delays) == 2

    @pytest.mark.asyncio
    async def test_non_retryable_error_raised_immediately(self):
        fn, state = _flaky(1, AuthenticationFailed)
        sleep, delays = _recording_sleep()
        executor = RetryExecutor(RetryConfig(max_retries=5), sleep=sleep)

        with pytest.raises(AuthenticationFailed):
            await executor.execute(fn)
        assert state["calls"] == 1
        assert delays == []

    @pytest.mark.asyncio
    async def test_custom_predicate(self):
        fn, state = _flaky(1, lambda: ValueError("flaky parse"))
        sleep, _ = _recording_sleep()
        executor = RetryExecutor(
            RetryConfig(max_retries=1),
            is_retryable=lambda e: isinstance(e, ValueError),
            sleep=sleep,
        )
        assert await executor.execute(fn) == "ok"
        assert state["calls"] == 2

    @pytest.mark.asyncio
    async def test_on_retry_observer(self):
        fn, _ = _flaky(1)
        sleep, _ = _recording_sleep()
        seen = []
        executor = RetryExecutor(
            RetryConfig(jitter=0.0),
            on_retry=lambda e, attempt, delay: seen.append((type(e), attempt, delay)),
            sleep=sleep,
        )
        await executor.execute(fn)
        assert seen == [(BackendUnavailable, 1, 1.0)]

    @pytest.mark.asyncio
    async def test_honours_retry_after(self):
        fn, _ = _flaky(1, lambda: RateLimited(retry_after=7.0))
        sleep, delays = _recording_sleep()
        executor = RetryExecutor(RetryConfig(jitter=0.0), sleep=sleep)
        await executor.execute(fn)
        assert delays == [7.0]

    @pytest.mark.asyncio
    async def test_cancelled_is_never_retried(self):
        fn, state = _flaky(1, lambda: Cancelled("stop"))
        sleep, _ = _recording_sleep()
        executor = RetryExecutor(RetryConfig(max_retries=3), sleep=sleep)
        with pytest.raises(Cancelled):
            await executor.execute(fn)
        assert state["calls"] == 1

    @pytest.mark.asyncio
    async def test_cancellation_interrupts_backoff(self):
        fn, state = _flaky(100)
        token = CancellationToken()
        executor = RetryExecutor(RetryConfig(base_delay=10.0, jitter=0.0))

        task = asyncio.create_task(executor.execute(fn, token))
        await asyncio.sleep(0.01)
        token.cancel("shutdown")
        with pytest.raises(Cancelled):
            await asyncio.wait_for(task, timeout=1.0)
        assert state["calls"] == 1
