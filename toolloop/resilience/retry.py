"""Bounded retry with exponential backoff and jitter."""

from __future__ import annotations

import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from toolloop.cancellation import CancellationToken
from toolloop.cancellation import sleep as cancellable_sleep
from toolloop.config import RetryConfig
from toolloop.errors import Cancelled, is_retryable
from toolloop.telemetry import Telemetry, ensure_safe

logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryObserver = Callable[[BaseException, int, float], None]


def compute_delay(
    config: RetryConfig,
    attempt: int,
    rng: Callable[[], float] = random.random,
    retry_after: float | None = None,
) -> float:
    """Backoff before retry number ``attempt + 1`` (``attempt`` is zero-based).

    ``min(max_delay, base_delay * multiplier**attempt)``, spread uniformly
    over ``[d*(1-jitter), d*(1+jitter)]``. A backend-provided
    ``retry_after`` raises the result to at least that value, still
    bounded by ``max_delay``.
    """
    delay = min(config.max_delay, config.base_delay * config.multiplier**attempt)
    spread = delay * config.jitter
    delay = delay - spread + rng() * 2 * spread
    if retry_after is not None:
        delay = max(delay, min(retry_after, config.max_delay))
    return max(0.0, delay)


class RetryExecutor:
    """Re-run a failing call while the predicate says the error is transient.

    Example::

        executor = RetryExecutor(RetryConfig(max_retries=2))
        result = await executor.execute(lambda: backend.complete(request))
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        is_retryable: Callable[[BaseException], bool] = is_retryable,
        on_retry: RetryObserver | None = None,
        telemetry: Telemetry | None = None,
        sleep: Callable[..., Awaitable[None]] = cancellable_sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.config = config or RetryConfig()
        self.is_retryable = is_retryable
        self.on_retry = on_retry
        self.telemetry = ensure_safe(telemetry)
        self._sleep = sleep
        self._rng = rng

    async def execute(
        self,
        fn: Callable[[], Awaitable[T]],
        token: CancellationToken | None = None,
    ) -> T:
        attempt = 0
        while True:
            if token is not None:
                token.raise_if_cancelled()
            try:
                return await fn()
            except Cancelled:
                raise
            except Exception as e:
                if attempt >= self.config.max_retries or not self.is_retryable(e):
                    if attempt:
                        logger.warning("Giving up after %d retries: %s", attempt, e)
                        self.telemetry.increment("retry.exhausted")
                    raise
                delay = compute_delay(
                    self.config, attempt, self._rng, getattr(e, "retry_after", None)
                )
                attempt += 1
                logger.info(
                    "Retry %d/%d in %.2fs after %s: %s",
                    attempt,
                    self.config.max_retries,
                    delay,
                    type(e).__name__,
                    e,
                )
                self.telemetry.increment("retry.attempt")
                if self.on_retry is not None:
                    self.on_retry(e, attempt, delay)
                await self._sleep(delay, token)
