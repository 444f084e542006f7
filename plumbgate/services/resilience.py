from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import random
from typing import Any, Awaitable, Callable

from plumbgate.core.config import get_settings
from plumbgate.core.errors import TransientStoreError


logger = logging.getLogger(__name__)


TransientException = (TimeoutError, OSError, TransientStoreError)


def default_retryable(exc: Exception) -> bool:
    # Retry only transient network/timeout failures by default.
    return isinstance(exc, TransientException)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    backoff_ms: int
    # Jitter bounds multiply the exponential delay.
    jitter: tuple[float, float] = (0.5, 1.5)

    def delay_s(self, attempt: int) -> float:
        # Exponential backoff: base * 2^(attempt-1), jittered.
        low, high = self.jitter
        return (self.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * random.uniform(low, high)


def webhook_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        max_attempts=max(settings.webhook_max_attempts, 1),
        backoff_ms=max(settings.webhook_retry_backoff_ms, 0),
    )


async def retry_async(
    func: Callable[[int], Awaitable[Any]],
    *,
    policy: RetryPolicy,
    retryable: Callable[[Exception], bool] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Any:
    """Run ``func(attempt)`` until it succeeds or the retry budget is spent.

    Non-retryable errors and the error of the final attempt propagate.
    """
    retryable = retryable or default_retryable
    attempt = 1
    while True:
        try:
            return await func(attempt)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= policy.max_attempts or not retryable(exc):
                raise
            delay = policy.delay_s(attempt)
            logger.warning("retry_scheduled attempt=%s delay_s=%.3f error=%s", attempt, delay, type(exc).__name__)
            await sleep(delay)
            attempt += 1
