from __future__ import annotations

import pytest

from plumbgate.core.config import get_settings
from plumbgate.core.errors import PermanentWebhookError, TransientStoreError
from plumbgate.services.resilience import RetryPolicy, default_retryable, retry_async, webhook_retry_policy


async def _no_sleep(delay: float) -> None:
    return None


@pytest.mark.asyncio
async def test_retry_async_recovers_from_transient_failures() -> None:
    seen: list[int] = []

    async def _flaky(attempt: int) -> str:
        seen.append(attempt)
        if attempt < 3:
            raise TransientStoreError("store busy")
        return "ok"

    result = await retry_async(_flaky, policy=RetryPolicy(max_attempts=3, backoff_ms=1), sleep=_no_sleep)
    assert result == "ok"
    assert seen == [1, 2, 3]


@pytest.mark.asyncio
async def test_retry_async_raises_after_budget_is_spent() -> None:
    calls = 0

    async def _always_down(attempt: int) -> None:
        nonlocal calls
        calls += 1
        raise TimeoutError("slow")

    with pytest.raises(TimeoutError):
        await retry_async(_always_down, policy=RetryPolicy(max_attempts=2, backoff_ms=1), sleep=_no_sleep)
    assert calls == 2


@pytest.mark.asyncio
async def test_permanent_errors_are_not_retried() -> None:
    calls = 0

    async def _broken(attempt: int) -> None:
        nonlocal calls
        calls += 1
        raise PermanentWebhookError("invoice missing")

    with pytest.raises(PermanentWebhookError):
        await retry_async(_broken, policy=RetryPolicy(max_attempts=5, backoff_ms=1), sleep=_no_sleep)
    assert calls == 1


@pytest.mark.asyncio
async def test_backoff_grows_exponentially() -> None:
    delays: list[float] = []

    async def _record(delay: float) -> None:
        delays.append(delay)

    async def _down(attempt: int) -> None:
        raise ConnectionError("reset")

    policy = RetryPolicy(max_attempts=4, backoff_ms=100, jitter=(1.0, 1.0))
    with pytest.raises(ConnectionError):
        await retry_async(_down, policy=policy, sleep=_record)
    assert delays == pytest.approx([0.1, 0.2, 0.4])


def test_default_retryable_classification() -> None:
    assert default_retryable(TransientStoreError("x"))
    assert default_retryable(TimeoutError())
    assert default_retryable(ConnectionResetError())
    assert not default_retryable(ValueError("bad"))
    assert not default_retryable(PermanentWebhookError("bad"))


def test_webhook_policy_reads_settings(monkeypatch) -> None:
    monkeypatch.setenv("WEBHOOK_MAX_ATTEMPTS", "0")
    get_settings.cache_clear()
    policy = webhook_retry_policy()
    # At least one attempt always runs.
    assert policy.max_attempts == 1
    assert policy.backoff_ms == 1
