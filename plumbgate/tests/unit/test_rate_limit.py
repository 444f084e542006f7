from __future__ import annotations

import pytest
from sqlalchemy import select
from starlette.requests import Request

from plumbgate.apps.api import rate_limit
from plumbgate.core.config import get_settings
from plumbgate.core.errors import RateLimited, TransientStoreError
from plumbgate.domain.models import AuditEvent
from plumbgate.persistence.db import SessionLocal
from plumbgate.services.identity import TenantContext


def _request(ip: str = "203.0.113.7", forwarded_for: str | None = None) -> Request:
    headers = [(b"user-agent", b"Mollie/1.0")]
    if forwarded_for is not None:
        headers.append((b"x-forwarded-for", forwarded_for.encode()))
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/v1/webhooks/mollie",
        "headers": headers,
        "client": (ip, 443),
        "query_string": b"",
        "server": ("testserver", 80),
        "scheme": "http",
    }
    return Request(scope)


class _FixedLimiter:
    def __init__(self, decision: rate_limit.RateLimitDecision | None = None, error: Exception | None = None) -> None:
        self.decision = decision
        self.error = error
        self.buckets: list[str] = []
        self.limits: list[rate_limit.BucketConfig] = []

    async def check(self, *, bucket: str, scope: str, limits: rate_limit.BucketConfig, cost: int = 1):
        self.buckets.append(bucket)
        self.limits.append(limits)
        if self.error is not None:
            raise self.error
        return self.decision


@pytest.fixture
def limiter_enabled(monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "true")
    get_settings.cache_clear()


def _install(monkeypatch, limiter: _FixedLimiter) -> None:
    monkeypatch.setattr(rate_limit, "_get_rate_limiter", lambda: limiter)


def test_idle_bucket_ttl() -> None:
    assert rate_limit._ttl_seconds(10, 50) == 10
    assert rate_limit._ttl_seconds(0, 5) == 5


def test_webhook_bucket_is_keyed_by_provider_and_ip() -> None:
    assert rate_limit.webhook_bucket("mollie", "198.51.100.2") == "mollie:198.51.100.2"
    assert rate_limit.webhook_bucket("mollie", None) == "mollie:unknown"


@pytest.mark.asyncio
async def test_disabled_limiter_never_consults_redis(monkeypatch) -> None:
    limiter = _FixedLimiter(error=AssertionError("should not be called"))
    _install(monkeypatch, limiter)
    async with SessionLocal() as session:
        await rate_limit.enforce_webhook_rate_limit(request=_request(), provider="mollie", db=session)
    assert limiter.buckets == []


@pytest.mark.asyncio
async def test_allowed_delivery_passes(monkeypatch, limiter_enabled) -> None:
    limiter = _FixedLimiter(rate_limit.RateLimitDecision(allowed=True, scope="webhook", retry_after_ms=0))
    _install(monkeypatch, limiter)
    async with SessionLocal() as session:
        await rate_limit.enforce_webhook_rate_limit(request=_request(), provider="mollie", db=session)
    assert limiter.buckets == ["mollie:203.0.113.7"]


@pytest.mark.asyncio
async def test_denied_delivery_is_audited(monkeypatch, limiter_enabled) -> None:
    limiter = _FixedLimiter(rate_limit.RateLimitDecision(allowed=False, scope="webhook", retry_after_ms=1500))
    _install(monkeypatch, limiter)
    async with SessionLocal() as session:
        with pytest.raises(RateLimited) as excinfo:
            await rate_limit.enforce_webhook_rate_limit(request=_request(), provider="mollie", db=session)
    assert excinfo.value.retry_after_ms == 1500

    async with SessionLocal() as session:
        events = (await session.execute(select(AuditEvent))).scalars().all()
    assert [(event.event_type, event.actor_id, event.tenant_id) for event in events] == [
        ("security.rate_limited", "mollie", None)
    ]
    assert events[0].ip_address == "203.0.113.7"


@pytest.mark.asyncio
async def test_redis_outage_fails_open_by_default(monkeypatch, limiter_enabled) -> None:
    _install(monkeypatch, _FixedLimiter(error=ConnectionError("redis down")))
    async with SessionLocal() as session:
        await rate_limit.enforce_webhook_rate_limit(request=_request(), provider="mollie", db=session)


@pytest.mark.asyncio
async def test_redis_outage_fails_closed_when_configured(monkeypatch, limiter_enabled) -> None:
    monkeypatch.setenv("RL_FAIL_MODE", "closed")
    get_settings.cache_clear()
    _install(monkeypatch, _FixedLimiter(error=ConnectionError("redis down")))
    async with SessionLocal() as session:
        with pytest.raises(TransientStoreError):
            await rate_limit.enforce_webhook_rate_limit(request=_request(), provider="mollie", db=session)


@pytest.mark.asyncio
async def test_limiter_sends_bucket_parameters_to_redis(monkeypatch) -> None:
    captured: dict = {}

    class _FakeRedis:
        async def eval(self, script, numkeys, key, *args):
            captured.update(key=key, args=args)
            return [0, "0.25", 375]

    async def _fake_redis():
        return _FakeRedis()

    monkeypatch.setattr(rate_limit, "_get_redis", _fake_redis)
    limiter = rate_limit.RateLimiter(time_provider=lambda: 12.5)
    decision = await limiter.check(
        bucket="mollie:1.2.3.4",
        scope="webhook",
        limits=rate_limit.BucketConfig(rps=2, burst=4),
    )
    assert decision == rate_limit.RateLimitDecision(allowed=False, scope="webhook", retry_after_ms=375, remaining=0.25)
    assert captured["key"] == "plumbgate:rl:webhook:mollie:1.2.3.4"
    assert captured["args"] == (12500, 2, 4, 1, 4000)


@pytest.mark.asyncio
async def test_forwarded_address_is_used_only_behind_trusted_proxy(monkeypatch, limiter_enabled) -> None:
    limiter = _FixedLimiter(rate_limit.RateLimitDecision(allowed=True, scope="webhook", retry_after_ms=0))
    _install(monkeypatch, limiter)
    request = _request(ip="10.0.0.5", forwarded_for="198.51.100.9, 10.0.0.5")
    async with SessionLocal() as session:
        await rate_limit.enforce_webhook_rate_limit(request=request, provider="mollie", db=session)

        monkeypatch.setenv("TRUST_FORWARDED_FOR", "true")
        get_settings.cache_clear()
        await rate_limit.enforce_webhook_rate_limit(request=request, provider="mollie", db=session)

    assert limiter.buckets == ["mollie:10.0.0.5", "mollie:198.51.100.9"]


def _tenant_context(plan: str | None = "starter") -> TenantContext:
    return TenantContext(principal_id="user_9", tenant_id="t-rl", role="technician", tenant_plan=plan)


def test_plan_tiers_size_tenant_buckets(monkeypatch) -> None:
    assert rate_limit.plan_bucket_config("starter") == rate_limit.BucketConfig(5, 20)
    assert rate_limit.plan_bucket_config("enterprise") == rate_limit.BucketConfig(100, 400)
    assert rate_limit.plan_bucket_config("legacy") == rate_limit.BucketConfig(5, 20)
    assert rate_limit.plan_bucket_config(None) == rate_limit.BucketConfig(5, 20)

    monkeypatch.setenv("RL_PLAN_LIMITS", '{"gold": {"rps": 2, "burst": 3}, "basic": {"rps": 1, "burst": 1}}')
    monkeypatch.setenv("RL_DEFAULT_PLAN", "basic")
    get_settings.cache_clear()
    assert rate_limit.plan_bucket_config("gold") == rate_limit.BucketConfig(2, 3)
    assert rate_limit.plan_bucket_config("starter") == rate_limit.BucketConfig(1, 1)


@pytest.mark.asyncio
async def test_tenant_and_webhook_buckets_never_share_keys(monkeypatch, limiter_enabled) -> None:
    limiter = _FixedLimiter(rate_limit.RateLimitDecision(allowed=True, scope="tenant", retry_after_ms=0))
    _install(monkeypatch, limiter)
    async with SessionLocal() as session:
        await rate_limit.enforce_tenant_rate_limit(request=_request(), context=_tenant_context("pro"), db=session)
        await rate_limit.enforce_webhook_rate_limit(request=_request(), provider="mollie", db=session)
    assert limiter.buckets == ["t-rl", "mollie:203.0.113.7"]
    assert limiter.limits[0] == rate_limit.BucketConfig(20, 100)


@pytest.mark.asyncio
async def test_tenant_over_budget_is_audited_and_rejected(monkeypatch, limiter_enabled) -> None:
    limiter = _FixedLimiter(rate_limit.RateLimitDecision(allowed=False, scope="tenant", retry_after_ms=200))
    _install(monkeypatch, limiter)
    async with SessionLocal() as session:
        with pytest.raises(RateLimited) as excinfo:
            await rate_limit.enforce_tenant_rate_limit(request=_request(), context=_tenant_context(), db=session)
    assert (excinfo.value.scope, excinfo.value.retry_after_ms) == ("tenant", 200)

    async with SessionLocal() as session:
        event = (await session.execute(select(AuditEvent))).scalar_one()
    assert (event.event_type, event.tenant_id, event.actor_id, event.actor_role) == (
        "security.rate_limited",
        "t-rl",
        "user_9",
        "technician",
    )
    assert event.metadata_json["plan"] == "starter"


@pytest.mark.asyncio
async def test_tenant_limit_fails_closed_when_configured(monkeypatch, limiter_enabled) -> None:
    monkeypatch.setenv("RL_FAIL_MODE", "closed")
    get_settings.cache_clear()
    _install(monkeypatch, _FixedLimiter(error=ConnectionError("redis down")))
    async with SessionLocal() as session:
        with pytest.raises(TransientStoreError):
            await rate_limit.enforce_tenant_rate_limit(request=_request(), context=_tenant_context(), db=session)
