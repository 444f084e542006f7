"""Redis-backed rate limiting.

Two families of Redis token buckets on one Lua script: one per
``(provider, source ip)`` for inbound webhooks, and one per tenant sized by
the tenant's plan for authenticated API traffic. The two never share keys.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import math
import time
from typing import Callable
import weakref

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from plumbgate.core.config import get_settings
from plumbgate.core.errors import RateLimited, TransientStoreError
from plumbgate.services.audit import get_request_context, record_event, record_provider_event
from plumbgate.services.identity import TenantContext


logger = logging.getLogger(__name__)

SCOPE_WEBHOOK = "webhook"
SCOPE_TENANT = "tenant"


@dataclass(frozen=True)
class BucketConfig:
    # Sustained refill rate per second and bucket capacity.
    rps: float
    burst: int


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    scope: str
    retry_after_ms: int
    remaining: float | None = None


# KEYS[1] bucket hash; ARGV now_ms, rate, capacity, cost, ttl_ms.
# Returns {allowed, remaining tokens as string, retry_after_ms}.
_BUCKET_SCRIPT = r"""
local now = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local state = redis.call("HMGET", KEYS[1], "tokens", "ts")
local tokens = tonumber(state[1]) or capacity
local last = math.min(tonumber(state[2]) or now, now)
tokens = math.min(capacity, tokens + (now - last) * rate / 1000.0)

local wait_ms = 0
local granted = 0
if tokens >= cost then
  tokens = tokens - cost
  granted = 1
elseif rate > 0 then
  wait_ms = math.ceil((cost - tokens) * 1000.0 / rate)
else
  wait_ms = 1000
end

redis.call("HSET", KEYS[1], "tokens", tostring(tokens), "ts", tostring(now))
redis.call("PEXPIRE", KEYS[1], tonumber(ARGV[5]))
return {granted, tostring(tokens), wait_ms}
"""


def _ttl_seconds(rate: float, burst: int) -> int:
    # An idle bucket refills completely after burst/rate seconds; keep it twice that.
    if rate <= 0:
        return max(1, burst)
    return max(1, math.ceil(2 * burst / rate))


# Redis clients bind to the loop that created them.
_clients: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, Redis]" = weakref.WeakKeyDictionary()


async def _get_redis() -> Redis:
    loop = asyncio.get_running_loop()
    client = _clients.get(loop)
    if client is None:
        client = Redis.from_url(get_settings().redis_url, decode_responses=True)
        _clients[loop] = client
    return client


class RateLimiter:
    def __init__(self, *, time_provider: Callable[[], float] | None = None) -> None:
        self._now = time_provider or time.time

    async def check(self, *, bucket: str, scope: str, limits: BucketConfig, cost: int = 1) -> RateLimitDecision:
        settings = get_settings()
        redis = await _get_redis()
        granted, remaining, wait_ms = await redis.eval(
            _BUCKET_SCRIPT,
            1,
            f"{settings.rl_redis_prefix}:{scope}:{bucket}",
            int(self._now() * 1000),
            limits.rps,
            limits.burst,
            cost,
            _ttl_seconds(limits.rps, limits.burst) * 1000,
        )
        return RateLimitDecision(
            allowed=int(granted) == 1,
            scope=scope,
            retry_after_ms=int(wait_ms),
            remaining=float(remaining),
        )


_rate_limiter: RateLimiter | None = None


def _get_rate_limiter() -> RateLimiter:
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter()
    return _rate_limiter


def reset_rate_limiter_state() -> None:
    # Tests run each case on a fresh loop.
    global _rate_limiter
    _rate_limiter = None
    _clients.clear()


def webhook_bucket(provider: str, source_ip: str | None) -> str:
    # Webhook buckets are keyed by provider and source address, never by tenant.
    return f"{provider}:{source_ip or 'unknown'}"


def plan_bucket_config(plan: str | None) -> BucketConfig:
    rps, burst = get_settings().plan_limits_for(plan)
    return BucketConfig(rps, burst)


async def _decide(*, request: Request, bucket: str, scope: str, limits: BucketConfig) -> RateLimitDecision | None:
    # None means Redis was unreachable and the limiter is failing open.
    try:
        return await _get_rate_limiter().check(bucket=bucket, scope=scope, limits=limits)
    except Exception as exc:  # noqa: BLE001
        if get_settings().rl_fail_mode.lower() == "closed":
            raise TransientStoreError("Rate limiting unavailable") from exc
        logger.warning("rate_limit_degraded scope=%s path=%s", scope, request.url.path)
        return None


async def enforce_webhook_rate_limit(*, request: Request, provider: str, db: AsyncSession) -> None:
    if not get_settings().rate_limit_enabled:
        return

    request_ctx = get_request_context(request)
    settings = get_settings()
    decision = await _decide(
        request=request,
        bucket=webhook_bucket(provider, request_ctx["ip_address"]),
        scope=SCOPE_WEBHOOK,
        limits=BucketConfig(settings.rl_webhook_rps, settings.rl_webhook_burst),
    )
    if decision is None or decision.allowed:
        return

    logger.warning(
        "webhook_rate_limited provider=%s ip=%s retry_after_ms=%s",
        provider,
        request_ctx["ip_address"],
        decision.retry_after_ms,
    )
    await record_provider_event(
        db,
        provider=provider,
        event_type="security.rate_limited",
        request_context=request_ctx,
        metadata={"scope": decision.scope, "retry_after_ms": decision.retry_after_ms},
        error_code="RATE_LIMITED",
        commit=True,
    )
    raise RateLimited(decision.retry_after_ms, decision.scope)


async def enforce_tenant_rate_limit(*, request: Request, context: TenantContext, db: AsyncSession) -> None:
    """Charge one request against the active tenant's plan-sized bucket.

    Runs after tenant resolution, so anonymous and unresolved callers never
    drain a tenant's budget.
    """
    if not get_settings().rate_limit_enabled:
        return

    decision = await _decide(
        request=request,
        bucket=context.tenant_id,
        scope=SCOPE_TENANT,
        limits=plan_bucket_config(context.tenant_plan),
    )
    if decision is None or decision.allowed:
        return

    logger.warning(
        "tenant_rate_limited tenant_id=%s plan=%s principal_id=%s retry_after_ms=%s",
        context.tenant_id,
        context.tenant_plan,
        context.principal_id,
        decision.retry_after_ms,
    )
    request_ctx = get_request_context(request)
    await record_event(
        session=db,
        tenant_id=context.tenant_id,
        actor_type="user",
        actor_id=context.principal_id,
        actor_role=context.role,
        event_type="security.rate_limited",
        outcome="failure",
        resource_type="rate_limit",
        request_id=request_ctx["request_id"],
        ip_address=request_ctx["ip_address"],
        user_agent=request_ctx["user_agent"],
        metadata={
            "scope": decision.scope,
            "plan": context.tenant_plan,
            "retry_after_ms": decision.retry_after_ms,
            "path": request.url.path,
        },
        error_code="RATE_LIMITED",
        commit=True,
    )
    raise RateLimited(decision.retry_after_ms, decision.scope)
