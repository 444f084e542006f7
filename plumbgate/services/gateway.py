"""In-process access gateway used by the application layer.

``resolve_context`` -> ``authorize`` -> ``scoped_accessor`` is the only path
from an inbound request to tenant-owned data.
"""
from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from plumbgate.core.config import get_settings
from plumbgate.core.errors import PermissionDenied
from plumbgate.persistence.scoped import TenantScopedAccessor
from plumbgate.services.audit import get_request_context, record_event
from plumbgate.services.authz.permissions import (
    OWN_SUFFIX,
    AccessDecision,
    ResourceOwnership,
    evaluate,
    permissions_for,
)
from plumbgate.services.identity import IdentityProvider, TenantContext, resolve_tenant_context


logger = logging.getLogger(__name__)


async def resolve_context(
    request: Request,
    *,
    session: AsyncSession,
    identity_provider: IdentityProvider,
) -> TenantContext:
    settings = get_settings()
    request_ctx = get_request_context(request)
    return await resolve_tenant_context(
        authorization=request.headers.get("Authorization"),
        tenant_selector=request.headers.get(settings.tenant_selector_header),
        session=session,
        identity_provider=identity_provider,
        request_id=request_ctx["request_id"],
        ip_address=request_ctx["ip_address"],
        user_agent=request_ctx["user_agent"],
    )


def requires_ownership(role: str, operation: str) -> bool:
    # True when the role holds only the ":own" variant of the operation.
    granted = permissions_for(role)
    if "*" in granted or operation in granted:
        return False
    return f"{operation}{OWN_SUFFIX}" in granted


async def authorize(
    context: TenantContext,
    operation: str,
    *,
    ownership: ResourceOwnership | None = None,
    session: AsyncSession | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
) -> AccessDecision:
    # Evaluate, then log and audit every grant and denial.
    decision = evaluate(context.role, operation, ownership=ownership)
    outcome = "success" if decision.allowed else "failure"
    log = logger.info if decision.allowed else logger.warning
    log(
        "authz_decision allowed=%s principal_id=%s tenant_id=%s role=%s operation=%s reason=%s",
        decision.allowed,
        context.principal_id,
        context.tenant_id,
        context.role,
        operation,
        decision.reason,
    )
    if session is not None:
        await record_event(
            session=session,
            tenant_id=context.tenant_id,
            actor_type="user",
            actor_id=context.principal_id,
            actor_role=context.role,
            event_type="authz.granted" if decision.allowed else "authz.denied",
            outcome=outcome,
            resource_type=resource_type or operation.split(":", 1)[0],
            resource_id=resource_id,
            request_id=context.request_id,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            metadata={"operation": operation, "reason": decision.reason},
            error_code=None if decision.allowed else "AUTH_FORBIDDEN",
            commit=not decision.allowed,
            best_effort=True,
        )
    return decision


async def require(
    context: TenantContext,
    operation: str,
    *,
    ownership: ResourceOwnership | None = None,
    session: AsyncSession | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
) -> AccessDecision:
    decision = await authorize(
        context,
        operation,
        ownership=ownership,
        session=session,
        resource_type=resource_type,
        resource_id=resource_id,
    )
    if not decision.allowed:
        raise PermissionDenied(operation, decision.reason)
    return decision


def scoped_accessor(context: TenantContext, session: AsyncSession) -> TenantScopedAccessor:
    return TenantScopedAccessor(session, context.tenant_id)
