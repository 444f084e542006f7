from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from plumbgate.apps.api.rate_limit import enforce_tenant_rate_limit
from plumbgate.persistence.db import get_session
from plumbgate.services import gateway
from plumbgate.services.identity import IdentityProvider, JwtIdentityProvider, TenantContext


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


_identity_provider: IdentityProvider | None = None


def get_identity_provider() -> IdentityProvider:
    # Shared so the JWKS cache survives across requests.
    global _identity_provider
    if _identity_provider is None:
        _identity_provider = JwtIdentityProvider()
    return _identity_provider


async def get_tenant_context(
    request: Request,
    db: AsyncSession = Depends(get_db),
    identity_provider: IdentityProvider = Depends(get_identity_provider),
) -> TenantContext:
    context = await gateway.resolve_context(request, session=db, identity_provider=identity_provider)
    request.state.tenant_id = context.tenant_id
    await enforce_tenant_rate_limit(request=request, context=context, db=db)
    return context


def require_permission(operation: str):
    # Dependency factory for routes whose operation is fixed at declaration time.
    async def _dependency(
        context: TenantContext = Depends(get_tenant_context),
        db: AsyncSession = Depends(get_db),
    ) -> TenantContext:
        await gateway.require(context, operation, session=db)
        return context

    return _dependency
