from __future__ import annotations

from typing import Iterable

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from plumbgate.domain.models import Tenant, TenantMembership


async def get_tenants_by_refs(session: AsyncSession, refs: Iterable[str]) -> dict[str, Tenant]:
    # Map each reference (internal id or identity-provider org id) to its tenant row.
    wanted = sorted({ref for ref in refs if ref})
    if not wanted:
        return {}
    result = await session.execute(
        select(Tenant).where(or_(Tenant.id.in_(wanted), Tenant.external_id.in_(wanted)))
    )
    resolved: dict[str, Tenant] = {}
    for tenant in result.scalars().all():
        if tenant.id in wanted:
            resolved[tenant.id] = tenant
        if tenant.external_id and tenant.external_id in wanted:
            resolved[tenant.external_id] = tenant
    return resolved


async def list_memberships(session: AsyncSession, *, principal_id: str) -> dict[str, str]:
    # Memberships keyed by internal tenant id.
    result = await session.execute(
        select(TenantMembership.tenant_id, TenantMembership.role).where(
            TenantMembership.principal_id == principal_id
        )
    )
    return {tenant_id: role for tenant_id, role in result.all()}
