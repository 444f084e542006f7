from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from plumbgate.domain.models import AuditEvent
from plumbgate.persistence.guards import tenant_predicate


async def list_events(
    session: AsyncSession,
    *,
    tenant_id: str,
    event_type: str | None = None,
    outcome: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    occurred_from: datetime | None = None,
    occurred_to: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[AuditEvent]:
    # Scope all audit queries to a tenant to prevent cross-tenant leakage.
    stmt = select(AuditEvent).where(tenant_predicate(AuditEvent, tenant_id))
    if event_type:
        stmt = stmt.where(AuditEvent.event_type == event_type)
    if outcome:
        stmt = stmt.where(AuditEvent.outcome == outcome)
    if resource_type:
        stmt = stmt.where(AuditEvent.resource_type == resource_type)
    if resource_id:
        stmt = stmt.where(AuditEvent.resource_id == resource_id)
    if occurred_from:
        stmt = stmt.where(AuditEvent.occurred_at >= occurred_from)
    if occurred_to:
        stmt = stmt.where(AuditEvent.occurred_at <= occurred_to)

    stmt = stmt.order_by(AuditEvent.occurred_at.desc(), AuditEvent.id.desc())
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def prune_events(session: AsyncSession, *, older_than: datetime) -> int:
    # Retention is a compliance decision; callers pass the cutoff.
    result = await session.execute(delete(AuditEvent).where(AuditEvent.occurred_at < older_than))
    return int(result.rowcount or 0)
