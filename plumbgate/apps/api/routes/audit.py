from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from plumbgate.apps.api.deps import get_db, require_permission
from plumbgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from plumbgate.apps.api.response import success_response
from plumbgate.persistence.repos import audit as audit_repo
from plumbgate.services.identity import TenantContext


router = APIRouter(prefix="/audit", tags=["audit"], responses=DEFAULT_ERROR_RESPONSES)


class AuditEventResponse(BaseModel):
    id: int
    occurred_at: datetime
    actor_type: str
    actor_id: str | None
    actor_role: str | None
    event_type: str
    outcome: str
    resource_type: str | None
    resource_id: str | None
    request_id: str | None
    metadata: dict[str, Any] | None
    error_code: str | None


class AuditEventsPage(BaseModel):
    items: list[AuditEventResponse]
    next_offset: int | None


def _to_response(event) -> AuditEventResponse:
    return AuditEventResponse(
        id=event.id,
        occurred_at=event.occurred_at,
        actor_type=event.actor_type,
        actor_id=event.actor_id,
        actor_role=event.actor_role,
        event_type=event.event_type,
        outcome=event.outcome,
        resource_type=event.resource_type,
        resource_id=event.resource_id,
        request_id=event.request_id,
        metadata=event.metadata_json,
        error_code=event.error_code,
    )


@router.get("/events")
async def list_audit_events(
    request: Request,
    event_type: str | None = None,
    outcome: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    occurred_from: datetime | None = Query(default=None, alias="from"),
    occurred_to: datetime | None = Query(default=None, alias="to"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    context: TenantContext = Depends(require_permission("audit:read")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Always the caller's active tenant; there is no tenant parameter to widen it.
    events = await audit_repo.list_events(
        db,
        tenant_id=context.tenant_id,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        occurred_from=occurred_from,
        occurred_to=occurred_to,
        offset=offset,
        limit=limit + 1,
    )
    next_offset = None
    if len(events) > limit:
        events = events[:limit]
        next_offset = offset + limit
    page = AuditEventsPage(items=[_to_response(event) for event in events], next_offset=next_offset)
    await db.commit()
    return success_response(request=request, data=page)
