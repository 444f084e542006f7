from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from plumbgate.apps.api.deps import get_db, get_tenant_context
from plumbgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from plumbgate.apps.api.response import success_json, success_response
from plumbgate.core.errors import InvalidQueryError
from plumbgate.persistence.scoped import TenantScopedAccessor, as_dict
from plumbgate.services import gateway
from plumbgate.services.authz.permissions import ResourceOwnership
from plumbgate.services.identity import TenantContext


router = APIRouter(prefix="/records", tags=["records"], responses=DEFAULT_ERROR_RESPONSES)

_PAGING_PARAMS = {"limit", "offset"}


def _not_found() -> HTTPException:
    # Foreign and missing ids share this exact response.
    return HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Record not found"})


def _accessor(context: TenantContext, db: AsyncSession, entity_type: str) -> TenantScopedAccessor:
    accessor = gateway.scoped_accessor(context, db)
    if entity_type not in accessor.entity_types:
        raise InvalidQueryError(f"Unknown entity type: {entity_type}")
    return accessor


def _self_owned(context: TenantContext) -> ResourceOwnership:
    return ResourceOwnership(principal_id=context.principal_id, owner_id=context.principal_id)


async def _authorize_record(
    *,
    context: TenantContext,
    db: AsyncSession,
    accessor: TenantScopedAccessor,
    entity_type: str,
    record_id: str,
    action: str,
):
    """Authorize an action on one record and return the record when it was loaded.

    Roles holding only the ``:own`` grant need the owner id, so the record is
    fetched first; a miss is a 404 before any permission check.
    """
    operation = f"{entity_type}:{action}"
    if not gateway.requires_ownership(context.role, operation):
        await gateway.require(context, operation, session=db, resource_id=record_id)
        return None
    record = await accessor.get(entity_type, record_id)
    if record is None:
        raise _not_found()
    ownership = ResourceOwnership(principal_id=context.principal_id, owner_id=record.owner_id)
    await gateway.require(context, operation, ownership=ownership, session=db, resource_id=record_id)
    return record


@router.get("/{entity_type}")
async def list_records(
    entity_type: str,
    request: Request,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    context: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    accessor = _accessor(context, db, entity_type)
    operation = f"{entity_type}:read"
    filters: dict[str, Any] = {}
    for key in request.query_params:
        if key in _PAGING_PARAMS:
            continue
        values = request.query_params.getlist(key)
        filters[key] = values if len(values) > 1 else values[0]

    ownership = None
    if gateway.requires_ownership(context.role, operation):
        # Own-scoped readers only ever see their own rows.
        filters["owner_id"] = context.principal_id
        ownership = _self_owned(context)
    await gateway.require(context, operation, ownership=ownership, session=db)

    records = await accessor.find(entity_type, filters, limit=limit + 1, offset=offset)
    next_offset = None
    if len(records) > limit:
        records = records[:limit]
        next_offset = offset + limit
    await db.commit()
    return success_response(
        request=request,
        data={"items": [as_dict(record) for record in records], "next_offset": next_offset},
    )


@router.post("/{entity_type}", status_code=201)
async def create_record(
    entity_type: str,
    request: Request,
    payload: dict[str, Any] = Body(...),
    context: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
):
    accessor = _accessor(context, db, entity_type)
    operation = f"{entity_type}:create"
    data = dict(payload)
    ownership = None
    if gateway.requires_ownership(context.role, operation):
        data["owner_id"] = context.principal_id
        ownership = _self_owned(context)
    else:
        data.setdefault("owner_id", context.principal_id)
    await gateway.require(context, operation, ownership=ownership, session=db)

    record = await accessor.create(entity_type, data)
    body = as_dict(record)
    await db.commit()
    return success_json(request=request, data=body, status_code=201)


@router.get("/{entity_type}/{record_id}")
async def get_record(
    entity_type: str,
    record_id: str,
    request: Request,
    context: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    accessor = _accessor(context, db, entity_type)
    record = await _authorize_record(
        context=context,
        db=db,
        accessor=accessor,
        entity_type=entity_type,
        record_id=record_id,
        action="read",
    )
    if record is None:
        record = await accessor.get(entity_type, record_id)
    if record is None:
        raise _not_found()
    body = as_dict(record)
    await db.commit()
    return success_response(request=request, data=body)


@router.patch("/{entity_type}/{record_id}")
async def update_record(
    entity_type: str,
    record_id: str,
    request: Request,
    payload: dict[str, Any] = Body(...),
    context: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    accessor = _accessor(context, db, entity_type)
    record = await _authorize_record(
        context=context,
        db=db,
        accessor=accessor,
        entity_type=entity_type,
        record_id=record_id,
        action="update",
    )
    patch = dict(payload)
    if record is not None:
        # Own-scoped editors cannot hand a record to someone else.
        patch.pop("owner_id", None)
    await accessor.update(entity_type, record_id, patch)
    # A foreign id updates nothing and reads back as None.
    refreshed = await accessor.get(entity_type, record_id)
    if refreshed is None:
        raise _not_found()
    body = as_dict(refreshed)
    await db.commit()
    return success_response(request=request, data=body)


@router.delete("/{entity_type}/{record_id}")
async def delete_record(
    entity_type: str,
    record_id: str,
    request: Request,
    context: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    accessor = _accessor(context, db, entity_type)
    await _authorize_record(
        context=context,
        db=db,
        accessor=accessor,
        entity_type=entity_type,
        record_id=record_id,
        action="delete",
    )
    deleted = await accessor.delete(entity_type, record_id)
    if deleted == 0:
        raise _not_found()
    await db.commit()
    return success_response(request=request, data={"id": record_id, "deleted": True})
