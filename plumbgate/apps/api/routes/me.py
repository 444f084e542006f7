from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from plumbgate.apps.api.deps import get_tenant_context
from plumbgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from plumbgate.apps.api.response import SuccessEnvelope, success_response
from plumbgate.services.authz.permissions import permissions_for
from plumbgate.services.identity import TenantContext


router = APIRouter(tags=["identity"], responses=DEFAULT_ERROR_RESPONSES)


class MeResponse(BaseModel):
    principal_id: str
    tenant_id: str
    role: str
    tenant_plan: str | None
    # Affordance hints for clients; every operation is still checked server-side.
    permissions: list[str]


@router.get("/me", response_model=SuccessEnvelope[MeResponse])
async def me(request: Request, context: TenantContext = Depends(get_tenant_context)) -> dict:
    payload = MeResponse(
        principal_id=context.principal_id,
        tenant_id=context.tenant_id,
        role=context.role,
        tenant_plan=context.tenant_plan,
        permissions=sorted(permissions_for(context.role)),
    )
    return success_response(request=request, data=payload)
