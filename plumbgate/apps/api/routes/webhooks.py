from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from plumbgate.apps.api.deps import get_db, require_permission
from plumbgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES, WEBHOOK_ERROR_RESPONSES
from plumbgate.apps.api.rate_limit import enforce_webhook_rate_limit
from plumbgate.apps.api.response import error_response, success_response
from plumbgate.core.config import get_settings
from plumbgate.core.errors import TransientStoreError
from plumbgate.services.audit import get_request_context
from plumbgate.services.identity import TenantContext
from plumbgate.services.webhooks import WebhookOutcome, ingest_webhook, retry_failed_event


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

REPLAY_HEADER = "Webhook-Replayed"


def _outcome_response(request: Request, outcome: WebhookOutcome) -> JSONResponse:
    # Same status and body for the first delivery and every replay of it.
    headers = {REPLAY_HEADER: "true"} if outcome.duplicate else None
    if outcome.status_code < 400:
        content = success_response(request=request, data=outcome.body)
    else:
        code = "WEBHOOK_FAILED" if outcome.event_status == "failed" else "WEBHOOK_RETRY_LATER"
        content = error_response(
            request=request,
            code=code,
            message="Webhook not processed",
            details=outcome.body,
        )
    return JSONResponse(content=content, status_code=outcome.status_code, headers=headers)


@router.post("/{provider}", responses=WEBHOOK_ERROR_RESPONSES)
async def receive_webhook(
    provider: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    settings = get_settings()
    request_ctx = get_request_context(request)
    try:
        # Throttle before touching the body or the signature.
        await enforce_webhook_rate_limit(request=request, provider=provider, db=db)
        raw_body = await request.body()
        outcome = await ingest_webhook(
            db,
            provider=provider,
            payload=raw_body,
            signature=request.headers.get(settings.webhook_signature_header),
            request_id=request_ctx["request_id"],
            ip_address=request_ctx["ip_address"],
            user_agent=request_ctx["user_agent"],
        )
    except TransientStoreError as exc:
        # Providers redeliver on 5xx; the event row makes the redelivery safe.
        logger.warning("webhook_transient_failure provider=%s", provider, exc_info=exc)
        raise HTTPException(
            status_code=500,
            detail={"code": "WEBHOOK_RETRY_LATER", "message": "Webhook not processed"},
        ) from exc
    return _outcome_response(request, outcome)


@router.post("/{provider}/{event_id}/retry", responses=DEFAULT_ERROR_RESPONSES)
async def retry_webhook_event(
    provider: str,
    event_id: str,
    request: Request,
    context: TenantContext = Depends(require_permission("webhooks:retry")),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    outcome = await retry_failed_event(db, provider=provider, event_id=event_id, tenant_id=context.tenant_id)
    if outcome is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Webhook event not found"})
    logger.info(
        "webhook_retry_requested provider=%s event_id=%s principal_id=%s status=%s",
        provider,
        event_id,
        context.principal_id,
        outcome.event_status,
    )
    return _outcome_response(request, outcome)
