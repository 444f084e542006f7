"""Append-only audit trail.

Rows written through a private session or committed on the spot are best
effort: a failed insert is logged and never fails the request that produced
it. Rows added to the caller's transaction without ``commit`` are not flushed
here; they commit or roll back with that transaction. Metadata is scrubbed of
credential-like keys before it is stored.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from plumbgate.core.config import get_settings
from plumbgate.domain.models import AuditEvent
from plumbgate.persistence.db import SessionLocal
from plumbgate.persistence.repos import audit as audit_repo


logger = logging.getLogger(__name__)

# Key fragments whose values never reach the audit table.
_SENSITIVE_FRAGMENTS = ("authorization", "token", "secret", "signature", "password", "iban")
REDACTED = "[REDACTED]"


def sanitize_metadata(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            str(key): REDACTED
            if any(fragment in str(key).lower() for fragment in _SENSITIVE_FRAGMENTS)
            else sanitize_metadata(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    return value


def _client_ip(request: Request) -> str | None:
    # Behind a trusted proxy the left-most forwarded address is the caller.
    if get_settings().trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else None


def get_request_context(request: Request | None) -> dict[str, str | None]:
    if request is None:
        return {"request_id": None, "ip_address": None, "user_agent": None}
    return {
        "request_id": getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id"),
        "ip_address": _client_ip(request),
        "user_agent": request.headers.get("user-agent"),
    }


async def _persist(session: AsyncSession, event: AuditEvent, *, commit: bool, best_effort: bool) -> None:
    try:
        session.add(event)
        if commit:
            await session.commit()
    except SQLAlchemyError as exc:
        if commit:
            await session.rollback()
        (logger.warning if best_effort else logger.error)(
            "audit_event_write_failed event_type=%s tenant_id=%s request_id=%s",
            event.event_type,
            event.tenant_id,
            event.request_id,
            exc_info=exc,
        )


async def record_event(
    *,
    session: AsyncSession | None = None,
    occurred_at: datetime | None = None,
    tenant_id: str | None,
    actor_type: str,
    actor_id: str | None,
    actor_role: str | None,
    event_type: str,
    outcome: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    request_id: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    commit: bool = False,
    best_effort: bool = True,
) -> None:
    """Add one audit row.

    With ``session`` the row joins that transaction and is only committed when
    ``commit`` is set. Without ``commit`` nothing is written yet, so an error at
    the caller's later commit belongs to the caller. Without ``session`` the
    row is written through a private session and committed immediately.
    """
    event = AuditEvent(
        occurred_at=occurred_at or datetime.now(timezone.utc),
        tenant_id=tenant_id,
        actor_type=actor_type,
        actor_id=actor_id,
        actor_role=actor_role,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request_id,
        ip_address=ip_address,
        user_agent=user_agent,
        metadata_json=sanitize_metadata(metadata or {}),
        error_code=error_code,
    )
    if session is not None:
        await _persist(session, event, commit=commit, best_effort=best_effort)
        return
    async with SessionLocal() as audit_session:
        await _persist(audit_session, event, commit=True, best_effort=best_effort)


async def record_provider_event(
    session: AsyncSession,
    *,
    provider: str,
    event_type: str,
    outcome: str = "failure",
    tenant_id: str | None = None,
    resource_type: str = "webhook",
    resource_id: str | None = None,
    request_context: dict[str, str | None] | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    commit: bool = False,
) -> None:
    # Webhook traffic has no principal; the provider is the actor.
    request_context = request_context or {}
    await record_event(
        session=session,
        tenant_id=tenant_id,
        actor_type="webhook",
        actor_id=provider,
        actor_role=None,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request_context.get("request_id"),
        ip_address=request_context.get("ip_address"),
        user_agent=request_context.get("user_agent"),
        metadata=metadata,
        error_code=error_code,
        commit=commit,
    )


async def prune_audit_events(session: AsyncSession, *, older_than: datetime | None = None) -> int:
    # The caller commits.
    if older_than is None:
        older_than = datetime.now(timezone.utc) - timedelta(days=get_settings().audit_retention_days)
    removed = await audit_repo.prune_events(session, older_than=older_than)
    logger.info("audit_events_pruned removed=%s older_than=%s", removed, older_than.isoformat())
    return removed
