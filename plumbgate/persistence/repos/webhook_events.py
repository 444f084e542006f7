from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from plumbgate.domain.models import WebhookEvent


STATUS_RECEIVED = "received"
STATUS_PENDING = "pending"
STATUS_PROCESSED = "processed"
STATUS_FAILED = "failed"


async def get_event(session: AsyncSession, *, provider: str, event_id: str) -> WebhookEvent | None:
    result = await session.execute(
        select(WebhookEvent)
        .where(WebhookEvent.provider == provider, WebhookEvent.event_id == event_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def compare_and_set(
    session: AsyncSession,
    *,
    event_pk: int,
    expected: Iterable[str],
    target: str,
    values: dict[str, Any] | None = None,
) -> bool:
    # Atomic status transition; exactly one concurrent caller observes True.
    result = await session.execute(
        update(WebhookEvent)
        .where(WebhookEvent.id == event_pk, WebhookEvent.status.in_(list(expected)))
        .values(status=target, **(values or {}))
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def list_failed(session: AsyncSession, *, provider: str | None = None, limit: int = 100) -> list[WebhookEvent]:
    stmt = select(WebhookEvent).where(WebhookEvent.status == STATUS_FAILED)
    if provider:
        stmt = stmt.where(WebhookEvent.provider == provider)
    stmt = stmt.order_by(WebhookEvent.received_at.asc()).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def prune_processed(session: AsyncSession, *, older_than: datetime) -> int:
    # Failed events stay parked for inspection regardless of age.
    result = await session.execute(
        delete(WebhookEvent).where(
            WebhookEvent.status == STATUS_PROCESSED,
            WebhookEvent.received_at < older_than,
        )
    )
    return int(result.rowcount or 0)
