"""Inbound provider webhooks: signature check, idempotent claim, processing.

A delivery moves ``received -> pending -> processed | failed``. The
``(provider, event_id)`` unique constraint makes the row exist exactly once,
and the ``received -> pending`` compare-and-set picks exactly one worker
across all API instances. Everyone else waits for that worker's recorded
outcome and replays it. ``failed -> pending`` only happens through
:func:`retry_failed_event`.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import hashlib
import hmac
import json
import logging
import time
from typing import Any, Awaitable, Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from plumbgate.core.config import get_settings
from plumbgate.core.errors import (
    InvalidSignature,
    PermanentWebhookError,
    WebhookPayloadError,
    WebhookStateError,
)
from plumbgate.domain.models import WebhookEvent
from plumbgate.persistence.repos import webhook_events
from plumbgate.persistence.repos.webhook_events import (
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PROCESSED,
    STATUS_RECEIVED,
)
from plumbgate.persistence.scoped import TenantScopedAccessor
from plumbgate.services.audit import record_provider_event
from plumbgate.services.resilience import retry_async, webhook_retry_policy


logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="
_MAX_EVENT_ID_LENGTH = 255
_MAX_ERROR_LENGTH = 1000


@dataclass(frozen=True)
class WebhookDelivery:
    provider: str
    event_id: str
    event_type: str
    payload: dict[str, Any]

    @property
    def metadata(self) -> dict[str, Any]:
        # Providers echo caller metadata either at the top level or under "data".
        data = self.payload.get("data")
        if isinstance(data, dict) and isinstance(data.get("metadata"), dict):
            return data["metadata"]
        metadata = self.payload.get("metadata")
        return metadata if isinstance(metadata, dict) else {}

    @property
    def tenant_id(self) -> str | None:
        value = self.metadata.get("tenant_id")
        return value if isinstance(value, str) and value else None


@dataclass(frozen=True)
class WebhookOutcome:
    # What the provider receives; duplicates replay the stored status and body.
    status_code: int
    body: dict[str, Any]
    duplicate: bool = False
    event_status: str | None = None


WebhookHandler = Callable[[AsyncSession, WebhookDelivery], Awaitable[dict[str, Any]]]


@dataclass
class WebhookHandlerRegistry:
    _handlers: dict[str, WebhookHandler] = field(default_factory=dict)

    def register(self, event_type: str, handler: WebhookHandler | None = None):
        # Usable directly or as a decorator.
        def _register(func: WebhookHandler) -> WebhookHandler:
            self._handlers[event_type] = func
            return func

        if handler is not None:
            return _register(handler)
        return _register

    def get(self, event_type: str) -> WebhookHandler | None:
        return self._handlers.get(event_type)

    @property
    def event_types(self) -> list[str]:
        return sorted(self._handlers)


def compute_signature(secret: str, payload: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_signature(secret: str | None, payload: bytes, header_value: str | None) -> None:
    # Constant-time comparison over the raw body; any mismatch is permanent.
    if not secret:
        raise InvalidSignature("Webhook secret not configured for provider")
    if not header_value or not header_value.strip():
        raise InvalidSignature("Missing webhook signature")
    provided = header_value.strip()
    if provided.lower().startswith(SIGNATURE_PREFIX):
        provided = provided[len(SIGNATURE_PREFIX):]
    expected = compute_signature(secret, payload)
    if not hmac.compare_digest(expected.encode("ascii"), provided.lower().encode("utf-8")):
        raise InvalidSignature("Webhook signature mismatch")


def parse_delivery(provider: str, payload: bytes) -> WebhookDelivery:
    try:
        body = json.loads(payload)
    except ValueError as exc:
        raise WebhookPayloadError("Webhook body is not valid JSON") from exc
    if not isinstance(body, dict):
        raise WebhookPayloadError("Webhook body must be a JSON object")
    event_id = body.get("id")
    event_type = body.get("type")
    if not isinstance(event_id, str) or not event_id.strip() or len(event_id) > _MAX_EVENT_ID_LENGTH:
        raise WebhookPayloadError("Webhook body has no usable event id")
    if not isinstance(event_type, str) or not event_type.strip():
        raise WebhookPayloadError("Webhook body has no event type")
    return WebhookDelivery(provider=provider, event_id=event_id.strip(), event_type=event_type.strip(), payload=body)


def payload_hash(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _error_summary(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"[:_MAX_ERROR_LENGTH]


def _replay(event: WebhookEvent) -> WebhookOutcome:
    return WebhookOutcome(
        status_code=event.response_status or 500,
        body=dict(event.outcome_json or {"status": event.status, "event_id": event.event_id}),
        duplicate=True,
        event_status=event.status,
    )


async def handle_payment_paid(session: AsyncSession, delivery: WebhookDelivery) -> dict[str, Any]:
    """Mark the invoice named in the payment metadata as paid.

    The tenant comes from metadata attached when the payment was created, so
    the invoice lookup is scoped to that tenant like any request-path read.
    """
    tenant_id = delivery.tenant_id
    invoice_id = delivery.metadata.get("invoice_id")
    if not tenant_id or not isinstance(invoice_id, str) or not invoice_id:
        raise PermanentWebhookError("payment.paid without tenant_id/invoice_id metadata")

    accessor = TenantScopedAccessor(session, tenant_id)
    invoice = await accessor.get("invoices", invoice_id)
    if invoice is None:
        raise PermanentWebhookError("Invoice not found for payment")
    if invoice.status == "paid":
        return {"invoice_id": invoice_id, "invoice_status": "paid", "already_paid": True}

    data = delivery.payload.get("data")
    payment_reference = data.get("id") if isinstance(data, dict) else None
    await accessor.update(
        "invoices",
        invoice_id,
        {
            "status": "paid",
            "paid_at": _utcnow(),
            "payment_reference": payment_reference if isinstance(payment_reference, str) else delivery.event_id,
        },
    )
    await record_provider_event(
        session,
        provider=delivery.provider,
        event_type="invoice.paid",
        outcome="success",
        tenant_id=tenant_id,
        resource_type="invoice",
        resource_id=invoice_id,
        metadata={"event_id": delivery.event_id, "payment_reference": payment_reference},
    )
    return {"invoice_id": invoice_id, "invoice_status": "paid", "already_paid": False}


def default_registry() -> WebhookHandlerRegistry:
    registry = WebhookHandlerRegistry()
    registry.register("payment.paid", handle_payment_paid)
    return registry


async def _claim(session: AsyncSession, delivery: WebhookDelivery, body_hash: str) -> WebhookEvent:
    # Insert-or-find on (provider, event_id); the row is committed before any work starts.
    event = WebhookEvent(
        provider=delivery.provider,
        event_id=delivery.event_id,
        event_type=delivery.event_type,
        tenant_id=delivery.tenant_id,
        status=STATUS_RECEIVED,
        attempts=0,
        payload_hash=body_hash,
        payload_json=delivery.payload,
    )
    session.add(event)
    try:
        await session.commit()
        return event
    except IntegrityError:
        await session.rollback()

    existing = await webhook_events.get_event(session, provider=delivery.provider, event_id=delivery.event_id)
    # Commit, not rollback: a rollback would expire the loaded row.
    await session.commit()
    if existing is None:
        raise WebhookStateError("Webhook event vanished after conflict")
    if existing.payload_hash != body_hash:
        logger.warning(
            "webhook_payload_mismatch provider=%s event_id=%s",
            delivery.provider,
            delivery.event_id,
        )
    return existing


async def _await_outcome(session: AsyncSession, *, provider: str, event_id: str) -> WebhookOutcome:
    # Poll until the worker holding the event records a terminal state, bounded by settings.
    settings = get_settings()
    deadline = time.monotonic() + max(settings.webhook_inflight_wait_ms, 0) / 1000.0
    poll_s = max(settings.webhook_inflight_poll_ms, 1) / 1000.0
    while True:
        event = await webhook_events.get_event(session, provider=provider, event_id=event_id)
        await session.commit()
        if event is not None and event.status in (STATUS_PROCESSED, STATUS_FAILED):
            return _replay(event)
        if time.monotonic() >= deadline:
            logger.warning("webhook_inflight_timeout provider=%s event_id=%s", provider, event_id)
            return WebhookOutcome(
                status_code=500,
                body={"status": "in_progress", "event_id": event_id},
                duplicate=True,
                event_status=event.status if event is not None else None,
            )
        await asyncio.sleep(poll_s)


async def _process(
    session: AsyncSession,
    *,
    event_pk: int,
    delivery: WebhookDelivery,
    registry: WebhookHandlerRegistry,
    prior_attempts: int = 0,
) -> WebhookOutcome:
    handler = registry.get(delivery.event_type)
    attempts_made = 0

    async def _attempt(attempt: int) -> dict[str, Any]:
        # Business effect and the processed transition commit together or not at all.
        nonlocal attempts_made
        attempts_made = attempt
        try:
            if handler is None:
                result: dict[str, Any] = {"handled": False}
            else:
                result = await handler(session, delivery)
            body = {"status": STATUS_PROCESSED, "event_id": delivery.event_id, "result": result}
            moved = await webhook_events.compare_and_set(
                session,
                event_pk=event_pk,
                expected=[STATUS_PENDING],
                target=STATUS_PROCESSED,
                values={
                    "attempts": prior_attempts + attempt,
                    "outcome_json": body,
                    "response_status": 200,
                    "processed_at": _utcnow(),
                    "last_error": None,
                },
            )
            if not moved:
                raise WebhookStateError("Webhook event left pending during processing")
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        return body

    try:
        body = await retry_async(_attempt, policy=webhook_retry_policy())
    except WebhookStateError:
        raise
    except Exception as exc:  # noqa: BLE001 - every processing failure parks the event
        return await _park_failed(
            session,
            event_pk=event_pk,
            delivery=delivery,
            exc=exc,
            attempts=prior_attempts + attempts_made,
        )

    if handler is None:
        logger.info(
            "webhook_unhandled_type provider=%s event_id=%s event_type=%s",
            delivery.provider,
            delivery.event_id,
            delivery.event_type,
        )
    logger.info("webhook_processed provider=%s event_id=%s", delivery.provider, delivery.event_id)
    return WebhookOutcome(status_code=200, body=body, event_status=STATUS_PROCESSED)


async def _park_failed(
    session: AsyncSession,
    *,
    event_pk: int,
    delivery: WebhookDelivery,
    exc: Exception,
    attempts: int,
) -> WebhookOutcome:
    body = {"status": STATUS_FAILED, "event_id": delivery.event_id, "error": type(exc).__name__}
    logger.error(
        "webhook_failed provider=%s event_id=%s attempts=%s",
        delivery.provider,
        delivery.event_id,
        attempts,
        exc_info=exc,
    )
    moved = await webhook_events.compare_and_set(
        session,
        event_pk=event_pk,
        expected=[STATUS_PENDING],
        target=STATUS_FAILED,
        values={
            "attempts": attempts,
            "outcome_json": body,
            "response_status": 500,
            "last_error": _error_summary(exc),
        },
    )
    if not moved:
        await session.rollback()
        raise WebhookStateError("Webhook event left pending before it could be parked")
    await record_provider_event(
        session,
        provider=delivery.provider,
        event_type="webhook.failed",
        tenant_id=delivery.tenant_id,
        resource_type="webhook_event",
        resource_id=delivery.event_id,
        metadata={"event_type": delivery.event_type, "attempts": attempts},
        error_code=type(exc).__name__,
    )
    await session.commit()
    return WebhookOutcome(status_code=500, body=body, event_status=STATUS_FAILED)


async def ingest_webhook(
    session: AsyncSession,
    *,
    provider: str,
    payload: bytes,
    signature: str | None,
    registry: WebhookHandlerRegistry | None = None,
    request_id: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> WebhookOutcome:
    """Verify, claim and process one delivery, or replay the recorded outcome.

    Concurrent deliveries of one event id run the handler at most once; every
    caller gets the same status code and body.
    """
    settings = get_settings()
    try:
        verify_signature(settings.webhook_secret_for(provider), payload, signature)
    except InvalidSignature as exc:
        logger.warning("webhook_signature_invalid provider=%s ip=%s reason=%s", provider, ip_address, exc)
        await record_provider_event(
            session,
            provider=provider,
            event_type="security.webhook_signature_invalid",
            request_context={"request_id": request_id, "ip_address": ip_address, "user_agent": user_agent},
            metadata={"reason": str(exc)},
            error_code="WEBHOOK_SIGNATURE_INVALID",
            commit=True,
        )
        raise

    delivery = parse_delivery(provider, payload)
    event = await _claim(session, delivery, payload_hash(payload))

    if event.status in (STATUS_PROCESSED, STATUS_FAILED):
        logger.info(
            "webhook_duplicate provider=%s event_id=%s status=%s",
            provider,
            delivery.event_id,
            event.status,
        )
        return _replay(event)

    claimed = await webhook_events.compare_and_set(
        session,
        event_pk=event.id,
        expected=[STATUS_RECEIVED],
        target=STATUS_PENDING,
    )
    if not claimed:
        await session.rollback()
        logger.info("webhook_duplicate_inflight provider=%s event_id=%s", provider, delivery.event_id)
        return await _await_outcome(session, provider=provider, event_id=delivery.event_id)
    await session.commit()

    logger.info("webhook_claimed provider=%s event_id=%s event_type=%s", provider, delivery.event_id, delivery.event_type)
    return await _process(
        session,
        event_pk=event.id,
        delivery=delivery,
        registry=registry or default_registry(),
    )


async def retry_failed_event(
    session: AsyncSession,
    *,
    provider: str,
    event_id: str,
    tenant_id: str | None = None,
    registry: WebhookHandlerRegistry | None = None,
) -> WebhookOutcome | None:
    """Re-run a parked event. Returns None when the event is unknown.

    When ``tenant_id`` is given, events recorded for another tenant are
    treated as unknown.
    """
    event = await webhook_events.get_event(session, provider=provider, event_id=event_id)
    if event is None or (tenant_id is not None and event.tenant_id != tenant_id):
        await session.rollback()
        return None
    current_status = event.status

    reopened = await webhook_events.compare_and_set(
        session,
        event_pk=event.id,
        expected=[STATUS_FAILED],
        target=STATUS_PENDING,
        values={"last_error": None},
    )
    if not reopened:
        await session.rollback()
        raise WebhookStateError(f"Only failed events can be retried (status={current_status})")
    await session.commit()
    logger.info("webhook_retry_started provider=%s event_id=%s attempts=%s", provider, event_id, event.attempts)

    delivery = WebhookDelivery(
        provider=event.provider,
        event_id=event.event_id,
        event_type=event.event_type,
        payload=dict(event.payload_json or {}),
    )
    return await _process(
        session,
        event_pk=event.id,
        delivery=delivery,
        registry=registry or default_registry(),
        prior_attempts=event.attempts or 0,
    )


async def prune_webhook_events(session: AsyncSession, *, older_than: datetime | None = None) -> int:
    # Processed events past the replay window are dropped; failed events stay for inspection.
    if older_than is None:
        older_than = _utcnow() - timedelta(hours=get_settings().webhook_replay_window_hours)
    removed = await webhook_events.prune_processed(session, older_than=older_than)
    await session.commit()
    logger.info("webhook_events_pruned removed=%s older_than=%s", removed, older_than.isoformat())
    return removed
