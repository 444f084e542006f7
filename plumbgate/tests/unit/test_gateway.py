from __future__ import annotations

import pytest
from sqlalchemy import select

from plumbgate.core.errors import PermissionDenied
from plumbgate.domain.models import AuditEvent
from plumbgate.persistence.db import SessionLocal
from plumbgate.services import gateway
from plumbgate.services.authz.permissions import ResourceOwnership
from plumbgate.services.identity import TenantContext


def _context(role: str, principal_id: str = "user_1") -> TenantContext:
    return TenantContext(principal_id=principal_id, tenant_id="t-gw", role=role, request_id="req-1")


async def _audit_rows() -> list[AuditEvent]:
    async with SessionLocal() as session:
        return list((await session.execute(select(AuditEvent).order_by(AuditEvent.id))).scalars().all())


@pytest.mark.asyncio
async def test_denial_raises_and_is_audited_even_without_commit() -> None:
    async with SessionLocal() as session:
        with pytest.raises(PermissionDenied) as excinfo:
            await gateway.require(_context("technician"), "invoices:delete", session=session, resource_id="inv-1")
        # The request transaction is abandoned; the denial row must already be durable.
        await session.rollback()
    assert excinfo.value.operation == "invoices:delete"

    rows = await _audit_rows()
    assert len(rows) == 1
    denial = rows[0]
    assert (denial.event_type, denial.outcome, denial.error_code) == ("authz.denied", "failure", "AUTH_FORBIDDEN")
    assert (denial.tenant_id, denial.actor_id, denial.actor_role) == ("t-gw", "user_1", "technician")
    assert (denial.resource_type, denial.resource_id, denial.request_id) == ("invoices", "inv-1", "req-1")
    assert denial.metadata_json == {"operation": "invoices:delete", "reason": "missing_permission"}


@pytest.mark.asyncio
async def test_grant_is_recorded_with_the_request_transaction() -> None:
    async with SessionLocal() as session:
        decision = await gateway.require(_context("admin"), "jobs:delete", session=session)
        assert decision.allowed
        await session.commit()
    rows = await _audit_rows()
    assert [(row.event_type, row.outcome) for row in rows] == [("authz.granted", "success")]


@pytest.mark.asyncio
async def test_grant_rolled_back_with_the_request_leaves_no_row() -> None:
    async with SessionLocal() as session:
        await gateway.require(_context("admin"), "jobs:delete", session=session)
        await session.rollback()
    assert await _audit_rows() == []


@pytest.mark.asyncio
async def test_own_scoped_grant_needs_ownership() -> None:
    context = _context("technician")
    allowed = await gateway.authorize(
        context, "jobs:update", ownership=ResourceOwnership(principal_id="user_1", owner_id="user_1")
    )
    assert allowed.allowed
    with pytest.raises(PermissionDenied):
        await gateway.require(
            context, "jobs:update", ownership=ResourceOwnership(principal_id="user_1", owner_id="user_2")
        )


def test_scoped_accessor_is_bound_to_the_context_tenant() -> None:
    accessor = gateway.scoped_accessor(_context("viewer"), session=None)  # type: ignore[arg-type]
    assert accessor.tenant_id == "t-gw"
