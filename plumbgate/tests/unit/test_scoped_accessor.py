from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import select

from plumbgate.core.errors import ConflictError, InvalidQueryError, TransientStoreError
from plumbgate.domain.models import Customer, Invoice
from plumbgate.persistence.db import SessionLocal
from plumbgate.persistence.guards import TenantPredicateError
from plumbgate.persistence.scoped import TenantScopedAccessor, _coerce, as_dict
from plumbgate.tests.utils.auth import create_tenant


async def _seed_invoice(tenant_id: str, number: str = "INV-1", owner_id: str = "u1") -> str:
    async with SessionLocal() as session:
        accessor = TenantScopedAccessor(session, tenant_id)
        invoice = await accessor.create(
            "invoices",
            {"invoice_number": number, "total_amount": "125.50", "owner_id": owner_id},
        )
        await session.commit()
        return invoice.id


@pytest.mark.asyncio
async def test_cross_tenant_reads_and_writes_touch_nothing() -> None:
    tenant_a = await create_tenant()
    tenant_b = await create_tenant()
    invoice_b = await _seed_invoice(tenant_b)

    async with SessionLocal() as session:
        accessor = TenantScopedAccessor(session, tenant_a)
        assert await accessor.get("invoices", invoice_b) is None
        assert await accessor.find("invoices") == []
        assert await accessor.find("invoices", {"id": invoice_b}) == []
        assert await accessor.update("invoices", invoice_b, {"status": "void"}) == 0
        assert await accessor.delete("invoices", invoice_b) == 0
        await session.commit()

    async with SessionLocal() as session:
        stored = await session.get(Invoice, invoice_b)
        assert stored is not None
        assert stored.status == "draft"


@pytest.mark.asyncio
async def test_foreign_and_missing_ids_are_indistinguishable() -> None:
    tenant_a = await create_tenant()
    tenant_b = await create_tenant()
    invoice_b = await _seed_invoice(tenant_b)

    async with SessionLocal() as session:
        accessor = TenantScopedAccessor(session, tenant_a)
        foreign = (await accessor.get("invoices", invoice_b), await accessor.update("invoices", invoice_b, {"status": "x"}))
        missing = (await accessor.get("invoices", "nope"), await accessor.update("invoices", "nope", {"status": "x"}))
    assert foreign == missing == (None, 0)


@pytest.mark.asyncio
async def test_create_ignores_spoofed_tenant_keys() -> None:
    tenant_a = await create_tenant()
    tenant_b = await create_tenant()

    async with SessionLocal() as session:
        accessor = TenantScopedAccessor(session, tenant_a)
        customer = await accessor.create(
            "customers",
            {
                "name": "Jansen Loodgieters",
                "tenant_id": tenant_b,
                "tenantId": tenant_b,
                "organizationId": tenant_b,
                "id": "chosen-by-client",
            },
        )
        await session.commit()
        customer_id = customer.id

    assert customer_id != "chosen-by-client"
    async with SessionLocal() as session:
        stored = await session.get(Customer, customer_id)
        assert stored.tenant_id == tenant_a


@pytest.mark.asyncio
async def test_update_cannot_move_record_to_another_tenant() -> None:
    tenant_a = await create_tenant()
    tenant_b = await create_tenant()
    invoice_a = await _seed_invoice(tenant_a)

    async with SessionLocal() as session:
        accessor = TenantScopedAccessor(session, tenant_a)
        updated = await accessor.update("invoices", invoice_a, {"tenant_id": tenant_b, "status": "sent"})
        await session.commit()
    assert updated == 1

    async with SessionLocal() as session:
        stored = await session.get(Invoice, invoice_a)
        assert stored.tenant_id == tenant_a
        assert stored.status == "sent"


@pytest.mark.asyncio
async def test_tenant_filter_keys_cannot_widen_find() -> None:
    tenant_a = await create_tenant()
    tenant_b = await create_tenant()
    await _seed_invoice(tenant_a, "INV-A")
    await _seed_invoice(tenant_b, "INV-B")

    async with SessionLocal() as session:
        accessor = TenantScopedAccessor(session, tenant_a)
        rows = await accessor.find("invoices", {"tenant_id": tenant_b, "organizationId": tenant_b})
    assert [row.invoice_number for row in rows] == ["INV-A"]


@pytest.mark.asyncio
async def test_round_trip_within_tenant() -> None:
    tenant_a = await create_tenant()
    tenant_b = await create_tenant()
    invoice_id = await _seed_invoice(tenant_a)

    async with SessionLocal() as session:
        record = await TenantScopedAccessor(session, tenant_a).get("invoices", invoice_id)
        assert record is not None
        body = as_dict(record)
        assert body["invoice_number"] == "INV-1"
        assert body["total_amount"] == Decimal("125.50")
        assert await TenantScopedAccessor(session, tenant_b).get("invoices", invoice_id) is None


@pytest.mark.asyncio
async def test_find_filters_and_pagination() -> None:
    tenant_a = await create_tenant()
    for index in range(3):
        await _seed_invoice(tenant_a, f"INV-{index}", owner_id="u1" if index < 2 else "u2")

    async with SessionLocal() as session:
        accessor = TenantScopedAccessor(session, tenant_a)
        own = await accessor.find("invoices", {"owner_id": "u1"})
        assert {row.invoice_number for row in own} == {"INV-0", "INV-1"}
        either = await accessor.find("invoices", {"invoice_number": ["INV-0", "INV-2"]})
        assert {row.invoice_number for row in either} == {"INV-0", "INV-2"}
        page = await accessor.find("invoices", limit=2)
        assert len(page) == 2


@pytest.mark.asyncio
async def test_unknown_entity_and_fields_are_rejected() -> None:
    tenant_a = await create_tenant()
    async with SessionLocal() as session:
        accessor = TenantScopedAccessor(session, tenant_a)
        with pytest.raises(InvalidQueryError):
            await accessor.find("tenants")
        with pytest.raises(InvalidQueryError):
            await accessor.find("invoices", {"colour": "red"})
        with pytest.raises(InvalidQueryError):
            await accessor.create("invoices", {"invoice_number": "X", "total_amount": "abc"})


def test_accessor_requires_a_tenant() -> None:
    with pytest.raises(TenantPredicateError):
        TenantScopedAccessor(None, "")  # type: ignore[arg-type]
    with pytest.raises(TenantPredicateError):
        TenantScopedAccessor(None, None)  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_slow_store_surfaces_transient_error() -> None:
    tenant_a = await create_tenant()
    async with SessionLocal() as session:
        accessor = TenantScopedAccessor(session, tenant_a, timeout_ms=10)
        with pytest.raises(TransientStoreError):
            await accessor._guarded(asyncio.sleep(1))


@pytest.mark.asyncio
async def test_delete_removes_only_own_tenant_row() -> None:
    tenant_a = await create_tenant()
    invoice_a = await _seed_invoice(tenant_a)
    async with SessionLocal() as session:
        assert await TenantScopedAccessor(session, tenant_a).delete("invoices", invoice_a) == 1
        await session.commit()
    async with SessionLocal() as session:
        result = await session.execute(select(Invoice).where(Invoice.id == invoice_a))
        assert result.scalar_one_or_none() is None


@pytest.mark.asyncio
async def test_duplicate_invoice_number_is_a_conflict() -> None:
    tenant_id = await create_tenant()
    other_tenant = await create_tenant()
    await _seed_invoice(tenant_id, number="INV-7")
    second = await _seed_invoice(tenant_id, number="INV-8")

    async with SessionLocal() as session:
        accessor = TenantScopedAccessor(session, tenant_id)
        with pytest.raises(ConflictError):
            await accessor.create("invoices", {"invoice_number": "INV-7", "total_amount": "1.00"})
        # The session is usable again after the conflict.
        assert len(await accessor.find("invoices")) == 2
        with pytest.raises(ConflictError):
            await accessor.update("invoices", second, {"invoice_number": "INV-7"})
        await session.commit()

    # Invoice numbers are unique per tenant only.
    await _seed_invoice(other_tenant, number="INV-7")


def test_multi_valued_filters_are_coerced_per_element() -> None:
    column = Invoice.__table__.columns["total_amount"]
    assert _coerce(column, ["1", "2.50"]) == [Decimal("1"), Decimal("2.50")]
    with pytest.raises(InvalidQueryError):
        _coerce(column, ["1", "lots"])


@pytest.mark.asyncio
async def test_find_with_multi_valued_amount_filter() -> None:
    tenant_id = await create_tenant()
    async with SessionLocal() as session:
        accessor = TenantScopedAccessor(session, tenant_id)
        for number, amount in (("INV-1", "10.00"), ("INV-2", "20.00"), ("INV-3", "30.00")):
            await accessor.create("invoices", {"invoice_number": number, "total_amount": amount})
        await session.commit()

        found = await accessor.find("invoices", {"total_amount": ["10.00", "30.00"]})
        await session.commit()
    assert sorted(record.invoice_number for record in found) == ["INV-1", "INV-3"]
