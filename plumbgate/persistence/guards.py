"""Tenant predicate helpers shared by every tenant-owned query."""
from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.sql.elements import ColumnElement


@dataclass(frozen=True)
class TenantPredicateError(RuntimeError):
    message: str


def require_tenant_id(tenant_id: str | None) -> str:
    if isinstance(tenant_id, str) and tenant_id.strip():
        return tenant_id
    raise TenantPredicateError("Tenant-owned query issued without an active tenant")


def tenant_predicate(model, tenant_id: str) -> ColumnElement[bool]:
    # All tenant filters are built here; scoped queries never compare tenant_id inline.
    return model.tenant_id == require_tenant_id(tenant_id)
