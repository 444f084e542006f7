from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

import jwt

from plumbgate.core.config import get_settings
from plumbgate.domain.models import Tenant, TenantMembership
from plumbgate.persistence.db import SessionLocal


def make_token(
    *,
    sub: str,
    org_id: str | None = None,
    org_role: str | None = None,
    orgs: Any = None,
    expires_in: timedelta = timedelta(minutes=5),
    secret: str | None = None,
    extra: dict[str, Any] | None = None,
) -> str:
    # Mint HS256 tokens shaped like the identity provider's session claims.
    now = datetime.now(timezone.utc)
    claims: dict[str, Any] = {"sub": sub, "iat": now, "exp": now + expires_in}
    if org_id is not None:
        claims["org_id"] = org_id
    if org_role is not None:
        claims["org_role"] = org_role
    if orgs is not None:
        claims["orgs"] = orgs
    claims.update(extra or {})
    return jwt.encode(claims, secret or get_settings().auth_jwt_secret, algorithm="HS256")


def bearer(token: str, *, tenant: str | None = None) -> dict[str, str]:
    headers = {"Authorization": f"Bearer {token}"}
    if tenant is not None:
        headers[get_settings().tenant_selector_header] = tenant
    return headers


async def create_tenant(
    *,
    name: str | None = None,
    external_id: str | None = None,
    is_active: bool = True,
    plan: str = "starter",
) -> str:
    tenant_id = f"t-{uuid4().hex[:12]}"
    async with SessionLocal() as session:
        session.add(
            Tenant(
                id=tenant_id,
                external_id=external_id,
                name=name or tenant_id,
                plan=plan,
                is_active=is_active,
            )
        )
        await session.commit()
    return tenant_id


async def add_membership(*, tenant_id: str, principal_id: str, role: str) -> None:
    async with SessionLocal() as session:
        session.add(TenantMembership(tenant_id=tenant_id, principal_id=principal_id, role=role))
        await session.commit()


async def member_token(*, tenant_id: str, role: str, principal_id: str | None = None) -> tuple[str, str]:
    # Persist a membership and return (principal_id, token) with the tenant active in the claims.
    principal_id = principal_id or f"user_{uuid4().hex[:10]}"
    await add_membership(tenant_id=tenant_id, principal_id=principal_id, role=role)
    return principal_id, make_token(sub=principal_id, org_id=tenant_id, org_role=f"org:{role}")
