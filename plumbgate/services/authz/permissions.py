from __future__ import annotations

from dataclasses import dataclass
import re
from types import MappingProxyType
from typing import Mapping


WILDCARD = "*"
# Suffix marking a grant that only applies to records the principal owns.
OWN_SUFFIX = ":own"

ROLE_OWNER = "owner"
ROLE_ADMIN = "admin"
ROLE_TECHNICIAN = "technician"
ROLE_VIEWER = "viewer"

_OPERATION_RE = re.compile(r"^[a-z][a-z_]*:[a-z][a-z_]*$")

_READ_ALL = frozenset(
    {
        "customers:read",
        "jobs:read",
        "invoices:read",
        "materials:read",
    }
)

# Immutable role configuration. Only allow-lists exist; anything absent is denied.
ROLE_PERMISSIONS: Mapping[str, frozenset[str]] = MappingProxyType(
    {
        ROLE_OWNER: frozenset({WILDCARD}),
        ROLE_ADMIN: _READ_ALL
        | frozenset(
            {
                "customers:create",
                "customers:update",
                "customers:delete",
                "jobs:create",
                "jobs:update",
                "jobs:delete",
                "jobs:assign",
                "invoices:create",
                "invoices:update",
                "invoices:send",
                "invoices:delete",
                "materials:create",
                "materials:update",
                "materials:delete",
                "members:read",
                "members:invite",
                "audit:read",
                "webhooks:retry",
            }
        ),
        ROLE_TECHNICIAN: frozenset(
            {
                "customers:read",
                "customers:create",
                "jobs:read",
                "materials:read",
                "jobs:update:own",
                "invoices:read:own",
                "invoices:create:own",
                "invoices:update:own",
            }
        ),
        ROLE_VIEWER: _READ_ALL,
    }
)


@dataclass(frozen=True)
class ResourceOwnership:
    # Ownership metadata for ":own" grants; both ids must be known to match.
    principal_id: str
    owner_id: str | None

    @property
    def is_owner(self) -> bool:
        return bool(self.owner_id) and self.owner_id == self.principal_id


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    role: str
    operation: str
    reason: str | None = None
    missing_permission: str | None = None

    @classmethod
    def allow(cls, *, role: str, operation: str, reason: str) -> "AccessDecision":
        return cls(allowed=True, role=role, operation=operation, reason=reason)

    @classmethod
    def deny(cls, *, role: str, operation: str, reason: str) -> "AccessDecision":
        return cls(
            allowed=False,
            role=role,
            operation=operation,
            reason=reason,
            missing_permission=operation,
        )


def normalize_role(role: str) -> str:
    # Enforce a stable, lowercased role vocabulary for RBAC checks.
    normalized = role.strip().lower()
    if normalized not in ROLE_PERMISSIONS:
        raise ValueError(f"Unsupported role: {role}")
    return normalized


def is_valid_operation(operation: str) -> bool:
    return isinstance(operation, str) and bool(_OPERATION_RE.match(operation))


def permissions_for(role: str) -> frozenset[str]:
    # Effective grants for UI affordances; enforcement always goes through evaluate().
    return ROLE_PERMISSIONS.get(role, frozenset())


def evaluate(
    role: str,
    operation: str,
    *,
    ownership: ResourceOwnership | None = None,
) -> AccessDecision:
    """Decide whether ``role`` may perform ``operation`` inside its active tenant.

    Pure function of its inputs. Unknown roles, malformed operation names and
    operations missing from the role table are denied. The owner wildcard
    covers every well-formed operation; it never spans tenants because the
    tenant is fixed before evaluation. ``<operation>:own`` grants require
    ownership metadata naming the principal as owner.
    """
    granted = ROLE_PERMISSIONS.get(role)
    if granted is None:
        return AccessDecision.deny(role=role, operation=operation, reason="unknown_role")
    if not is_valid_operation(operation):
        return AccessDecision.deny(role=role, operation=operation, reason="invalid_operation")
    if WILDCARD in granted:
        return AccessDecision.allow(role=role, operation=operation, reason="wildcard")
    if operation in granted:
        return AccessDecision.allow(role=role, operation=operation, reason="granted")
    if f"{operation}{OWN_SUFFIX}" in granted:
        if ownership is not None and ownership.is_owner:
            return AccessDecision.allow(role=role, operation=operation, reason="granted_own")
        return AccessDecision.deny(role=role, operation=operation, reason="not_owner")
    return AccessDecision.deny(role=role, operation=operation, reason="missing_permission")
