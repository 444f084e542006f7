from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import json
import logging
import time
from typing import Any, Awaitable, Protocol, TypeVar

import httpx
import jwt
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from plumbgate.core.config import Settings, get_settings
from plumbgate.core.errors import AmbiguousTenant, NoTenantContext, TransientStoreError, Unauthenticated
from plumbgate.persistence.repos import tenants as tenants_repo
from plumbgate.services.authz.permissions import normalize_role


logger = logging.getLogger(__name__)

T = TypeVar("T")

_ASYMMETRIC_PREFIXES = ("RS", "ES", "PS")
# Identity providers prefix organization roles ("org:admin").
_ROLE_PREFIX = "org:"


@dataclass(frozen=True)
class VerifiedIdentity:
    # Claim set returned by the identity provider after signature and expiry checks.
    principal_id: str
    memberships: dict[str, str]
    active_tenant: str | None = None
    claims: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TenantContext:
    # Resolved per-request identity: exactly one active tenant.
    principal_id: str
    tenant_id: str
    role: str
    tenant_plan: str | None = None
    auth_method: str = "bearer"
    request_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None


class IdentityProvider(Protocol):
    async def verify_token(self, token: str) -> VerifiedIdentity: ...


def parse_bearer_token(header_value: str | None) -> str:
    # Enforce the Bearer scheme; anything else is unauthenticated.
    if not header_value:
        raise Unauthenticated("Missing bearer token")
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1]:
        raise Unauthenticated("Malformed bearer token")
    return parts[1]


def _normalize_membership_role(raw: Any) -> str | None:
    if not isinstance(raw, str):
        return None
    value = raw.strip().lower()
    if value.startswith(_ROLE_PREFIX):
        value = value[len(_ROLE_PREFIX):]
    try:
        return normalize_role(value)
    except ValueError:
        return None


def identity_from_claims(claims: dict[str, Any]) -> VerifiedIdentity:
    """Map verified JWT claims onto memberships.

    ``org_id``/``org_role`` name the organization the session is active in;
    an optional ``orgs`` claim (object of org id to role, or a list of
    ``{"id", "role"}`` entries) lists further memberships. Memberships with
    roles outside the role table are dropped.
    """
    subject = str(claims.get("sub") or "").strip()
    if not subject:
        raise Unauthenticated("Token has no subject")

    raw_memberships: list[tuple[Any, Any]] = []
    orgs = claims.get("orgs")
    if isinstance(orgs, dict):
        raw_memberships.extend(orgs.items())
    elif isinstance(orgs, list):
        for entry in orgs:
            if isinstance(entry, dict):
                raw_memberships.append((entry.get("id"), entry.get("role")))

    active_tenant = claims.get("org_id")
    if not isinstance(active_tenant, str) or not active_tenant:
        active_tenant = None
    elif claims.get("org_role") is not None:
        raw_memberships.append((active_tenant, claims.get("org_role")))

    memberships: dict[str, str] = {}
    for tenant_ref, raw_role in raw_memberships:
        if not isinstance(tenant_ref, str) or not tenant_ref:
            continue
        role = _normalize_membership_role(raw_role)
        if role is None:
            logger.warning("membership_role_unsupported principal_id=%s tenant_ref=%s", subject, tenant_ref)
            continue
        memberships[tenant_ref] = role

    return VerifiedIdentity(
        principal_id=subject,
        memberships=memberships,
        active_tenant=active_tenant,
        claims=claims,
    )


class JwtIdentityProvider:
    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._jwks: dict[str, Any] | None = None
        self._jwks_fetched_at = 0.0
        self._jwks_lock = asyncio.Lock()

    async def _fetch_jwks(self) -> dict[str, Any]:
        # Fetch JWKS from the provider for signature verification.
        timeout = self._settings.identity_timeout_ms / 1000
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.get(self._settings.auth_jwks_url)
            response.raise_for_status()
            return response.json()
        except (httpx.TimeoutException, httpx.NetworkError) as exc:
            raise TransientStoreError("Identity provider unavailable") from exc
        except (httpx.HTTPStatusError, ValueError) as exc:
            logger.error("jwks_fetch_failed url=%s", self._settings.auth_jwks_url, exc_info=exc)
            raise TransientStoreError("Identity provider unavailable") from exc

    async def _get_jwks(self, *, force: bool = False) -> dict[str, Any]:
        ttl = self._settings.auth_jwks_cache_ttl_s
        async with self._jwks_lock:
            fresh = self._jwks is not None and (time.monotonic() - self._jwks_fetched_at) < ttl
            if force or not fresh:
                self._jwks = await self._fetch_jwks()
                self._jwks_fetched_at = time.monotonic()
            return self._jwks or {}

    @staticmethod
    def _select_jwk(jwks: dict[str, Any], kid: str | None) -> dict[str, Any] | None:
        keys = jwks.get("keys") or []
        if kid:
            for key in keys:
                if key.get("kid") == kid:
                    return key
            return None
        if len(keys) == 1:
            return keys[0]
        return None

    @staticmethod
    def _jwk_to_key(jwk: dict[str, Any], alg: str) -> Any:
        # Convert a JWK payload into a cryptography key for PyJWT.
        payload = json.dumps(jwk)
        if alg.startswith(("RS", "PS")):
            return jwt.algorithms.RSAAlgorithm.from_jwk(payload)
        if alg.startswith("ES"):
            return jwt.algorithms.ECAlgorithm.from_jwk(payload)
        raise Unauthenticated("Unsupported token algorithm")

    async def _signing_key(self, token: str) -> Any:
        try:
            header = jwt.get_unverified_header(token)
        except jwt.InvalidTokenError as exc:
            raise Unauthenticated("Malformed token") from exc
        alg = header.get("alg")
        if not alg or alg not in self._settings.auth_algorithms:
            raise Unauthenticated("Unsupported token algorithm")
        if self._settings.auth_jwks_url and alg.startswith(_ASYMMETRIC_PREFIXES):
            jwk = self._select_jwk(await self._get_jwks(), header.get("kid"))
            if jwk is None:
                # Unknown kid usually means the provider rotated keys since our last fetch.
                jwk = self._select_jwk(await self._get_jwks(force=True), header.get("kid"))
            if jwk is None:
                raise Unauthenticated("No matching signing key")
            return self._jwk_to_key(jwk, alg)
        if not self._settings.auth_jwt_secret:
            logger.error("jwt_secret_not_configured alg=%s", alg)
            raise Unauthenticated("Token verification not configured")
        return self._settings.auth_jwt_secret

    async def verify_token(self, token: str) -> VerifiedIdentity:
        key = await self._signing_key(token)
        settings = self._settings
        try:
            claims = jwt.decode(
                token,
                key=key,
                algorithms=settings.auth_algorithms,
                issuer=settings.auth_jwt_issuer,
                audience=settings.auth_jwt_audience,
                leeway=settings.auth_jwt_leeway_seconds,
                options={
                    "require": ["sub", "exp"],
                    "verify_aud": bool(settings.auth_jwt_audience),
                },
            )
        except jwt.InvalidTokenError as exc:
            raise Unauthenticated("Invalid or expired token") from exc
        return identity_from_claims(claims)


async def _bounded(awaitable: Awaitable[T], *, timeout_ms: int, what: str) -> T:
    # Identity and membership lookups block on network I/O; cap them.
    try:
        return await asyncio.wait_for(awaitable, timeout=max(timeout_ms, 1) / 1000.0)
    except TimeoutError as exc:
        logger.warning("tenant_resolution_timeout step=%s", what)
        raise TransientStoreError(f"{what} timed out") from exc
    except SQLAlchemyError as exc:
        logger.warning("tenant_resolution_store_error step=%s", what, exc_info=exc)
        raise TransientStoreError(f"{what} unavailable") from exc


async def resolve_tenant_context(
    *,
    authorization: str | None,
    tenant_selector: str | None,
    session: AsyncSession,
    identity_provider: IdentityProvider,
    request_id: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> TenantContext:
    """Resolve ``(principal, active tenant, role)`` for one request.

    The token is verified before any storage query. A tenant claim in the
    token wins over the selector header; the selector is only consulted for
    principals with several memberships. Unknown, inactive or foreign tenants
    all fail with ``NoTenantContext``.
    """
    settings = get_settings()
    token = parse_bearer_token(authorization)
    identity = await _bounded(
        identity_provider.verify_token(token),
        timeout_ms=settings.identity_timeout_ms,
        what="identity_provider",
    )

    memberships = dict(identity.memberships)
    if not memberships:
        memberships = await _bounded(
            tenants_repo.list_memberships(session, principal_id=identity.principal_id),
            timeout_ms=settings.data_store_timeout_ms,
            what="membership_lookup",
        )
    if not memberships:
        logger.info("tenant_resolution_failed principal_id=%s reason=no_memberships", identity.principal_id)
        raise NoTenantContext("Principal has no tenant memberships")

    selector = tenant_selector.strip() if tenant_selector else None
    refs = set(memberships)
    if identity.active_tenant:
        refs.add(identity.active_tenant)
    if selector:
        refs.add(selector)
    tenants = await _bounded(
        tenants_repo.get_tenants_by_refs(session, refs),
        timeout_ms=settings.data_store_timeout_ms,
        what="tenant_lookup",
    )

    # Internal tenant id -> role for memberships that map onto a known tenant.
    resolved: dict[str, str] = {}
    for ref, role in memberships.items():
        tenant = tenants.get(ref)
        if tenant is not None:
            resolved[tenant.id] = role

    if identity.active_tenant:
        target = tenants.get(identity.active_tenant)
    elif selector:
        target = tenants.get(selector)
    elif len(resolved) == 1:
        target = tenants.get(next(iter(resolved)))
    else:
        logger.info(
            "tenant_resolution_failed principal_id=%s reason=ambiguous memberships=%s",
            identity.principal_id,
            len(resolved),
        )
        if not resolved:
            raise NoTenantContext("No known tenant for principal")
        raise AmbiguousTenant("Select a tenant for this request")

    if target is None or target.id not in resolved:
        logger.info("tenant_resolution_failed principal_id=%s reason=not_member", identity.principal_id)
        raise NoTenantContext("Tenant not available for principal")
    if not target.is_active:
        logger.info(
            "tenant_resolution_failed principal_id=%s tenant_id=%s reason=inactive",
            identity.principal_id,
            target.id,
        )
        raise NoTenantContext("Tenant not available for principal")

    context = TenantContext(
        principal_id=identity.principal_id,
        tenant_id=target.id,
        role=resolved[target.id],
        tenant_plan=target.plan,
        request_id=request_id,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    logger.info(
        "tenant_context_resolved principal_id=%s tenant_id=%s role=%s request_id=%s",
        context.principal_id,
        context.tenant_id,
        context.role,
        request_id,
    )
    return context
