"""Tenant-scoped data access.

Every statement issued through :class:`TenantScopedAccessor` carries the active
tenant predicate, and every insert is stamped with the active tenant. Callers
cannot widen the scope: tenant keys in filters, payloads and patches are
discarded rather than validated. Postgres row-level security (see the
``0002_tenant_rls`` migration) enforces the same predicate independently.
"""
from __future__ import annotations

import asyncio
from datetime import datetime
from decimal import Decimal, InvalidOperation
import logging
from typing import Any, Awaitable, Mapping, TypeVar

from sqlalchemy import Boolean, DateTime, Integer, Numeric, delete, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from plumbgate.core.config import get_settings
from plumbgate.core.errors import ConflictError, InvalidQueryError, TransientStoreError
from plumbgate.domain.models import TENANT_OWNED_MODELS, Base
from plumbgate.persistence.db import bind_tenant
from plumbgate.persistence.guards import require_tenant_id, tenant_predicate


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Spellings clients have used for the owning tenant; all are dropped on input.
TENANT_KEYS = frozenset({"tenant_id", "tenantId", "organization_id", "organizationId"})
# Server-assigned columns callers may not set.
_SERVER_KEYS = frozenset({"id", "created_at", "updated_at"})
_MAX_PAGE_SIZE = 200


def _coerce(column, value: Any) -> Any:
    # JSON bodies and query strings carry timestamps and amounts as strings.
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_coerce(column, item) for item in value]
    if value is None:
        return value
    try:
        if isinstance(column.type, DateTime) and isinstance(value, str):
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        if isinstance(column.type, Numeric) and not isinstance(value, Decimal):
            return Decimal(str(value))
        if isinstance(column.type, Boolean) and isinstance(value, str):
            return {"true": True, "1": True, "false": False, "0": False}[value.strip().lower()]
        if isinstance(column.type, Integer) and isinstance(value, str):
            return int(value)
    except (ValueError, KeyError, InvalidOperation) as exc:
        raise InvalidQueryError(f"Invalid value for {column.key}") from exc
    return value


def as_dict(record: Base) -> dict[str, Any]:
    # Flatten a mapped row into column values for serialization.
    return {column.key: getattr(record, column.key) for column in record.__table__.columns}


class TenantScopedAccessor:
    def __init__(
        self,
        session: AsyncSession,
        tenant_id: str,
        *,
        models: Mapping[str, type[Base]] | None = None,
        timeout_ms: int | None = None,
    ) -> None:
        self._session = session
        self._tenant_id = require_tenant_id(tenant_id)
        self._models = dict(models or TENANT_OWNED_MODELS)
        resolved_timeout = timeout_ms if timeout_ms is not None else get_settings().data_store_timeout_ms
        self._timeout_s = max(resolved_timeout, 1) / 1000.0

    @property
    def tenant_id(self) -> str:
        return self._tenant_id

    @property
    def entity_types(self) -> list[str]:
        return sorted(self._models)

    def _model(self, entity_type: str) -> type[Base]:
        model = self._models.get(entity_type)
        if model is None:
            raise InvalidQueryError(f"Unknown entity type: {entity_type}")
        return model

    def _clean(self, model: type[Base], values: Mapping[str, Any] | None, *, server_keys: bool) -> dict[str, Any]:
        # Strip tenant keys silently, then reject anything that is not a column.
        columns = set(model.__table__.columns.keys())
        cleaned: dict[str, Any] = {}
        for key, value in (values or {}).items():
            if key in TENANT_KEYS:
                continue
            if server_keys and key in _SERVER_KEYS:
                continue
            if key not in columns:
                raise InvalidQueryError(f"Unknown field for {model.__tablename__}: {key}")
            cleaned[key] = _coerce(model.__table__.columns[key], value)
        return cleaned

    async def _guarded(self, awaitable: Awaitable[T]) -> T:
        # Bound every storage round-trip; timeouts and dropped connections are retryable.
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout_s)
        except TimeoutError as exc:
            logger.warning("scoped_store_timeout tenant_id=%s", self._tenant_id)
            raise TransientStoreError("Data store timed out") from exc
        except (OperationalError, InterfaceError) as exc:
            logger.warning("scoped_store_unavailable tenant_id=%s", self._tenant_id, exc_info=exc)
            raise TransientStoreError("Data store unavailable") from exc
        except IntegrityError as exc:
            # The transaction is unusable after a failed write.
            await self._session.rollback()
            logger.info("scoped_store_conflict tenant_id=%s error=%s", self._tenant_id, type(exc.orig).__name__)
            raise ConflictError("Record conflicts with an existing record") from exc
        except DBAPIError as exc:
            if exc.connection_invalidated:
                raise TransientStoreError("Data store connection lost") from exc
            raise

    async def _execute(self, stmt):
        await self._guarded(bind_tenant(self._session, self._tenant_id))
        return await self._guarded(self._session.execute(stmt))

    async def find(
        self,
        entity_type: str,
        filters: Mapping[str, Any] | None = None,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Base]:
        model = self._model(entity_type)
        criteria = self._clean(model, filters, server_keys=False)
        stmt = select(model).where(tenant_predicate(model, self._tenant_id))
        for key, value in criteria.items():
            column = getattr(model, key)
            if isinstance(value, (list, tuple, set, frozenset)):
                stmt = stmt.where(column.in_(list(value)))
            else:
                stmt = stmt.where(column == value)
        stmt = stmt.order_by(model.created_at.desc(), model.id).offset(max(offset, 0))
        stmt = stmt.limit(min(max(limit, 1), _MAX_PAGE_SIZE))
        result = await self._execute(stmt)
        return list(result.scalars().all())

    async def get(self, entity_type: str, record_id: str) -> Base | None:
        # Foreign and missing ids are indistinguishable: both return None.
        model = self._model(entity_type)
        stmt = (
            select(model)
            .where(model.id == record_id, tenant_predicate(model, self._tenant_id))
            .execution_options(populate_existing=True)
        )
        result = await self._execute(stmt)
        return result.scalar_one_or_none()

    async def create(self, entity_type: str, data: Mapping[str, Any]) -> Base:
        model = self._model(entity_type)
        values = self._clean(model, data, server_keys=True)
        values["tenant_id"] = self._tenant_id
        record = model(**values)
        self._session.add(record)
        await self._guarded(bind_tenant(self._session, self._tenant_id))
        await self._guarded(self._session.flush())
        # Load server defaults (timestamps) while still inside the async context.
        await self._guarded(self._session.refresh(record))
        return record

    async def update(self, entity_type: str, record_id: str, patch: Mapping[str, Any]) -> int:
        model = self._model(entity_type)
        values = self._clean(model, patch, server_keys=True)
        if not values:
            return 0
        stmt = (
            update(model)
            .where(model.id == record_id, tenant_predicate(model, self._tenant_id))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._execute(stmt)
        return int(result.rowcount or 0)

    async def delete(self, entity_type: str, record_id: str) -> int:
        model = self._model(entity_type)
        stmt = (
            delete(model)
            .where(model.id == record_id, tenant_predicate(model, self._tenant_id))
            .execution_options(synchronize_session=False)
        )
        result = await self._execute(stmt)
        return int(result.rowcount or 0)
