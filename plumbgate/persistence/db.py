from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from plumbgate.core.config import Settings, get_settings


def _engine_options(settings: Settings) -> dict[str, Any]:
    options: dict[str, Any] = {"pool_pre_ping": True}
    if settings.database_url.startswith("sqlite"):
        # aiosqlite has no server-side pool or statement timeout.
        return options
    options.update(
        pool_size=max(1, settings.db_pool_size),
        max_overflow=max(0, settings.db_max_overflow),
        pool_timeout=30,
        pool_recycle=1800,
    )
    if settings.db_statement_timeout_ms > 0:
        server_settings = {"statement_timeout": str(settings.db_statement_timeout_ms)}
        options["connect_args"] = {"server_settings": server_settings}
    return options


_settings = get_settings()
engine = create_async_engine(_settings.database_url, **_engine_options(_settings))
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session


async def bind_tenant(session: AsyncSession, tenant_id: str) -> None:
    """Expose ``tenant_id`` to the RLS policies for the rest of the transaction.

    ``set_config(..., true)`` is transaction-local, so the binding disappears on
    commit or rollback and callers bind again in every new transaction.
    """
    if session.bind is None or session.bind.dialect.name != "postgresql":
        return
    await session.execute(
        text("SELECT set_config('app.current_tenant', :tenant_id, true)"),
        {"tenant_id": tenant_id},
    )
