from __future__ import annotations

import json
import os
import tempfile

# Settings are read at import time by persistence.db; configure before any plumbgate import.
_TEST_DB_PATH = os.path.join(tempfile.gettempdir(), f"plumbgate-test-{os.getpid()}.db")
os.environ["DATABASE_URL"] = os.environ.get("TEST_DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DB_PATH}")
os.environ["AUTH_JWT_SECRET"] = "test-jwt-secret-with-enough-length-0123456789"
os.environ["AUTH_JWT_ALGORITHMS"] = "HS256"
os.environ["AUTH_JWKS_URL"] = ""
os.environ["WEBHOOK_SECRETS_JSON"] = json.dumps({"mollie": "whsec_test_mollie"})
os.environ["WEBHOOK_RETRY_BACKOFF_MS"] = "1"
os.environ["RATE_LIMIT_ENABLED"] = "false"

import pytest  # noqa: E402

from plumbgate.apps.api import deps, rate_limit  # noqa: E402
from plumbgate.core.config import get_settings  # noqa: E402
from plumbgate.domain.models import Base  # noqa: E402
from plumbgate.persistence.db import engine  # noqa: E402


@pytest.fixture(autouse=True)
async def fresh_schema() -> None:
    # Rebuild the schema per test so each test starts from empty tables.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_cached_state() -> None:
    # Settings, identity provider and limiter are process-wide caches.
    get_settings.cache_clear()
    deps._identity_provider = None
    rate_limit.reset_rate_limiter_state()
    yield
    get_settings.cache_clear()
    deps._identity_provider = None
    rate_limit.reset_rate_limiter_state()


def pytest_sessionfinish(session, exitstatus) -> None:
    if os.path.exists(_TEST_DB_PATH):
        os.remove(_TEST_DB_PATH)
