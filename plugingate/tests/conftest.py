from __future__ import annotations

import asyncio
import os
import tempfile

# Default to a throwaway SQLite file; set DATABASE_URL to run against Postgres.
_TEST_DB_DIR = tempfile.mkdtemp(prefix="plugingate-tests-")
os.environ.setdefault(
    "DATABASE_URL", f"sqlite+aiosqlite:///{os.path.join(_TEST_DB_DIR, 'plugingate.db')}"
)
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("JWT_SECRET", "test-plugin-jwt-secret-0123456789abcdef")

import pytest  # noqa: E402

from plugingate.core.config import get_settings  # noqa: E402
from plugingate.domain.models import Base  # noqa: E402
from plugingate.persistence.db import SessionLocal, engine  # noqa: E402
from plugingate.services.auth.handoff import reset_handoff_registry  # noqa: E402
from plugingate.services.plans import reset_plan_catalog_cache  # noqa: E402
from plugingate.tests.utils.auth import seed_default_plans  # noqa: E402


async def _create_schema() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await engine.dispose()


@pytest.fixture(scope="session", autouse=True)
def create_schema() -> None:
    # Build tables once per run; tests isolate themselves with unique user ids.
    asyncio.run(_create_schema())
    yield


@pytest.fixture(autouse=True)
async def reset_plan_catalog() -> None:
    # Restore the default tiers so tests that edit plans never leak into others.
    get_settings.cache_clear()
    reset_plan_catalog_cache()
    reset_handoff_registry()
    async with SessionLocal() as session:
        await seed_default_plans(session)
        await session.commit()
    yield
    get_settings.cache_clear()
    reset_plan_catalog_cache()
    reset_handoff_registry()


@pytest.fixture(autouse=True)
async def dispose_engine_between_tests() -> None:
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    yield
    await engine.dispose()
