from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from sqlalchemy import func, select

from plugingate.core.errors import ConfigurationDefectError
from plugingate.domain.limits import UNLIMITED, PeriodType, QuotaDescriptor
from plugingate.domain.models import UsageCounter, UsageEvent
from plugingate.persistence.db import SessionLocal
from plugingate.services.usage import check_and_reserve, increment, peek, record_usage_event
from plugingate.tests.utils.auth import create_test_user


async def _increment_once(user_id: str, period_key: str) -> int:
    # Each caller gets its own session, like concurrent requests would.
    async with SessionLocal() as session:
        value = await increment(session, user_id, "resize", period_key)
        await session.commit()
    return value


@pytest.mark.asyncio
async def test_increment_creates_then_accumulates() -> None:
    user_id = await create_test_user()
    async with SessionLocal() as session:
        assert await peek(session, user_id, "resize", "2026-03-01") == 0
        assert await increment(session, user_id, "resize", "2026-03-01") == 1
        assert await increment(session, user_id, "resize", "2026-03-01", amount=3) == 4
        await session.commit()

    async with SessionLocal() as session:
        assert await peek(session, user_id, "resize", "2026-03-01") == 4


@pytest.mark.asyncio
async def test_concurrent_increments_never_lose_updates() -> None:
    user_id = await create_test_user()
    attempts = 25

    results = await asyncio.gather(
        *(_increment_once(user_id, "2026-03-01") for _ in range(attempts))
    )

    # Every caller saw a distinct post-increment value.
    assert sorted(results) == list(range(1, attempts + 1))
    async with SessionLocal() as session:
        assert await peek(session, user_id, "resize", "2026-03-01") == attempts


@pytest.mark.asyncio
async def test_counters_are_scoped_by_action_and_period() -> None:
    user_id = await create_test_user()
    async with SessionLocal() as session:
        await increment(session, user_id, "resize", "2026-03-01", amount=2)
        await increment(session, user_id, "resize", "2026-03-02")
        await increment(session, user_id, "export", "2026-03-01")
        await session.commit()

    async with SessionLocal() as session:
        assert await peek(session, user_id, "resize", "2026-03-01") == 2
        assert await peek(session, user_id, "resize", "2026-03-02") == 1
        assert await peek(session, user_id, "export", "2026-03-01") == 1
        rows = await session.execute(
            select(func.count()).select_from(UsageCounter).where(UsageCounter.user_id == user_id)
        )
        assert rows.scalar_one() == 3


@pytest.mark.asyncio
async def test_increment_rejects_non_positive_amounts() -> None:
    async with SessionLocal() as session:
        with pytest.raises(ValueError):
            await increment(session, "u-any", "resize", "lifetime", amount=0)


@pytest.mark.asyncio
async def test_check_reports_remaining_without_writing() -> None:
    user_id = await create_test_user()
    ten = QuotaDescriptor(PeriodType.ONE_TIME, limit=10)
    unlimited_quota = QuotaDescriptor(PeriodType.ONE_TIME, limit=UNLIMITED)
    async with SessionLocal() as session:
        await increment(session, user_id, "resize", "lifetime", amount=9)
        await session.commit()

    async with SessionLocal() as session:
        allowed = await check_and_reserve(session, user_id, "resize", "lifetime", ten)
        too_many = await check_and_reserve(
            session, user_id, "resize", "lifetime", ten, requested=2
        )
        unlimited = await check_and_reserve(
            session, user_id, "resize", "lifetime", unlimited_quota, requested=500
        )
        assert await peek(session, user_id, "resize", "lifetime") == 9

    assert allowed.allowed and allowed.remaining == 1
    assert not too_many.allowed
    assert too_many.to_json() == {"limit": 10, "used": 9, "remaining": 1}
    assert unlimited.allowed and unlimited.remaining == UNLIMITED


@pytest.mark.asyncio
async def test_usage_events_are_tagged_with_plan() -> None:
    user_id = await create_test_user()
    async with SessionLocal() as session:
        await record_usage_event(
            session,
            user_id=user_id,
            action="resize",
            quantity=3,
            plan_slug="pro",
            metadata={"format": "png"},
        )
        await session.commit()

    async with SessionLocal() as session:
        result = await session.execute(select(UsageEvent).where(UsageEvent.user_id == user_id))
        event = result.scalar_one()
    assert event.plan_slug == "pro"
    assert event.quantity == 3
    assert event.metadata_json == {"format": "png"}
    assert event.created_at.replace(tzinfo=timezone.utc) <= datetime.now(timezone.utc)


@pytest.mark.asyncio
async def test_increment_on_unsupported_backend_is_a_configuration_defect() -> None:
    bind = SimpleNamespace(dialect=SimpleNamespace(name="mysql"))
    session = SimpleNamespace(get_bind=lambda: bind)
    with pytest.raises(ConfigurationDefectError):
        await increment(session, "u-any", "resize", "lifetime")
