from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from plugingate.domain.models import Subscription, User
from plugingate.domain.tiers import DEFAULT_TIERS
from plugingate.persistence.db import SessionLocal
from plugingate.services.auth.access_tokens import IssuedToken, issue_access_token
from plugingate.services.auth.web_sessions import create_web_session
from plugingate.services.plans import get_plan, upsert_plan


def price_id_for(slug: str) -> str:
    return f"price_test_{slug}"


async def seed_default_plans(session: AsyncSession) -> None:
    # Reset every default tier to its seeded limits with deterministic Stripe prices.
    for tier in DEFAULT_TIERS:
        await upsert_plan(
            session,
            slug=tier.slug,
            name=tier.name,
            quota=tier.quota,
            features=tier.features,
            monthly_price_cents=tier.monthly_price_cents,
            stripe_price_id=None if tier.slug == "free" else price_id_for(tier.slug),
            sort_order=tier.sort_order,
        )


async def create_test_user(
    *,
    customer_id: str | None = None,
    is_active: bool = True,
) -> str:
    # Provision a user with a unique email so tests never collide.
    user_id = f"u-{uuid4().hex}"
    async with SessionLocal() as session:
        session.add(
            User(
                id=user_id,
                email=f"{user_id}@example.test",
                name="Test User",
                billing_customer_id=customer_id,
                is_active=is_active,
            )
        )
        await session.commit()
    return user_id


async def issue_test_token(user_id: str, *, now: datetime | None = None) -> IssuedToken:
    async with SessionLocal() as session:
        issued = await issue_access_token(session, user_id, now=now)
        await session.commit()
    return issued


async def create_test_web_session(user_id: str, *, ttl_hours: int | None = 24) -> str:
    async with SessionLocal() as session:
        raw_token, _row = await create_web_session(session, user_id=user_id, ttl_hours=ttl_hours)
        await session.commit()
    return raw_token


async def create_test_subscription(
    user_id: str,
    *,
    plan_slug: str,
    status: str = "active",
    customer_id: str | None = None,
    external_ref: str | None = None,
) -> None:
    # Write a subscription with a fresh snapshot of the plan's quota.
    async with SessionLocal() as session:
        plan = await get_plan(session, plan_slug)
        session.add(
            Subscription(
                user_id=user_id,
                plan_slug=plan.slug,
                status=status,
                billing_customer_id=customer_id,
                external_ref=external_ref,
                quota_json=plan.quota.to_json(),
                last_event_at=None,
            )
        )
        await session.commit()


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
