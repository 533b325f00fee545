from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from plugingate.core.errors import ConfigurationDefectError
from plugingate.domain.limits import LIFETIME_PERIOD_KEY, PeriodType, QuotaDescriptor
from plugingate.domain.models import UsageCounter, UsageEvent


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageDecision:
    # Quota verdict plus the numbers rendered back to the plugin.
    allowed: bool
    used: int
    limit: int
    remaining: int

    def to_json(self) -> dict[str, int]:
        return {"limit": self.limit, "used": self.used, "remaining": self.remaining}


def _utc_now() -> datetime:
    # Use UTC for consistent quota period boundaries.
    return datetime.now(timezone.utc)


def period_key_for(quota: QuotaDescriptor, now: datetime | None = None) -> str:
    # One-time quotas share a single lifetime bucket; daily quotas roll at UTC midnight.
    if quota.period_type is PeriodType.ONE_TIME:
        return LIFETIME_PERIOD_KEY
    current = (now or _utc_now()).astimezone(timezone.utc)
    return current.date().isoformat()


def _upsert_insert(session: AsyncSession):  # type: ignore[no-untyped-def]
    # ON CONFLICT syntax lives on the dialect-specific insert constructs.
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise ConfigurationDefectError(f"Atomic usage increments are not supported on {dialect}")


async def increment(
    session: AsyncSession,
    user_id: str,
    action: str,
    period_key: str,
    amount: int = 1,
) -> int:
    """Atomically add ``amount`` to a usage counter and return the new count.

    The read-modify-write happens inside a single upsert statement so
    concurrent callers never lose updates. The caller owns the commit.
    """
    if amount < 1:
        raise ValueError("amount must be >= 1")
    insert = _upsert_insert(session)
    stmt = insert(UsageCounter).values(
        user_id=user_id,
        action=action,
        period_key=period_key,
        count=amount,
        updated_at=func.now(),
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[UsageCounter.user_id, UsageCounter.action, UsageCounter.period_key],
        set_={"count": UsageCounter.count + amount, "updated_at": func.now()},
    ).returning(UsageCounter.count)
    result = await session.execute(stmt)
    return int(result.scalar_one())


async def peek(session: AsyncSession, user_id: str, action: str, period_key: str) -> int:
    result = await session.execute(
        select(UsageCounter.count).where(
            UsageCounter.user_id == user_id,
            UsageCounter.action == action,
            UsageCounter.period_key == period_key,
        )
    )
    count = result.scalar_one_or_none()
    return int(count or 0)


async def check_and_reserve(
    session: AsyncSession,
    user_id: str,
    action: str,
    period_key: str,
    quota: QuotaDescriptor,
    requested: int = 1,
) -> UsageDecision:
    # Read-only check; the caller increments separately once the action is allowed.
    used = await peek(session, user_id, action, period_key)
    return UsageDecision(
        allowed=quota.allows(used, requested),
        used=used,
        limit=quota.limit,
        remaining=quota.remaining(used),
    )


async def record_usage_event(
    session: AsyncSession,
    *,
    user_id: str,
    action: str,
    quantity: int,
    plan_slug: str,
    metadata: dict[str, Any] | None = None,
) -> UsageEvent:
    # Append-only analytics row tagged with the plan in force at the time of the action.
    event = UsageEvent(
        user_id=user_id,
        action=action,
        quantity=quantity,
        plan_slug=plan_slug,
        metadata_json=metadata or None,
        created_at=_utc_now(),
    )
    session.add(event)
    await session.flush()
    return event
