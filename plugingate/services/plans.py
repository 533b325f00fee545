from __future__ import annotations

from dataclasses import dataclass
import asyncio
import logging
import time
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from plugingate.core.config import get_settings
from plugingate.core.errors import ConfigurationDefectError, PlanNotFoundError
from plugingate.domain.limits import PeriodType, QuotaDescriptor
from plugingate.domain.models import Plan
from plugingate.domain.tiers import FEATURE_API_ACCESS, FEATURE_WATERMARK, FORMAT_FEATURE_PREFIX


logger = logging.getLogger(__name__)

DEFAULT_PLAN_SLUG = "free"


@dataclass(frozen=True)
class PlanRecord:
    slug: str
    name: str
    quota: QuotaDescriptor
    features: tuple[str, ...]
    monthly_price_cents: int
    stripe_price_id: str | None
    sort_order: int
    is_active: bool

    def has_feature(self, feature: str) -> bool:
        return feature in self.features

    @property
    def supported_formats(self) -> list[str]:
        return [
            feature[len(FORMAT_FEATURE_PREFIX):]
            for feature in self.features
            if feature.startswith(FORMAT_FEATURE_PREFIX)
        ]


def plan_record_from_row(row: Plan) -> PlanRecord:
    # A quota blob that fails validation is a seeding defect, not a caller error.
    try:
        quota = QuotaDescriptor.from_json(row.quota_json)
    except ValueError as exc:
        logger.error("plan_quota_invalid slug=%s error=%s", row.slug, exc)
        raise ConfigurationDefectError(f"Plan {row.slug!r} has an invalid quota") from exc
    return PlanRecord(
        slug=row.slug,
        name=row.name,
        quota=quota,
        features=tuple(row.features_json or ()),
        monthly_price_cents=int(row.monthly_price_cents or 0),
        stripe_price_id=row.stripe_price_id,
        sort_order=int(row.sort_order or 0),
        is_active=bool(row.is_active),
    )


_catalog_cache: dict[str, tuple[float, list[PlanRecord]]] = {}
_catalog_cache_lock = asyncio.Lock()
_CATALOG_KEY = "active"


async def get_plan(session: AsyncSession, slug: str) -> PlanRecord:
    result = await session.execute(select(Plan).where(Plan.slug == slug))
    row = result.scalar_one_or_none()
    if row is None:
        raise PlanNotFoundError(f"Plan {slug!r} not found")
    return plan_record_from_row(row)


async def get_plan_by_price(session: AsyncSession, stripe_price_id: str | None) -> PlanRecord | None:
    # Billing events name prices, not plans; map them back through the catalog.
    if not stripe_price_id:
        return None
    result = await session.execute(select(Plan).where(Plan.stripe_price_id == stripe_price_id))
    row = result.scalar_one_or_none()
    return plan_record_from_row(row) if row is not None else None


async def get_default_plan(session: AsyncSession) -> PlanRecord:
    """Load the fallback plan for subjects without a subscription.

    The fallback must come from the registry. A missing or inactive ``free``
    row is a deployment defect and is surfaced, never papered over with
    hardcoded limits.
    """
    result = await session.execute(select(Plan).where(Plan.slug == DEFAULT_PLAN_SLUG))
    row = result.scalar_one_or_none()
    if row is None or not row.is_active:
        logger.error("default_plan_missing slug=%s", DEFAULT_PLAN_SLUG)
        raise ConfigurationDefectError(f"Default plan {DEFAULT_PLAN_SLUG!r} is not seeded")
    return plan_record_from_row(row)


async def list_plan_catalog(session: AsyncSession) -> list[PlanRecord]:
    # Short-lived cache for the public catalog; enforcement never reads from here.
    now = time.time()
    cached = _catalog_cache.get(_CATALOG_KEY)
    if cached and cached[0] > now:
        return cached[1]

    result = await session.execute(
        select(Plan).where(Plan.is_active.is_(True)).order_by(Plan.sort_order, Plan.slug)
    )
    records = [plan_record_from_row(row) for row in result.scalars().all()]
    ttl = get_settings().plan_catalog_cache_ttl_s
    async with _catalog_cache_lock:
        _catalog_cache[_CATALOG_KEY] = (now + ttl, records)
    return records


def reset_plan_catalog_cache() -> None:
    # Clear cached catalog entries for deterministic tests and admin refreshes.
    _catalog_cache.clear()


async def upsert_plan(
    session: AsyncSession,
    *,
    slug: str,
    name: str,
    quota: QuotaDescriptor,
    features: list[str] | None = None,
    monthly_price_cents: int = 0,
    stripe_price_id: str | None = None,
    sort_order: int = 0,
    is_active: bool = True,
) -> Plan:
    # Administrative write used by seeding; callers own the commit.
    row = await session.get(Plan, slug)
    if row is None:
        row = Plan(slug=slug)
        session.add(row)
    row.name = name
    row.quota_json = quota.to_json()
    row.features_json = list(features or [])
    row.monthly_price_cents = monthly_price_cents
    row.stripe_price_id = stripe_price_id
    row.sort_order = sort_order
    row.is_active = is_active
    await session.flush()
    reset_plan_catalog_cache()
    return row


def catalog_entry(plan: PlanRecord) -> dict[str, Any]:
    # Shape consumed by the plugin's upgrade screen.
    quota = plan.quota
    per_day = None
    one_time = None
    if quota.period_type is PeriodType.DAILY and not quota.is_unlimited:
        per_day = quota.limit
    elif quota.period_type is PeriodType.ONE_TIME and not quota.is_unlimited:
        one_time = quota.limit
    return {
        "id": plan.slug,
        "displayName": plan.name,
        "monthlyPrice": plan.monthly_price_cents,
        "stripePriceId": plan.stripe_price_id,
        "resizesPerDay": per_day,
        "resizesOneTime": one_time,
        "unlimited": quota.is_unlimited,
        "maxBatchSize": quota.batch_ceiling,
        "hasApiAccess": plan.has_feature(FEATURE_API_ACCESS),
        "hasWatermark": plan.has_feature(FEATURE_WATERMARK),
        "supportedFormats": plan.supported_formats,
    }
