from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from plugingate.domain.limits import QuotaDescriptor
from plugingate.domain.models import Subscription, User
from plugingate.services.audit import (
    EVENT_SUBSCRIPTION_APPLIED,
    EVENT_SUBSCRIPTION_CANCELED,
    EVENT_SUBSCRIPTION_SKIPPED,
    record_event,
)
from plugingate.services.plans import DEFAULT_PLAN_SLUG, PlanRecord, get_default_plan


logger = logging.getLogger(__name__)


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class ApplyOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    STALE = "stale"
    NO_SUBSCRIPTION = "no_subscription"
    SKIPPED_UNRESOLVED = "skipped_unresolved"
    IGNORED = "ignored"


@dataclass(frozen=True)
class SubscriptionView:
    # Enforcement view; quota is the denormalized snapshot, never re-read from Plan.
    user_id: str
    plan_slug: str
    status: str
    quota: QuotaDescriptor
    external_ref: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    persisted: bool = False


@dataclass(frozen=True)
class SubscriptionChange:
    """A billing event already mapped onto local plan and status."""

    event_id: str
    event_at: datetime
    customer_id: str
    plan: PlanRecord
    status: SubscriptionStatus
    external_ref: str | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on read; treat stored values as UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _view_from_row(row: Subscription) -> SubscriptionView:
    return SubscriptionView(
        user_id=row.user_id,
        plan_slug=row.plan_slug,
        status=row.status,
        quota=QuotaDescriptor.from_json(row.quota_json),
        external_ref=row.external_ref,
        current_period_start=_ensure_utc(row.current_period_start),
        current_period_end=_ensure_utc(row.current_period_end),
        persisted=True,
    )


async def _load_row(session: AsyncSession, user_id: str) -> Subscription | None:
    result = await session.execute(select(Subscription).where(Subscription.user_id == user_id))
    return result.scalar_one_or_none()


async def get_subscription(session: AsyncSession, user_id: str) -> SubscriptionView:
    """Return the subject's subscription, or a transient free-plan view.

    Subjects that never paid have no row; they read back the seeded default
    plan's current quota. Nothing is written on this path.
    """
    row = await _load_row(session, user_id)
    if row is not None:
        return _view_from_row(row)
    plan = await get_default_plan(session)
    return SubscriptionView(
        user_id=user_id,
        plan_slug=plan.slug,
        status=SubscriptionStatus.ACTIVE.value,
        quota=plan.quota,
    )


async def resolve_billing_subject(session: AsyncSession, customer_id: str | None) -> User | None:
    # Billing references map to exactly one local user through the identity table.
    if not customer_id:
        return None
    result = await session.execute(select(User).where(User.billing_customer_id == customer_id))
    return result.scalar_one_or_none()


async def record_unresolved_event(
    session: AsyncSession, *, event_id: str, customer_id: str | None
) -> None:
    logger.warning(
        "billing_event_skipped reason=unresolved_subject event_id=%s customer_id=%s",
        event_id,
        customer_id,
    )
    await record_event(
        session=session,
        user_id=None,
        actor_type="billing",
        actor_id=customer_id,
        event_type=EVENT_SUBSCRIPTION_SKIPPED,
        outcome="skipped",
        resource_type="billing_event",
        resource_id=event_id,
        metadata={"customer_id": customer_id, "reason": "unresolved_subject"},
    )


def _is_stale(row: Subscription, event_at: datetime) -> bool:
    # Out-of-order deliveries never roll a subscription back.
    last = _ensure_utc(row.last_event_at)
    return last is not None and event_at < last


def _is_foreign(row: Subscription, subscription_id: str | None) -> bool:
    # Events about a subscription the user has since replaced leave the current one alone.
    return (
        subscription_id is not None
        and row.external_ref is not None
        and row.external_ref != subscription_id
    )


async def apply_billing_event(session: AsyncSession, change: SubscriptionChange) -> ApplyOutcome:
    """Upsert a subscription from a mapped billing event.

    Re-applying the same event leaves the row exactly as the first apply did.
    An event whose customer has no local user is logged and skipped.
    """
    user = await resolve_billing_subject(session, change.customer_id)
    if user is None:
        await record_unresolved_event(
            session, event_id=change.event_id, customer_id=change.customer_id
        )
        return ApplyOutcome.SKIPPED_UNRESOLVED

    row = await _load_row(session, user.id)
    if row is not None and row.last_event_id == change.event_id:
        return ApplyOutcome.UNCHANGED
    if row is not None and _is_stale(row, change.event_at):
        logger.info(
            "billing_event_stale event_id=%s user_id=%s", change.event_id, user.id
        )
        return ApplyOutcome.STALE

    outcome = ApplyOutcome.UPDATED
    if row is None:
        row = Subscription(user_id=user.id)
        session.add(row)
        outcome = ApplyOutcome.CREATED
    row.plan_slug = change.plan.slug
    row.status = change.status.value
    row.external_ref = change.external_ref
    row.billing_customer_id = change.customer_id
    row.current_period_start = change.period_start
    row.current_period_end = change.period_end
    # Snapshot refresh is what makes the new plan enforceable.
    row.quota_json = change.plan.quota.to_json()
    row.last_event_id = change.event_id
    row.last_event_at = change.event_at
    await session.flush()

    logger.info(
        "subscription_applied user_id=%s plan=%s status=%s outcome=%s",
        user.id,
        row.plan_slug,
        row.status,
        outcome.value,
    )
    await record_event(
        session=session,
        user_id=user.id,
        actor_type="billing",
        actor_id=change.customer_id,
        event_type=EVENT_SUBSCRIPTION_APPLIED,
        outcome="success",
        resource_type="subscription",
        resource_id=str(row.id),
        metadata={"plan": row.plan_slug, "status": row.status, "event_id": change.event_id},
    )
    return outcome


async def cancel_to_default(
    session: AsyncSession,
    user_id: str,
    *,
    event_id: str | None = None,
    event_at: datetime | None = None,
    subscription_id: str | None = None,
) -> ApplyOutcome:
    # Cancellation copies the default plan's quota as it stands now, not a cached copy.
    plan = await get_default_plan(session)
    row = await _load_row(session, user_id)
    if row is not None and event_id is not None and row.last_event_id == event_id:
        return ApplyOutcome.UNCHANGED
    if row is not None and _is_foreign(row, subscription_id):
        logger.info(
            "billing_event_foreign_subscription event_id=%s user_id=%s subscription_id=%s",
            event_id,
            user_id,
            subscription_id,
        )
        return ApplyOutcome.IGNORED
    if row is not None and event_at is not None and _is_stale(row, event_at):
        logger.info("billing_event_stale event_id=%s user_id=%s", event_id, user_id)
        return ApplyOutcome.STALE
    outcome = ApplyOutcome.UPDATED
    if row is None:
        row = Subscription(user_id=user_id)
        session.add(row)
        outcome = ApplyOutcome.CREATED
    row.plan_slug = plan.slug
    row.status = SubscriptionStatus.CANCELED.value
    row.quota_json = plan.quota.to_json()
    if event_id is not None:
        row.last_event_id = event_id
        row.last_event_at = event_at or _utc_now()
    await session.flush()
    logger.info("subscription_canceled user_id=%s plan=%s", user_id, DEFAULT_PLAN_SLUG)
    await record_event(
        session=session,
        user_id=user_id,
        actor_type="billing",
        actor_id=row.billing_customer_id,
        event_type=EVENT_SUBSCRIPTION_CANCELED,
        outcome="success",
        resource_type="subscription",
        resource_id=str(row.id),
        metadata={"event_id": event_id},
    )
    return outcome


async def set_subscription_status(
    session: AsyncSession,
    *,
    customer_id: str | None,
    from_statuses: set[SubscriptionStatus],
    to_status: SubscriptionStatus,
    event_id: str,
    event_at: datetime,
    period_start: datetime | None = None,
    period_end: datetime | None = None,
    subscription_id: str | None = None,
) -> ApplyOutcome:
    """Move an existing subscription between ``active`` and ``past_due``.

    Payment events never create subscriptions; with no row they are a no-op.
    Invoices for a subscription other than the current one are ignored.
    Transitions outside ``from_statuses`` leave the status alone.
    """
    user = await resolve_billing_subject(session, customer_id)
    if user is None:
        await record_unresolved_event(session, event_id=event_id, customer_id=customer_id)
        return ApplyOutcome.SKIPPED_UNRESOLVED
    row = await _load_row(session, user.id)
    if row is None:
        return ApplyOutcome.NO_SUBSCRIPTION
    if row.last_event_id == event_id:
        return ApplyOutcome.UNCHANGED
    if _is_foreign(row, subscription_id):
        logger.info(
            "billing_event_foreign_subscription event_id=%s user_id=%s subscription_id=%s",
            event_id,
            user.id,
            subscription_id,
        )
        return ApplyOutcome.IGNORED
    if _is_stale(row, event_at):
        return ApplyOutcome.STALE

    changed = False
    if row.status in {status.value for status in from_statuses}:
        row.status = to_status.value
        changed = True
    if period_start is not None and period_end is not None and row.status == to_status.value:
        row.current_period_start = period_start
        row.current_period_end = period_end
        changed = True
    if not changed:
        return ApplyOutcome.UNCHANGED
    row.last_event_id = event_id
    row.last_event_at = event_at
    await session.flush()
    logger.info(
        "subscription_status_changed user_id=%s status=%s event_id=%s",
        user.id,
        row.status,
        event_id,
    )
    return ApplyOutcome.UPDATED
