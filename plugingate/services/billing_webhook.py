from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import asyncio
import json
import logging
from typing import Any

import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from plugingate.core.config import get_settings
from plugingate.core.errors import (
    BillingEventError,
    BillingSignatureError,
    ConfigurationDefectError,
    PlanNotFoundError,
)
from plugingate.services.plans import PlanRecord, get_plan, get_plan_by_price
from plugingate.services.subscriptions import (
    ApplyOutcome,
    SubscriptionChange,
    SubscriptionStatus,
    apply_billing_event,
    cancel_to_default,
    record_unresolved_event,
    resolve_billing_subject,
    set_subscription_status,
)


logger = logging.getLogger(__name__)

EVENT_SUBSCRIPTION_CREATED = "customer.subscription.created"
EVENT_SUBSCRIPTION_UPDATED = "customer.subscription.updated"
EVENT_SUBSCRIPTION_DELETED = "customer.subscription.deleted"
EVENT_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
EVENT_PAYMENT_FAILED = "invoice.payment_failed"

SUPPORTED_EVENTS = {
    EVENT_SUBSCRIPTION_CREATED,
    EVENT_SUBSCRIPTION_UPDATED,
    EVENT_SUBSCRIPTION_DELETED,
    EVENT_PAYMENT_SUCCEEDED,
    EVENT_PAYMENT_FAILED,
}

STRIPE_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.CANCELED,
}


@dataclass(frozen=True)
class BillingEvent:
    # Typed view over the parts of a Stripe event this service acts on.
    id: str
    kind: str
    created: datetime
    customer_id: str | None
    subscription_id: str | None = None
    status: str | None = None
    price_id: str | None = None
    plan_hint: str | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None


def _dig(payload: Any, *path: Any) -> Any:
    # Walk nested Stripe objects, returning None at the first missing hop.
    current = payload
    for key in path:
        if isinstance(current, dict):
            current = current.get(key)
        elif isinstance(current, list) and isinstance(key, int):
            current = current[key] if -len(current) <= key < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def _timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _customer_ref(value: Any) -> str | None:
    # Stripe sends the customer id, or the expanded customer object.
    if isinstance(value, dict):
        return value.get("id")
    return value


def parse_billing_event(payload: dict[str, Any]) -> BillingEvent:
    """Extract a :class:`BillingEvent` from a decoded Stripe event.

    Subscription and invoice payloads carry period and price data in
    different places, and newer API versions moved the subscription period
    onto the items; both layouts are read.
    """
    try:
        event_id = str(payload["id"])
        kind = str(payload["type"])
        created = _timestamp(payload["created"])
    except (KeyError, TypeError, ValueError) as exc:
        raise BillingSignatureError("Billing event payload is missing required fields") from exc
    obj = _dig(payload, "data", "object") or {}

    if kind.startswith("invoice."):
        line = _dig(obj, "lines", "data", 0) or {}
        subscription_id = obj.get("subscription") or _dig(
            obj, "parent", "subscription_details", "subscription"
        )
        return BillingEvent(
            id=event_id,
            kind=kind,
            created=created,
            customer_id=_customer_ref(obj.get("customer")),
            subscription_id=_customer_ref(subscription_id),
            status=obj.get("status"),
            price_id=_dig(line, "price", "id") or _dig(line, "pricing", "price_details", "price"),
            plan_hint=_dig(line, "metadata", "plan"),
            period_start=_timestamp(_dig(line, "period", "start")),
            period_end=_timestamp(_dig(line, "period", "end")),
        )

    item = _dig(obj, "items", "data", 0) or {}
    return BillingEvent(
        id=event_id,
        kind=kind,
        created=created,
        customer_id=_customer_ref(obj.get("customer")),
        subscription_id=obj.get("id"),
        status=obj.get("status"),
        price_id=_dig(item, "price", "id"),
        plan_hint=_dig(obj, "metadata", "plan"),
        period_start=_timestamp(obj.get("current_period_start") or item.get("current_period_start")),
        period_end=_timestamp(obj.get("current_period_end") or item.get("current_period_end")),
    )


def verify_billing_event(payload: bytes, signature_header: str | None) -> BillingEvent:
    # Signature failures are final: the sender must not be asked to retry them.
    settings = get_settings()
    if not settings.stripe_webhook_secret:
        logger.error("billing_webhook_secret_missing")
        raise ConfigurationDefectError("STRIPE_WEBHOOK_SECRET is not configured")
    if not signature_header:
        raise BillingSignatureError("Missing Stripe-Signature header")
    try:
        stripe.Webhook.construct_event(
            payload,
            signature_header,
            settings.stripe_webhook_secret,
            tolerance=settings.stripe_webhook_tolerance_s,
        )
    except stripe.SignatureVerificationError as exc:
        logger.warning("billing_webhook_signature_invalid")
        raise BillingSignatureError("Invalid Stripe signature") from exc
    except ValueError as exc:
        raise BillingSignatureError("Invalid billing event payload") from exc
    try:
        decoded = json.loads(payload)
    except ValueError as exc:
        raise BillingSignatureError("Invalid billing event payload") from exc
    if not isinstance(decoded, dict):
        raise BillingSignatureError("Invalid billing event payload")
    return parse_billing_event(decoded)


async def _resolve_plan(session: AsyncSession, event: BillingEvent) -> PlanRecord:
    # Price id is authoritative; the metadata hint covers prices not yet in the catalog.
    plan = await get_plan_by_price(session, event.price_id)
    if plan is not None:
        return plan
    if event.plan_hint:
        try:
            return await get_plan(session, event.plan_hint)
        except PlanNotFoundError:
            pass
    logger.error(
        "billing_event_plan_unknown event_id=%s price_id=%s plan_hint=%s",
        event.id,
        event.price_id,
        event.plan_hint,
    )
    raise BillingEventError(f"No plan matches price {event.price_id!r}")


async def _apply_subscription_event(session: AsyncSession, event: BillingEvent) -> ApplyOutcome:
    status = STRIPE_STATUS_MAP.get(event.status or "")
    if status is None:
        logger.warning(
            "billing_event_status_unmapped event_id=%s status=%s", event.id, event.status
        )
        return ApplyOutcome.IGNORED
    if status is SubscriptionStatus.CANCELED:
        return await _cancel_subscription(session, event)
    plan = await _resolve_plan(session, event)
    return await apply_billing_event(
        session,
        SubscriptionChange(
            event_id=event.id,
            event_at=event.created,
            customer_id=event.customer_id or "",
            plan=plan,
            status=status,
            external_ref=event.subscription_id,
            period_start=event.period_start,
            period_end=event.period_end,
        ),
    )


async def _cancel_subscription(session: AsyncSession, event: BillingEvent) -> ApplyOutcome:
    user = await resolve_billing_subject(session, event.customer_id)
    if user is None:
        await record_unresolved_event(session, event_id=event.id, customer_id=event.customer_id)
        return ApplyOutcome.SKIPPED_UNRESOLVED
    return await cancel_to_default(
        session,
        user.id,
        event_id=event.id,
        event_at=event.created,
        subscription_id=event.subscription_id,
    )


async def process_billing_event(session: AsyncSession, event: BillingEvent) -> ApplyOutcome:
    """Route a verified billing event to the subscription record.

    Errors propagate so the webhook answers 500 and Stripe redelivers; the
    only tolerated miss is a customer with no local user.
    """
    if event.kind not in SUPPORTED_EVENTS:
        logger.info("billing_event_ignored event_id=%s kind=%s", event.id, event.kind)
        return ApplyOutcome.IGNORED
    if event.kind in {EVENT_SUBSCRIPTION_CREATED, EVENT_SUBSCRIPTION_UPDATED}:
        return await _apply_subscription_event(session, event)
    if event.kind == EVENT_SUBSCRIPTION_DELETED:
        return await _cancel_subscription(session, event)
    if event.kind == EVENT_PAYMENT_SUCCEEDED:
        return await set_subscription_status(
            session,
            customer_id=event.customer_id,
            from_statuses={SubscriptionStatus.PAST_DUE},
            to_status=SubscriptionStatus.ACTIVE,
            event_id=event.id,
            event_at=event.created,
            period_start=event.period_start,
            period_end=event.period_end,
            subscription_id=event.subscription_id,
        )
    return await set_subscription_status(
        session,
        customer_id=event.customer_id,
        from_statuses={SubscriptionStatus.ACTIVE},
        to_status=SubscriptionStatus.PAST_DUE,
        event_id=event.id,
        event_at=event.created,
        subscription_id=event.subscription_id,
    )


async def handle_billing_webhook(
    session: AsyncSession,
    payload: bytes,
    signature_header: str | None,
) -> ApplyOutcome:
    # Verify, apply and commit inside Stripe's delivery window.
    event = verify_billing_event(payload, signature_header)
    timeout = get_settings().webhook_process_timeout_s
    try:
        outcome = await asyncio.wait_for(process_billing_event(session, event), timeout=timeout)
        await session.commit()
    except asyncio.TimeoutError as exc:
        await session.rollback()
        logger.error("billing_event_timeout event_id=%s timeout_s=%s", event.id, timeout)
        raise BillingEventError(f"Processing {event.id} timed out") from exc
    except Exception:
        await session.rollback()
        logger.exception("billing_event_failed event_id=%s kind=%s", event.id, event.kind)
        raise
    logger.info(
        "billing_event_processed event_id=%s kind=%s outcome=%s",
        event.id,
        event.kind,
        outcome.value,
    )
    return outcome
