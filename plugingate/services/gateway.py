from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, TypeVar

from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from plugingate.core.config import get_settings
from plugingate.core.errors import BatchTooLargeError, QuotaExceededError, TransientStorageError
from plugingate.domain.limits import UNLIMITED
from plugingate.persistence.db import is_unavailable
from plugingate.services.auth.access_tokens import TokenSubject, validate_access_token
from plugingate.services.subscriptions import SubscriptionView, get_subscription
from plugingate.services.usage import (
    UsageDecision,
    check_and_reserve,
    increment,
    peek,
    period_key_for,
    record_usage_event,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")


async def with_read_timeout(awaitable: Awaitable[T], *, operation: str) -> T:
    # Request-path reads fail fast so the plugin can retry instead of hanging.
    timeout_ms = get_settings().read_timeout_ms
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_ms / 1000.0)
    except asyncio.TimeoutError as exc:
        logger.warning("read_timeout operation=%s timeout_ms=%s", operation, timeout_ms)
        raise TransientStorageError(f"{operation} timed out") from exc
    except DBAPIError as exc:
        if not is_unavailable(exc):
            raise
        logger.warning(
            "datastore_unavailable operation=%s error=%s", operation, type(exc.orig).__name__
        )
        raise TransientStorageError(f"{operation} failed: datastore unavailable") from exc


async def authenticate(session: AsyncSession, raw_token: str) -> TokenSubject:
    return await with_read_timeout(
        validate_access_token(session, raw_token), operation="token_validation"
    )


async def load_subscription(session: AsyncSession, user_id: str) -> SubscriptionView:
    return await with_read_timeout(get_subscription(session, user_id), operation="subscription_read")


async def track_usage(
    session: AsyncSession,
    subject: TokenSubject,
    action: str,
    quantity: int = 1,
    metadata: dict[str, Any] | None = None,
    *,
    now: datetime | None = None,
) -> UsageDecision:
    """Authorize and record one plugin action for an authenticated subject.

    Metered actions are checked against the subscription's quota snapshot and
    then counted. The check and the increment are separate statements, so two
    concurrent requests from one subject can both pass the check; the counter
    itself never loses an update.
    """
    if quantity < 1:
        raise ValueError("quantity must be >= 1")
    view = await load_subscription(session, subject.user_id)
    quota = view.quota

    if action not in get_settings().metered_action_set():
        await record_usage_event(
            session,
            user_id=subject.user_id,
            action=action,
            quantity=quantity,
            plan_slug=view.plan_slug,
            metadata=metadata,
        )
        await session.commit()
        return UsageDecision(allowed=True, used=0, limit=UNLIMITED, remaining=UNLIMITED)

    if quantity > quota.batch_ceiling:
        logger.info(
            "usage_batch_rejected user_id=%s action=%s requested=%s ceiling=%s",
            subject.user_id,
            action,
            quantity,
            quota.batch_ceiling,
        )
        raise BatchTooLargeError(quantity, quota.batch_ceiling)

    period_key = period_key_for(quota, now)
    decision = await check_and_reserve(
        session,
        subject.user_id,
        action,
        period_key,
        quota,
        requested=quantity,
    )
    if not decision.allowed:
        logger.info(
            "usage_quota_exceeded user_id=%s action=%s plan=%s used=%s limit=%s",
            subject.user_id,
            action,
            view.plan_slug,
            decision.used,
            decision.limit,
        )
        raise QuotaExceededError(action, decision)

    used = await increment(session, subject.user_id, action, period_key, amount=quantity)
    await record_usage_event(
        session,
        user_id=subject.user_id,
        action=action,
        quantity=quantity,
        plan_slug=view.plan_slug,
        metadata=metadata,
    )
    await session.commit()
    return UsageDecision(
        allowed=True,
        used=used,
        limit=quota.limit,
        remaining=quota.remaining(used),
    )


async def usage_summary(
    session: AsyncSession,
    view: SubscriptionView,
    *,
    now: datetime | None = None,
) -> dict[str, dict[str, Any]]:
    # Current-period usage per metered action, rendered for /user-info.
    period_key = period_key_for(view.quota, now)
    summary: dict[str, dict[str, Any]] = {}
    for action in sorted(get_settings().metered_action_set()):
        used = await peek(session, view.user_id, action, period_key)
        summary[action] = {
            "used": used,
            "limit": view.quota.limit,
            "remaining": view.quota.remaining(used),
            "period": period_key,
        }
    return summary
