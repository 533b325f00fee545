from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from plugingate.domain.models import AuditEvent


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["authorization", "token", "secret", "password", "signature", "cookie"]
_REDACTED_VALUE = "[REDACTED]"

# Event types written by the gateway; dashboards filter on these strings.
EVENT_ACCESS_FAILURE = "auth.access.failure"
EVENT_TOKEN_ISSUED = "auth.token.issued"
EVENT_TOKEN_REVOKED = "auth.token.revoked"
EVENT_HANDOFF_DELIVERED = "auth.handoff.delivered"
EVENT_SUBSCRIPTION_APPLIED = "billing.subscription.applied"
EVENT_SUBSCRIPTION_CANCELED = "billing.subscription.canceled"
EVENT_SUBSCRIPTION_SKIPPED = "billing.subscription.skipped"


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


def get_request_context(request: Request | None) -> dict[str, str | None]:
    # Extract request identifiers and client hints without persisting credentials.
    if request is None:
        return {"request_id": None, "ip_address": None, "user_agent": None}
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    ip_address = request.client.host if request.client else None
    user_agent = request.headers.get("user-agent")
    return {"request_id": request_id, "ip_address": ip_address, "user_agent": user_agent}


async def record_event(
    *,
    session: AsyncSession,
    user_id: str | None,
    actor_type: str,
    actor_id: str | None,
    event_type: str,
    outcome: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    request: Request | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    commit: bool = False,
    best_effort: bool = True,
) -> None:
    # Write audit rows in a best-effort manner to avoid breaking user flows.
    request_ctx = get_request_context(request)
    event = AuditEvent(
        occurred_at=datetime.now(timezone.utc),
        user_id=user_id,
        actor_type=actor_type,
        actor_id=actor_id,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request_ctx["request_id"],
        ip_address=request_ctx["ip_address"],
        user_agent=request_ctx["user_agent"],
        metadata_json=sanitize_metadata(metadata or {}),
        error_code=error_code,
    )
    try:
        session.add(event)
        if commit:
            await session.commit()
    except SQLAlchemyError as exc:
        if commit:
            await session.rollback()
        if not best_effort:
            raise
        logger.warning(
            "audit_event_write_failed event_type=%s request_id=%s",
            event_type,
            request_ctx["request_id"],
            exc_info=exc,
        )
