from __future__ import annotations

from datetime import datetime, timedelta, timezone
import hashlib
import logging
import secrets
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from plugingate.domain.models import User, WebSession


logger = logging.getLogger(__name__)

TOKEN_PREFIX = "pgws_"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on read; treat stored values as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def hash_session_token(raw_token: str) -> str:
    # Use SHA-256 for deterministic, non-reversible token storage.
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def generate_session_token() -> tuple[str, str, str]:
    session_id = uuid4().hex
    raw_token = f"{TOKEN_PREFIX}{session_id}_{secrets.token_urlsafe(32)}"
    return session_id, raw_token, hash_session_token(raw_token)


async def create_web_session(
    session: AsyncSession,
    *,
    user_id: str,
    ttl_hours: int | None = 24 * 30,
) -> tuple[str, WebSession]:
    # Persist a hashed website session; the raw value is only returned once.
    session_id, raw_token, token_hash = generate_session_token()
    now = _utc_now()
    row = WebSession(
        id=session_id,
        user_id=user_id,
        token_hash=token_hash,
        created_at=now,
        expires_at=None if ttl_hours is None else now + timedelta(hours=ttl_hours),
        revoked_at=None,
    )
    session.add(row)
    await session.flush()
    return raw_token, row


async def resolve_web_session(session: AsyncSession, raw_token: str | None) -> User | None:
    """Return the active user behind a website session, or None.

    Unknown, revoked and expired sessions all read as "not logged in"; the
    caller answers with the login URL rather than an error.
    """
    if not raw_token:
        return None
    result = await session.execute(
        select(WebSession, User)
        .join(User, User.id == WebSession.user_id)
        .where(WebSession.token_hash == hash_session_token(raw_token))
    )
    row = result.first()
    if row is None:
        return None
    web_session, user = row
    if web_session.revoked_at is not None:
        logger.info("web_session_rejected reason=revoked session_id=%s", web_session.id)
        return None
    if web_session.expires_at is not None and _ensure_utc(web_session.expires_at) <= _utc_now():
        logger.info("web_session_rejected reason=expired session_id=%s", web_session.id)
        return None
    if not user.is_active:
        logger.info("web_session_rejected reason=inactive_user session_id=%s", web_session.id)
        return None
    return user
