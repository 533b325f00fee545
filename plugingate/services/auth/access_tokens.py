from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import hashlib
import logging
from uuid import uuid4

import jwt
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from plugingate.core.config import get_settings
from plugingate.core.errors import TokenInvalidError
from plugingate.domain.models import AccessToken, User


logger = logging.getLogger(__name__)

TOKEN_TYPE = "plugin_access"


@dataclass(frozen=True)
class IssuedToken:
    token: str
    token_id: str
    expires_at: datetime


@dataclass(frozen=True)
class TokenSubject:
    # Authenticated caller resolved from a persisted, unrevoked access token.
    token_id: str
    user_id: str
    expires_at: datetime


def _utc_now() -> datetime:
    # Keep token timestamps in UTC for consistent expiry checks.
    return datetime.now(timezone.utc)


def _ensure_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on read; treat stored values as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def hash_access_token(raw_token: str) -> str:
    # Use SHA-256 for deterministic, non-reversible token storage.
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


async def issue_access_token(
    session: AsyncSession,
    user_id: str,
    *,
    now: datetime | None = None,
) -> IssuedToken:
    """Sign a plugin access token and persist its row.

    The row is flushed before the token is returned so a caller never holds a
    signed token the store does not know about. Commit is left to the caller.
    """
    settings = get_settings()
    issued_at = now or _utc_now()
    expires_at = issued_at + timedelta(days=settings.access_token_ttl_days)
    token_id = uuid4().hex
    raw_token = jwt.encode(
        {
            "sub": user_id,
            "jti": token_id,
            "iat": issued_at,
            "exp": expires_at,
            "iss": settings.jwt_issuer,
            "typ": TOKEN_TYPE,
        },
        settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
    )
    session.add(
        AccessToken(
            id=token_id,
            user_id=user_id,
            token_hash=hash_access_token(raw_token),
            token_prefix=raw_token[:12],
            issued_at=issued_at,
            expires_at=expires_at,
            revoked_at=None,
            last_used_at=None,
        )
    )
    await session.flush()
    logger.info("access_token_issued user_id=%s token_id=%s", user_id, token_id)
    return IssuedToken(token=raw_token, token_id=token_id, expires_at=expires_at)


def _decode_claims(raw_token: str) -> dict:
    # Signature failures are final; callers must not retry them.
    settings = get_settings()
    try:
        claims = jwt.decode(
            raw_token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            issuer=settings.jwt_issuer,
            options={"require": ["sub", "jti", "iat", "exp"]},
        )
    except jwt.ExpiredSignatureError as exc:
        raise TokenInvalidError("expired") from exc
    except jwt.InvalidSignatureError as exc:
        raise TokenInvalidError("bad_signature") from exc
    except jwt.InvalidTokenError as exc:
        raise TokenInvalidError("malformed") from exc
    if claims.get("typ") != TOKEN_TYPE:
        raise TokenInvalidError("malformed")
    return claims


async def validate_access_token(session: AsyncSession, raw_token: str) -> TokenSubject:
    """Resolve a bearer token to its subject.

    A valid signature is necessary but not sufficient: the persisted row must
    exist, be unrevoked and be unexpired, and the owning user must be active.
    """
    if not raw_token:
        raise TokenInvalidError("malformed")
    claims = _decode_claims(raw_token)
    result = await session.execute(
        select(AccessToken, User)
        .join(User, User.id == AccessToken.user_id)
        .where(AccessToken.token_hash == hash_access_token(raw_token))
    )
    row = result.first()
    if row is None:
        logger.warning("access_token_rejected reason=not_found jti=%s", claims.get("jti"))
        raise TokenInvalidError("not_found")
    token, user = row
    if token.id != claims["jti"] or token.user_id != claims["sub"]:
        logger.warning("access_token_rejected reason=not_found jti=%s", claims.get("jti"))
        raise TokenInvalidError("not_found")
    now = _utc_now()
    if token.revoked_at is not None:
        logger.warning("access_token_rejected reason=revoked token_id=%s", token.id)
        raise TokenInvalidError("revoked")
    expires_at = _ensure_utc(token.expires_at)
    if expires_at <= now:
        logger.warning("access_token_rejected reason=expired token_id=%s", token.id)
        raise TokenInvalidError("expired")
    if not user.is_active:
        logger.warning("access_token_rejected reason=inactive_user token_id=%s", token.id)
        raise TokenInvalidError("inactive_user")

    subject = TokenSubject(token_id=token.id, user_id=token.user_id, expires_at=expires_at)
    await _touch_last_used(session, token.id, now)
    return subject


async def _touch_last_used(session: AsyncSession, token_id: str, now: datetime) -> None:
    # Savepoint keeps a failed touch from poisoning the caller's transaction.
    try:
        async with session.begin_nested():
            await session.execute(
                update(AccessToken).where(AccessToken.id == token_id).values(last_used_at=now)
            )
    except SQLAlchemyError as exc:
        logger.warning("access_token_touch_failed token_id=%s", token_id, exc_info=exc)


async def revoke_access_token(
    session: AsyncSession,
    *,
    raw_token: str | None = None,
    token_id: str | None = None,
) -> bool:
    # Idempotent: the first revocation timestamp is preserved on repeat calls.
    if raw_token is None and token_id is None:
        raise ValueError("raw_token or token_id is required")
    if raw_token is not None:
        condition = AccessToken.token_hash == hash_access_token(raw_token)
    else:
        condition = AccessToken.id == token_id
    result = await session.execute(select(AccessToken).where(condition))
    token = result.scalar_one_or_none()
    if token is None:
        return False
    if token.revoked_at is None:
        token.revoked_at = _utc_now()
        await session.flush()
        logger.info("access_token_revoked token_id=%s user_id=%s", token.id, token.user_id)
    return True
