from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from plugingate.core.errors import TokenInvalidError
from plugingate.persistence.db import get_session
from plugingate.services.audit import EVENT_ACCESS_FAILURE, record_event
from plugingate.services.auth.access_tokens import TokenSubject
from plugingate.services.gateway import authenticate


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def _parse_bearer_token(header_value: str | None) -> str:
    # Enforce Bearer token format for plugin access tokens.
    if not header_value:
        raise TokenInvalidError("missing")
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise TokenInvalidError("malformed")
    return parts[1]


def _request_metadata(request: Request) -> dict[str, str]:
    # Include minimal request context for traceability without sensitive headers.
    return {"path": request.url.path, "method": request.method}


async def get_bearer_token(
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> str:
    return _parse_bearer_token(authorization)


async def get_current_subject(
    request: Request,
    raw_token: str = Depends(get_bearer_token),
    session: AsyncSession = Depends(get_db),
) -> TokenSubject:
    # Validate the bearer token and persist its last-used touch before the handler runs.
    try:
        subject = await authenticate(session, raw_token)
    except TokenInvalidError as exc:
        await session.rollback()
        await record_event(
            session=session,
            user_id=None,
            actor_type="plugin",
            actor_id=None,
            event_type=EVENT_ACCESS_FAILURE,
            outcome="failure",
            resource_type="auth",
            request=request,
            metadata={**_request_metadata(request), "reason": exc.reason},
            error_code="AUTH_UNAUTHORIZED",
            commit=True,
        )
        raise
    await session.commit()
    request.state.user_id = subject.user_id
    return subject
