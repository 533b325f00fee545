from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from plugingate.apps.api.deps import get_bearer_token, get_current_subject, get_db
from plugingate.apps.api.openapi import (
    AUTH_ERROR_RESPONSES,
    DEFAULT_ERROR_RESPONSES,
    QUOTA_ERROR_RESPONSES,
)
from plugingate.core.config import get_settings
from plugingate.core.errors import TokenInvalidError, UserNotFoundError
from plugingate.domain.models import User
from plugingate.services.audit import (
    EVENT_HANDOFF_DELIVERED,
    EVENT_TOKEN_ISSUED,
    EVENT_TOKEN_REVOKED,
    record_event,
)
from plugingate.services.auth.access_tokens import (
    TokenSubject,
    issue_access_token,
    revoke_access_token,
)
from plugingate.services.auth.handoff import get_handoff_registry
from plugingate.services.auth.web_sessions import resolve_web_session
from plugingate.services.gateway import load_subscription, track_usage, usage_summary


router = APIRouter(tags=["plugin"], responses=DEFAULT_ERROR_RESPONSES)


class UserPayload(BaseModel):
    id: str
    email: str
    name: str | None = None
    image: str | None = None


class AuthResponse(BaseModel):
    authenticated: bool
    token: str | None = None
    expires_at: str | None = None
    user: UserPayload | None = None
    login_url: str | None = None


class SubscriptionPayload(BaseModel):
    plan: str
    status: str
    limits: dict[str, Any]
    usage: dict[str, Any]
    current_period_end: str | None = None


class UserInfoResponse(BaseModel):
    user: UserPayload
    subscription: SubscriptionPayload


class TrackUsageRequest(BaseModel):
    action: str = Field(min_length=1, max_length=64)
    metadata: dict[str, Any] | None = None
    count: int = Field(default=1, ge=1)


class TrackUsageResponse(BaseModel):
    success: bool
    used: int
    limit: int
    remaining: int


class LogoutResponse(BaseModel):
    revoked: bool


class HandoffOpenResponse(BaseModel):
    handoff_id: str
    expires_in: int


class HandoffStatusResponse(BaseModel):
    status: str
    token: str | None = None


def _user_payload(user: User) -> UserPayload:
    return UserPayload(id=user.id, email=user.email, name=user.name, image=user.image)


def _session_credential(request: Request) -> str | None:
    # Browsers send the website cookie; embedded clients forward it as a header.
    settings = get_settings()
    return request.cookies.get(settings.web_session_cookie) or request.headers.get(
        settings.web_session_header
    )


@router.get("/auth", response_model=AuthResponse, response_model_exclude_none=True)
async def auth(request: Request, db: AsyncSession = Depends(get_db)) -> AuthResponse:
    # Exchange a website session for a plugin access token; absence is not an error.
    settings = get_settings()
    user = await resolve_web_session(db, _session_credential(request))
    if user is None:
        return AuthResponse(authenticated=False, login_url=settings.login_url)
    issued = await issue_access_token(db, user.id)
    await record_event(
        session=db,
        user_id=user.id,
        actor_type="user",
        actor_id=user.id,
        event_type=EVENT_TOKEN_ISSUED,
        outcome="success",
        resource_type="access_token",
        resource_id=issued.token_id,
        request=request,
    )
    await db.commit()
    return AuthResponse(
        authenticated=True,
        token=issued.token,
        expires_at=issued.expires_at.isoformat(),
        user=_user_payload(user),
    )


@router.get("/user-info", response_model=UserInfoResponse, responses=AUTH_ERROR_RESPONSES)
async def user_info(
    subject: TokenSubject = Depends(get_current_subject),
    db: AsyncSession = Depends(get_db),
) -> UserInfoResponse:
    user = await db.get(User, subject.user_id)
    if user is None:
        raise UserNotFoundError(f"User {subject.user_id} not found")
    view = await load_subscription(db, subject.user_id)
    usage = await usage_summary(db, view)
    return UserInfoResponse(
        user=_user_payload(user),
        subscription=SubscriptionPayload(
            plan=view.plan_slug,
            status=view.status,
            limits=view.quota.to_json(),
            usage=usage,
            current_period_end=(
                view.current_period_end.isoformat() if view.current_period_end else None
            ),
        ),
    )


@router.post(
    "/track-usage",
    response_model=TrackUsageResponse,
    responses={**AUTH_ERROR_RESPONSES, **QUOTA_ERROR_RESPONSES},
)
async def track_usage_endpoint(
    payload: TrackUsageRequest,
    subject: TokenSubject = Depends(get_current_subject),
    db: AsyncSession = Depends(get_db),
) -> TrackUsageResponse:
    decision = await track_usage(
        db,
        subject,
        payload.action,
        payload.count,
        payload.metadata,
    )
    return TrackUsageResponse(
        success=True,
        used=decision.used,
        limit=decision.limit,
        remaining=decision.remaining,
    )


@router.post("/logout", response_model=LogoutResponse, responses=AUTH_ERROR_RESPONSES)
async def logout(
    request: Request,
    raw_token: str = Depends(get_bearer_token),
    db: AsyncSession = Depends(get_db),
) -> LogoutResponse:
    # Revocation is idempotent, so a repeated logout with the same token still succeeds.
    found = await revoke_access_token(db, raw_token=raw_token)
    if not found:
        raise TokenInvalidError("not_found")
    await record_event(
        session=db,
        user_id=None,
        actor_type="plugin",
        actor_id=None,
        event_type=EVENT_TOKEN_REVOKED,
        outcome="success",
        resource_type="access_token",
        request=request,
    )
    await db.commit()
    return LogoutResponse(revoked=True)


@router.post("/auth/handoff", response_model=HandoffOpenResponse, status_code=201)
async def open_handoff() -> HandoffOpenResponse:
    settings = get_settings()
    handoff_id = await get_handoff_registry().open(settings.website_origin, settings.handoff_ttl_s)
    return HandoffOpenResponse(handoff_id=handoff_id, expires_in=settings.handoff_ttl_s)


@router.post("/auth/handoff/{handoff_id}/deliver", response_model=HandoffStatusResponse)
async def deliver_handoff(
    handoff_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> HandoffStatusResponse:
    # Called by the website after login; the token is minted only for a deliverable handoff.
    registry = get_handoff_registry()
    origin = request.headers.get("origin")
    await registry.ensure_deliverable(handoff_id, origin)
    user = await resolve_web_session(db, _session_credential(request))
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "AUTH_UNAUTHORIZED", "message": "Website session required"},
        )
    issued = await issue_access_token(db, user.id)
    await record_event(
        session=db,
        user_id=user.id,
        actor_type="user",
        actor_id=user.id,
        event_type=EVENT_HANDOFF_DELIVERED,
        outcome="success",
        resource_type="access_token",
        resource_id=issued.token_id,
        request=request,
        metadata={"handoff_id": handoff_id},
    )
    await db.commit()
    await registry.deliver(handoff_id, origin, issued.token)
    return HandoffStatusResponse(status="delivered")


@router.get(
    "/auth/handoff/{handoff_id}",
    response_model=HandoffStatusResponse,
    response_model_exclude_none=True,
)
async def poll_handoff(
    handoff_id: str,
    response: Response,
    wait: float = Query(default=0.0, ge=0.0),
) -> HandoffStatusResponse:
    # Bounded long-poll: 202 while pending, 200 with the token once delivered.
    max_wait = min(wait, get_settings().handoff_max_wait_s)
    token = await get_handoff_registry().poll(handoff_id, max_wait)
    if token is None:
        response.status_code = status.HTTP_202_ACCEPTED
        return HandoffStatusResponse(status="pending")
    return HandoffStatusResponse(status="delivered", token=token)


@router.delete("/auth/handoff/{handoff_id}", response_model=HandoffStatusResponse)
async def cancel_handoff(handoff_id: str) -> HandoffStatusResponse:
    await get_handoff_registry().cancel(handoff_id)
    return HandoffStatusResponse(status="canceled")
