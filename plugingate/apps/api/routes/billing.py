from __future__ import annotations

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from plugingate.apps.api.deps import get_db
from plugingate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from plugingate.services.billing_webhook import handle_billing_webhook


router = APIRouter(tags=["billing"], responses=DEFAULT_ERROR_RESPONSES)


class WebhookAck(BaseModel):
    received: bool
    outcome: str


@router.post("/webhook", response_model=WebhookAck)
async def billing_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    db: AsyncSession = Depends(get_db),
) -> WebhookAck:
    # Signature must be checked against the exact bytes Stripe sent.
    payload = await request.body()
    outcome = await handle_billing_webhook(db, payload, stripe_signature)
    return WebhookAck(received=True, outcome=outcome.value)
