from __future__ import annotations

import hashlib
import hmac
import json
import time
from typing import Any
from uuid import uuid4


def sign_stripe_payload(payload: bytes, secret: str, *, timestamp: int | None = None) -> str:
    # Mirror Stripe's v1 scheme: HMAC-SHA256 over "<timestamp>.<payload>".
    ts = int(time.time()) if timestamp is None else timestamp
    signed = f"{ts}.".encode("utf-8") + payload
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def subscription_event(
    kind: str,
    *,
    customer_id: str,
    status: str = "active",
    price_id: str | None = None,
    plan_hint: str | None = None,
    event_id: str | None = None,
    created: int | None = None,
    subscription_id: str = "sub_test",
) -> dict[str, Any]:
    now = int(time.time())
    return {
        "id": event_id or f"evt_{uuid4().hex}",
        "object": "event",
        "type": kind,
        "created": created or now,
        "data": {
            "object": {
                "id": subscription_id,
                "object": "subscription",
                "customer": customer_id,
                "status": status,
                "metadata": {"plan": plan_hint} if plan_hint else {},
                "current_period_start": now,
                "current_period_end": now + 30 * 86400,
                "items": {
                    "object": "list",
                    "data": [{"id": "si_test", "price": {"id": price_id}}] if price_id else [],
                },
            }
        },
    }


def invoice_event(
    kind: str,
    *,
    customer_id: str,
    event_id: str | None = None,
    created: int | None = None,
    subscription_id: str = "sub_test",
) -> dict[str, Any]:
    now = int(time.time())
    return {
        "id": event_id or f"evt_{uuid4().hex}",
        "object": "event",
        "type": kind,
        "created": created or now,
        "data": {
            "object": {
                "id": f"in_{uuid4().hex}",
                "object": "invoice",
                "customer": customer_id,
                "subscription": subscription_id,
                "status": "paid" if kind.endswith("succeeded") else "open",
                "lines": {
                    "object": "list",
                    "data": [{"period": {"start": now, "end": now + 30 * 86400}}],
                },
            }
        },
    }


def encode_event(event: dict[str, Any]) -> bytes:
    return json.dumps(event, separators=(",", ":")).encode("utf-8")
