from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import update

from plugingate.apps.api.main import create_app
from plugingate.core.config import get_settings
from plugingate.domain.models import Plan
from plugingate.persistence.db import SessionLocal
from plugingate.tests.utils.auth import bearer, create_test_user, create_test_web_session


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


def _website_headers(session_token: str | None = None) -> dict[str, str]:
    settings = get_settings()
    headers = {"Origin": settings.website_origin}
    if session_token:
        headers[settings.web_session_header] = session_token
    return headers


@pytest.mark.asyncio
async def test_products_lists_active_tiers_with_cache_headers() -> None:
    async with _client() as client:
        response = await client.get("/plugin/products")

    assert response.status_code == 200
    assert response.headers["Cache-Control"].startswith("public")
    tiers = response.json()["tiers"]
    assert [tier["id"] for tier in tiers][:4] == ["free", "basic", "pro", "enterprise"]
    pro = next(tier for tier in tiers if tier["id"] == "pro")
    assert pro["monthlyPrice"] == 999
    assert pro["resizesPerDay"] == 100


@pytest.mark.asyncio
async def test_products_refresh_bypasses_cached_catalog() -> None:
    async with _client() as client:
        await client.get("/plugin/products")
        async with SessionLocal() as session:
            await session.execute(
                update(Plan).where(Plan.slug == "basic").values(monthly_price_cents=599)
            )
            await session.commit()
        cached = await client.get("/plugin/products")
        refreshed = await client.get("/plugin/products", params={"refresh": "true"})

    def price(response) -> int:
        return next(t for t in response.json()["tiers"] if t["id"] == "basic")["monthlyPrice"]

    assert price(cached) == 499
    assert price(refreshed) == 599
    assert "no-cache" in refreshed.headers["Cache-Control"]


@pytest.mark.asyncio
async def test_handoff_delivers_token_to_polling_plugin() -> None:
    user_id = await create_test_user()
    session_token = await create_test_web_session(user_id)

    async with _client() as client:
        opened = await client.post("/auth/handoff")
        handoff_id = opened.json()["handoff_id"]
        pending = await client.get(f"/auth/handoff/{handoff_id}")
        delivered = await client.post(
            f"/auth/handoff/{handoff_id}/deliver", headers=_website_headers(session_token)
        )
        polled = await client.get(f"/auth/handoff/{handoff_id}")
        info = await client.get("/user-info", headers=bearer(polled.json()["token"]))
        again = await client.get(f"/auth/handoff/{handoff_id}")

    assert opened.status_code == 201
    assert opened.json()["expires_in"] == get_settings().handoff_ttl_s
    assert pending.status_code == 202
    assert pending.json() == {"status": "pending"}
    assert delivered.status_code == 200
    assert polled.status_code == 200
    assert polled.json()["status"] == "delivered"
    assert info.status_code == 200
    assert info.json()["user"]["id"] == user_id
    # The token is handed out once.
    assert again.status_code == 410


@pytest.mark.asyncio
async def test_handoff_rejects_foreign_origin_and_missing_session() -> None:
    user_id = await create_test_user()
    session_token = await create_test_web_session(user_id)

    async with _client() as client:
        handoff_id = (await client.post("/auth/handoff")).json()["handoff_id"]
        foreign = await client.post(
            f"/auth/handoff/{handoff_id}/deliver",
            headers={"Origin": "https://evil.example", "X-Session-Token": session_token},
        )
        anonymous = await client.post(
            f"/auth/handoff/{handoff_id}/deliver", headers=_website_headers()
        )
        still_pending = await client.get(f"/auth/handoff/{handoff_id}")

    assert foreign.status_code == 403
    assert foreign.json()["code"] == "HANDOFF_ORIGIN_REJECTED"
    assert anonymous.status_code == 401
    assert still_pending.status_code == 202


@pytest.mark.asyncio
async def test_canceled_handoff_is_terminal() -> None:
    user_id = await create_test_user()
    session_token = await create_test_web_session(user_id)

    async with _client() as client:
        handoff_id = (await client.post("/auth/handoff")).json()["handoff_id"]
        canceled = await client.delete(f"/auth/handoff/{handoff_id}")
        polled = await client.get(f"/auth/handoff/{handoff_id}")
        late = await client.post(
            f"/auth/handoff/{handoff_id}/deliver", headers=_website_headers(session_token)
        )

    assert canceled.json() == {"status": "canceled"}
    assert polled.status_code == 410
    assert polled.json()["state"] == "canceled"
    assert late.status_code == 410


@pytest.mark.asyncio
async def test_website_origin_may_call_handoff_delivery_cross_origin() -> None:
    settings = get_settings()
    async with _client() as client:
        preflight = await client.options(
            "/auth/handoff/any-id/deliver",
            headers={
                "Origin": settings.website_origin,
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": settings.web_session_header.lower(),
            },
        )

    assert preflight.status_code == 200
    assert preflight.headers["access-control-allow-origin"] == settings.website_origin
    assert "access-control-allow-credentials" not in preflight.headers
