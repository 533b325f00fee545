from __future__ import annotations

import asyncio

import pytest

from plugingate.core.errors import HandoffClosedError, HandoffOriginError
from plugingate.services.auth.handoff import HandoffRegistry

ORIGIN = "https://website.example"


@pytest.mark.asyncio
async def test_waiter_receives_token_delivered_from_expected_origin() -> None:
    registry = HandoffRegistry()
    handoff_id = await registry.open(ORIGIN, ttl_s=5)

    waiter = asyncio.create_task(registry.wait(handoff_id, timeout_s=2))
    await asyncio.sleep(0)
    await registry.deliver(handoff_id, ORIGIN, "token-abc")

    assert await waiter == "token-abc"


@pytest.mark.asyncio
async def test_delivered_token_is_handed_out_once() -> None:
    registry = HandoffRegistry()
    handoff_id = await registry.open(ORIGIN, ttl_s=5)
    await registry.deliver(handoff_id, ORIGIN, "token-abc")

    assert await registry.poll(handoff_id, max_wait_s=0.1) == "token-abc"
    with pytest.raises(HandoffClosedError):
        await registry.poll(handoff_id, max_wait_s=0.1)


@pytest.mark.asyncio
async def test_delivery_from_other_origin_is_refused() -> None:
    registry = HandoffRegistry()
    handoff_id = await registry.open(ORIGIN, ttl_s=5)

    with pytest.raises(HandoffOriginError):
        await registry.deliver(handoff_id, "https://evil.example", "token-abc")
    with pytest.raises(HandoffOriginError):
        await registry.ensure_deliverable(handoff_id, None)

    # The handoff is still open for the legitimate sender.
    await registry.deliver(handoff_id, ORIGIN, "token-abc")
    assert await registry.poll(handoff_id, max_wait_s=0.1) == "token-abc"


@pytest.mark.asyncio
async def test_poll_reports_pending_without_closing() -> None:
    registry = HandoffRegistry()
    handoff_id = await registry.open(ORIGIN, ttl_s=5)

    assert await registry.poll(handoff_id, max_wait_s=0.05) is None
    await registry.deliver(handoff_id, ORIGIN, "token-late")
    assert await registry.poll(handoff_id, max_wait_s=0.05) == "token-late"


@pytest.mark.asyncio
async def test_wait_timeout_expires_the_handoff() -> None:
    registry = HandoffRegistry()
    handoff_id = await registry.open(ORIGIN, ttl_s=5)

    with pytest.raises(HandoffClosedError) as exc_info:
        await registry.wait(handoff_id, timeout_s=0.05)
    assert exc_info.value.state == "expired"

    with pytest.raises(HandoffClosedError):
        await registry.deliver(handoff_id, ORIGIN, "token-too-late")


@pytest.mark.asyncio
async def test_ttl_elapsing_expires_the_handoff() -> None:
    registry = HandoffRegistry()
    handoff_id = await registry.open(ORIGIN, ttl_s=0.05)
    await asyncio.sleep(0.1)

    with pytest.raises(HandoffClosedError) as exc_info:
        await registry.poll(handoff_id, max_wait_s=1)
    assert exc_info.value.state == "expired"


@pytest.mark.asyncio
async def test_cancel_releases_waiter_without_token() -> None:
    registry = HandoffRegistry()
    handoff_id = await registry.open(ORIGIN, ttl_s=5)

    waiter = asyncio.create_task(registry.wait(handoff_id, timeout_s=2))
    await asyncio.sleep(0)
    await registry.cancel(handoff_id)

    with pytest.raises(HandoffClosedError) as exc_info:
        await waiter
    assert exc_info.value.state == "canceled"


@pytest.mark.asyncio
async def test_unknown_handoff_is_closed() -> None:
    registry = HandoffRegistry()

    with pytest.raises(HandoffClosedError):
        await registry.poll("missing", max_wait_s=0.01)
    with pytest.raises(HandoffClosedError):
        await registry.cancel("missing")
