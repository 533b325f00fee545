from __future__ import annotations

from dataclasses import dataclass, field
import asyncio
import logging
import time
from uuid import uuid4

from plugingate.core.config import get_settings
from plugingate.core.errors import HandoffClosedError, HandoffOriginError


logger = logging.getLogger(__name__)

STATE_PENDING = "pending"
STATE_DELIVERED = "delivered"
STATE_EXPIRED = "expired"
STATE_CANCELED = "canceled"


@dataclass
class _Handoff:
    id: str
    expected_origin: str
    expires_at: float
    # Resolves to the token on delivery, or None when closed without one.
    future: asyncio.Future = field(repr=False)
    state: str = STATE_PENDING


class HandoffRegistry:
    """In-process channel that carries a freshly issued token to a waiting plugin.

    The plugin opens a handoff and long-polls it; the website delivers the
    token from the expected origin. Each handoff resolves exactly once, to a
    token or to one of the terminal states ``expired`` and ``canceled``.
    """

    def __init__(self) -> None:
        self._handoffs: dict[str, _Handoff] = {}
        self._lock = asyncio.Lock()

    async def open(self, expected_origin: str, ttl_s: float | None = None) -> str:
        ttl = float(ttl_s if ttl_s is not None else get_settings().handoff_ttl_s)
        handoff_id = uuid4().hex
        loop = asyncio.get_running_loop()
        async with self._lock:
            self._prune_locked()
            self._handoffs[handoff_id] = _Handoff(
                id=handoff_id,
                expected_origin=expected_origin,
                expires_at=time.monotonic() + ttl,
                future=loop.create_future(),
            )
        logger.info("handoff_opened handoff_id=%s ttl_s=%s", handoff_id, ttl)
        return handoff_id

    async def ensure_deliverable(self, handoff_id: str, origin: str | None) -> None:
        # Pre-flight for callers that mint the credential only after the checks pass.
        async with self._lock:
            self._check_deliverable_locked(handoff_id, origin)

    async def deliver(self, handoff_id: str, origin: str | None, token: str) -> None:
        async with self._lock:
            handoff = self._check_deliverable_locked(handoff_id, origin)
            handoff.state = STATE_DELIVERED
            handoff.future.set_result(token)
        logger.info("handoff_delivered handoff_id=%s", handoff_id)

    async def wait(self, handoff_id: str, timeout_s: float | None = None) -> str:
        # Timing out here is terminal: the handoff expires and never yields a token.
        async with self._lock:
            handoff = self._get_locked(handoff_id)
        remaining = max(handoff.expires_at - time.monotonic(), 0.0)
        timeout = remaining if timeout_s is None else min(timeout_s, remaining)
        try:
            token = await asyncio.wait_for(asyncio.shield(handoff.future), timeout=timeout)
        except asyncio.TimeoutError:
            await self._close(handoff, STATE_EXPIRED)
            # A delivery that raced the timeout still wins.
            token = handoff.future.result()
        return await self._consume(handoff, token)

    async def poll(self, handoff_id: str, max_wait_s: float) -> str | None:
        """Long-poll for at most ``max_wait_s``; None means still pending."""
        async with self._lock:
            handoff = self._get_locked(handoff_id)
        if max_wait_s >= handoff.expires_at - time.monotonic():
            return await self.wait(handoff_id)
        try:
            token = await asyncio.wait_for(asyncio.shield(handoff.future), timeout=max_wait_s)
        except asyncio.TimeoutError:
            return None
        return await self._consume(handoff, token)

    async def cancel(self, handoff_id: str) -> None:
        async with self._lock:
            handoff = self._get_locked(handoff_id)
            if handoff.future.done():
                raise HandoffClosedError(handoff.state)
            handoff.state = STATE_CANCELED
            handoff.future.set_result(None)
        logger.info("handoff_canceled handoff_id=%s", handoff_id)

    async def _close(self, handoff: _Handoff, state: str) -> None:
        async with self._lock:
            if not handoff.future.done():
                handoff.state = state
                handoff.future.set_result(None)
                logger.info("handoff_closed handoff_id=%s state=%s", handoff.id, state)

    async def _consume(self, handoff: _Handoff, token: str | None) -> str:
        if token is None:
            raise HandoffClosedError(handoff.state)
        # Delivered tokens are handed out once; later polls see the handoff as gone.
        async with self._lock:
            self._handoffs.pop(handoff.id, None)
        return token

    def _check_deliverable_locked(self, handoff_id: str, origin: str | None) -> _Handoff:
        handoff = self._get_locked(handoff_id)
        if origin != handoff.expected_origin:
            logger.warning("handoff_origin_rejected handoff_id=%s origin=%s", handoff_id, origin)
            raise HandoffOriginError(f"Origin {origin!r} may not deliver this handoff")
        if handoff.future.done():
            raise HandoffClosedError(handoff.state)
        return handoff

    def _get_locked(self, handoff_id: str) -> _Handoff:
        self._prune_locked()
        handoff = self._handoffs.get(handoff_id)
        if handoff is None:
            raise HandoffClosedError(STATE_EXPIRED)
        return handoff

    def _prune_locked(self) -> None:
        now = time.monotonic()
        for handoff_id, handoff in list(self._handoffs.items()):
            if handoff.expires_at > now:
                continue
            if not handoff.future.done():
                handoff.state = STATE_EXPIRED
                handoff.future.set_result(None)
            self._handoffs.pop(handoff_id, None)


_registry: HandoffRegistry | None = None


def get_handoff_registry() -> HandoffRegistry:
    global _registry
    if _registry is None:
        _registry = HandoffRegistry()
    return _registry


def reset_handoff_registry() -> None:
    # Drop in-flight handoffs for deterministic tests.
    global _registry
    _registry = None
