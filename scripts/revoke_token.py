from __future__ import annotations

import argparse
import asyncio
import sys

from plugingate.persistence.db import SessionLocal
from plugingate.services.audit import EVENT_TOKEN_REVOKED, record_event
from plugingate.services.auth.access_tokens import revoke_access_token


def _build_parser() -> argparse.ArgumentParser:
    # Keep CLI usage minimal to avoid revoking the wrong token.
    parser = argparse.ArgumentParser(description="Revoke a plugin access token by id")
    parser.add_argument("token_id", help="Access token id (the JWT jti)")
    return parser


async def _revoke(token_id: str) -> int:
    async with SessionLocal() as session:
        found = await revoke_access_token(session, token_id=token_id)
        if not found:
            raise ValueError("Access token not found")
        # Record token revocations for security investigations.
        await record_event(
            session=session,
            user_id=None,
            actor_type="system",
            actor_id="revoke_token",
            event_type=EVENT_TOKEN_REVOKED,
            outcome="success",
            resource_type="access_token",
            resource_id=token_id,
            commit=True,
            best_effort=False,
        )
    print(f"Revoked access token {token_id}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_revoke(args.token_id))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"revoke_token failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
