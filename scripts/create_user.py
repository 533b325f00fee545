from __future__ import annotations

import argparse
import asyncio
import sys
from uuid import uuid4

from sqlalchemy import select

from plugingate.domain.models import User
from plugingate.persistence.db import SessionLocal
from plugingate.services.auth.web_sessions import create_web_session


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Create a user and a website session for local plugin testing"
    )
    parser.add_argument("--email", required=True, help="User email")
    parser.add_argument("--name", default=None, help="Display name")
    parser.add_argument("--customer-id", default=None, help="Stripe customer id to link")
    parser.add_argument("--session-hours", type=int, default=24, help="Website session lifetime")
    return parser


async def _create(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        result = await session.execute(select(User).where(User.email == args.email))
        user = result.scalar_one_or_none()
        if user is None:
            user = User(id=uuid4().hex, email=args.email, name=args.name, is_active=True)
            session.add(user)
        if args.customer_id:
            user.billing_customer_id = args.customer_id
        # Flush the user row before inserting the session to satisfy FK constraints.
        await session.flush()
        raw_token, _row = await create_web_session(
            session, user_id=user.id, ttl_hours=args.session_hours
        )
        await session.commit()
    print(f"user_id={user.id}")
    # Send as the session cookie or the X-Session-Token header when calling GET /auth.
    print(f"session_token={raw_token}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_create(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_user failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
