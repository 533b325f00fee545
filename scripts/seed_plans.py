from __future__ import annotations

import argparse
import asyncio
import sys

from plugingate.domain.tiers import DEFAULT_TIERS
from plugingate.persistence.db import SessionLocal
from plugingate.services.plans import upsert_plan


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Upsert the default tier catalog")
    parser.add_argument(
        "--price",
        action="append",
        default=[],
        metavar="SLUG=PRICE_ID",
        help="Attach a Stripe price id to a tier (repeatable)",
    )
    return parser


def _parse_prices(values: list[str]) -> dict[str, str]:
    # Price ids differ between Stripe test and live mode, so they are supplied per deploy.
    prices: dict[str, str] = {}
    for value in values:
        slug, sep, price_id = value.partition("=")
        if not sep or not slug or not price_id:
            raise ValueError(f"Invalid --price value: {value!r}")
        prices[slug] = price_id
    return prices


async def _seed(prices: dict[str, str]) -> int:
    known = {tier.slug for tier in DEFAULT_TIERS}
    unknown = sorted(set(prices) - known)
    if unknown:
        raise ValueError(f"Unknown tier(s): {', '.join(unknown)}")
    async with SessionLocal() as session:
        for tier in DEFAULT_TIERS:
            await upsert_plan(
                session,
                slug=tier.slug,
                name=tier.name,
                quota=tier.quota,
                features=tier.features,
                monthly_price_cents=tier.monthly_price_cents,
                stripe_price_id=prices.get(tier.slug),
                sort_order=tier.sort_order,
            )
            print(f"Seeded plan {tier.slug}")
        await session.commit()
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_seed(_parse_prices(args.price)))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"seed_plans failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
