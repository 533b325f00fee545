from __future__ import annotations

from dataclasses import dataclass, field

from plugingate.domain.limits import UNLIMITED, PeriodType, QuotaDescriptor


FEATURE_WATERMARK = "watermark"
FEATURE_API_ACCESS = "api_access"
FEATURE_TEAM_SUPPORT = "team_support"
FEATURE_ANALYTICS = "analytics"
FORMAT_FEATURE_PREFIX = "format:"


@dataclass(frozen=True)
class TierSeed:
    # Default catalog entry written by seeding; live limits are whatever the plans table holds.
    slug: str
    name: str
    quota: QuotaDescriptor
    monthly_price_cents: int
    sort_order: int
    features: list[str] = field(default_factory=list)


DEFAULT_TIERS: list[TierSeed] = [
    TierSeed(
        slug="free",
        name="Free",
        quota=QuotaDescriptor(PeriodType.ONE_TIME, limit=10, batch_ceiling=1),
        monthly_price_cents=0,
        sort_order=0,
        features=["watermark", "format:jpg", "format:png"],
    ),
    TierSeed(
        slug="basic",
        name="Basic",
        quota=QuotaDescriptor(PeriodType.DAILY, limit=25, batch_ceiling=5),
        monthly_price_cents=499,
        sort_order=10,
        features=["api_access", "analytics", "format:jpg", "format:png", "format:webp"],
    ),
    TierSeed(
        slug="pro",
        name="Pro",
        quota=QuotaDescriptor(PeriodType.DAILY, limit=100, batch_ceiling=25),
        monthly_price_cents=999,
        sort_order=20,
        features=[
            "api_access",
            "analytics",
            "team_support",
            "format:jpg",
            "format:png",
            "format:webp",
            "format:svg",
            "format:pdf",
        ],
    ),
    TierSeed(
        slug="enterprise",
        name="Enterprise",
        quota=QuotaDescriptor(PeriodType.DAILY, limit=UNLIMITED, batch_ceiling=100),
        monthly_price_cents=2499,
        sort_order=30,
        features=[
            "api_access",
            "analytics",
            "team_support",
            "format:jpg",
            "format:png",
            "format:webp",
            "format:svg",
            "format:pdf",
            "format:avif",
        ],
    ),
]
