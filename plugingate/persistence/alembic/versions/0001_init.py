"""initial plugin gateway schema

Revision ID: 0001_init
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
ID_TYPE = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def upgrade() -> None:
    # Identity table that maps billing customers back to local subjects.
    op.create_table(
        "users",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("image", sa.String(), nullable=True),
        sa.Column("billing_customer_id", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_billing_customer_id", "users", ["billing_customer_id"], unique=True)

    op.create_table(
        "web_sessions",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("token_hash", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_web_sessions_user_id", "web_sessions", ["user_id"], unique=False)
    op.create_index("ix_web_sessions_token_hash", "web_sessions", ["token_hash"], unique=True)

    # Access tokens are kept after revocation and expiry for audit.
    op.create_table(
        "access_tokens",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("token_hash", sa.String(), nullable=False),
        sa.Column("token_prefix", sa.String(), nullable=False),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_access_tokens_user_id", "access_tokens", ["user_id"], unique=False)
    op.create_index("ix_access_tokens_token_hash", "access_tokens", ["token_hash"], unique=True)

    op.create_table(
        "plans",
        sa.Column("slug", sa.String(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("quota_json", JSON_TYPE, nullable=False),
        sa.Column("features_json", JSON_TYPE, nullable=True),
        sa.Column("monthly_price_cents", sa.Integer(), server_default="0", nullable=False),
        sa.Column("stripe_price_id", sa.String(), nullable=True, unique=True),
        sa.Column("sort_order", sa.Integer(), server_default="0", nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", ID_TYPE, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id"), nullable=False, unique=True),
        sa.Column("plan_slug", sa.String(), sa.ForeignKey("plans.slug"), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("external_ref", sa.String(), nullable=True),
        sa.Column("billing_customer_id", sa.String(), nullable=True),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("quota_json", JSON_TYPE, nullable=False),
        sa.Column("last_event_id", sa.String(), nullable=True),
        sa.Column("last_event_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_subscriptions_external_ref", "subscriptions", ["external_ref"], unique=False)

    # Unique scope is the conflict target for atomic increments.
    op.create_table(
        "usage_counters",
        sa.Column("id", ID_TYPE, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("period_key", sa.String(), nullable=False),
        sa.Column("count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("user_id", "action", "period_key", name="uq_usage_counters_scope"),
    )
    op.create_index("ix_usage_counters_user_id", "usage_counters", ["user_id"], unique=False)

    op.create_table(
        "usage_events",
        sa.Column("id", ID_TYPE, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("quantity", sa.Integer(), server_default="1", nullable=False),
        sa.Column("plan_slug", sa.String(), nullable=False),
        sa.Column("metadata_json", JSON_TYPE, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_usage_events_user_id", "usage_events", ["user_id"], unique=False)
    op.create_index("ix_usage_events_created_at", "usage_events", ["created_at"], unique=False)

    op.create_table(
        "audit_events",
        sa.Column("id", ID_TYPE, primary_key=True, autoincrement=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("actor_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        sa.Column("metadata_json", JSON_TYPE, nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_audit_events_occurred_at", "audit_events", ["occurred_at"], unique=False)
    op.create_index("ix_audit_events_user_id", "audit_events", ["user_id"], unique=False)
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"], unique=False)
    op.create_index("ix_audit_events_request_id", "audit_events", ["request_id"], unique=False)

    # Seed the tier catalog; the free plan is the required fallback for unsubscribed users.
    op.bulk_insert(
        sa.table(
            "plans",
            sa.column("slug", sa.String()),
            sa.column("name", sa.String()),
            sa.column("quota_json", JSON_TYPE),
            sa.column("features_json", JSON_TYPE),
            sa.column("monthly_price_cents", sa.Integer()),
            sa.column("sort_order", sa.Integer()),
            sa.column("is_active", sa.Boolean()),
        ),
        [
            {
                "slug": "free",
                "name": "Free",
                "quota_json": {"period_type": "one_time", "limit": 10, "batch_ceiling": 1},
                "features_json": ["watermark", "format:jpg", "format:png"],
                "monthly_price_cents": 0,
                "sort_order": 0,
                "is_active": True,
            },
            {
                "slug": "basic",
                "name": "Basic",
                "quota_json": {"period_type": "daily", "limit": 25, "batch_ceiling": 5},
                "features_json": ["api_access", "analytics", "format:jpg", "format:png", "format:webp"],
                "monthly_price_cents": 499,
                "sort_order": 10,
                "is_active": True,
            },
            {
                "slug": "pro",
                "name": "Pro",
                "quota_json": {"period_type": "daily", "limit": 100, "batch_ceiling": 25},
                "features_json": [
                    "api_access",
                    "analytics",
                    "team_support",
                    "format:jpg",
                    "format:png",
                    "format:webp",
                    "format:svg",
                    "format:pdf",
                ],
                "monthly_price_cents": 999,
                "sort_order": 20,
                "is_active": True,
            },
            {
                "slug": "enterprise",
                "name": "Enterprise",
                "quota_json": {"period_type": "daily", "limit": -1, "batch_ceiling": 100},
                "features_json": [
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
                "monthly_price_cents": 2499,
                "sort_order": 30,
                "is_active": True,
            },
        ],
    )


def downgrade() -> None:
    op.drop_table("audit_events")
    op.drop_table("usage_events")
    op.drop_table("usage_counters")
    op.drop_table("subscriptions")
    op.drop_table("plans")
    op.drop_table("access_tokens")
    op.drop_table("web_sessions")
    op.drop_table("users")
