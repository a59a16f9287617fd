"""Loyalty ledger tables.

Revision ID: 20261019_01
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "20261019_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


customer_loyalty_status = sa.Enum("active", "blocked", name="customer_loyalty_status")
purchase_source = sa.Enum("manual", "claim", name="purchase_source")
purchase_claim_status = sa.Enum("pending", "approved", "rejected", "expired", name="purchase_claim_status")
points_transaction_type = sa.Enum(
    "earn",
    "redeemed",
    "adjusted",
    "refunded",
    "expiry",
    "welcome_bonus",
    name="points_transaction_type",
)
reward_redemption_status = sa.Enum(
    "pending",
    "verified",
    "fulfilled",
    "cancelled",
    "expired",
    name="reward_redemption_status",
)


def _uuid() -> postgresql.UUID:
    return postgresql.UUID(as_uuid=True)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("vendor_code", sa.String(32), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="GBP"),
        sa.Column("timezone", sa.String(), nullable=False, server_default="UTC"),
        sa.Column("settings", sa.JSON(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_tenants_vendor_code", "tenants", ["vendor_code"], unique=True)

    op.create_table(
        "customers",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("tenant_id", _uuid(), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("phone_number", sa.String(32), nullable=False),
        sa.Column("first_name", sa.String(), nullable=True),
        sa.Column("last_name", sa.String(), nullable=True),
        sa.Column("loyalty_status", customer_loyalty_status, nullable=False, server_default="active"),
        sa.Column("blocked_reason", sa.String(), nullable=True),
        sa.Column("opted_in", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("total_purchases", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_spent_major", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("last_purchase_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "phone_number", name="uq_customers_tenant_phone"),
    )
    op.create_index("ix_customers_tenant_id", "customers", ["tenant_id"])
    op.create_index("ix_customers_phone_number", "customers", ["phone_number"])

    op.create_table(
        "purchases",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("tenant_id", _uuid(), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("customer_id", _uuid(), sa.ForeignKey("customers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("amount_major", sa.Numeric(14, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("points_earned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("source", purchase_source, nullable=False, server_default="manual"),
        sa.Column("logged_via", sa.String(), nullable=True),
        sa.Column("logged_by_user_id", _uuid(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("purchased_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_purchases_tenant_customer", "purchases", ["tenant_id", "customer_id"])

    op.create_table(
        "purchase_claims",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("tenant_id", _uuid(), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("customer_id", _uuid(), sa.ForeignKey("customers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("amount_major", sa.Numeric(14, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("purchase_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("channel", sa.String(), nullable=False, server_default="physical_store"),
        sa.Column("receipt_url", sa.String(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", purchase_claim_status, nullable=False, server_default="pending"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("approved_by_user_id", _uuid(), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejection_reason", sa.String(), nullable=True),
        sa.Column("points_awarded", sa.Integer(), nullable=True),
        sa.Column("purchase_id", _uuid(), sa.ForeignKey("purchases.id", ondelete="SET NULL"), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_purchase_claims_tenant_status", "purchase_claims", ["tenant_id", "status"])
    op.create_index("ix_purchase_claims_customer_created", "purchase_claims", ["customer_id", "created_at"])

    op.create_table(
        "customer_points_balances",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("tenant_id", _uuid(), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("customer_id", _uuid(), sa.ForeignKey("customers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("current_balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_points_earned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_points_redeemed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_points_expired", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_earned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_redeemed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "customer_id", name="uq_points_balances_tenant_customer"),
        sa.CheckConstraint("current_balance >= 0", name="ck_points_balances_non_negative"),
    )

    op.create_table(
        "rewards",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("tenant_id", _uuid(), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("terms", sa.Text(), nullable=True),
        sa.Column("image_url", sa.String(), nullable=True),
        sa.Column("points_required", sa.Integer(), nullable=False),
        sa.Column("monetary_value_major", sa.Numeric(14, 2), nullable=True),
        sa.Column("stock_quantity", sa.Integer(), nullable=True),
        sa.Column("max_redemptions_per_customer", sa.Integer(), nullable=True),
        sa.Column("valid_from", sa.DateTime(timezone=True), nullable=True),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("total_redemptions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_rewards_tenant_id", "rewards", ["tenant_id"])

    op.create_table(
        "reward_redemptions",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("tenant_id", _uuid(), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("customer_id", _uuid(), sa.ForeignKey("customers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("reward_id", _uuid(), sa.ForeignKey("rewards.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("redemption_code", sa.String(16), nullable=False),
        sa.Column("points_deducted", sa.Integer(), nullable=False),
        sa.Column("status", reward_redemption_status, nullable=False, server_default="pending"),
        sa.Column("idempotency_key", sa.String(128), nullable=True),
        sa.Column("verified_by_user_id", _uuid(), nullable=True),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("fulfilled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("fulfilment_notes", sa.Text(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.String(), nullable=True),
        sa.Column("expired_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "idempotency_key", name="uq_reward_redemptions_tenant_idempotency"),
    )
    op.create_index("ix_reward_redemptions_tenant_id", "reward_redemptions", ["tenant_id"])
    op.create_index("ix_reward_redemptions_redemption_code", "reward_redemptions", ["redemption_code"], unique=True)
    op.create_index("ix_reward_redemptions_customer_reward", "reward_redemptions", ["customer_id", "reward_id"])

    op.create_table(
        "points_transactions",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("tenant_id", _uuid(), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("customer_id", _uuid(), sa.ForeignKey("customers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("transaction_type", points_transaction_type, nullable=False),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expired", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("purchase_id", _uuid(), sa.ForeignKey("purchases.id", ondelete="SET NULL"), nullable=True),
        sa.Column(
            "reward_redemption_id",
            _uuid(),
            sa.ForeignKey("reward_redemptions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("created_by_user_id", _uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_points_transactions_tenant_customer", "points_transactions", ["tenant_id", "customer_id"])
    op.create_index("ix_points_transactions_expiry", "points_transactions", ["expired", "expires_at"])

    op.create_table(
        "channel_sessions",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("channel", sa.String(32), nullable=False),
        sa.Column("external_identity", sa.String(64), nullable=False),
        sa.Column(
            "active_tenant_id",
            _uuid(),
            sa.ForeignKey("tenants.id", ondelete="SET NULL"),
            nullable=True,
        ),
        *_timestamps(),
        sa.UniqueConstraint("channel", "external_identity", name="uq_channel_sessions_identity"),
    )


def downgrade() -> None:
    op.drop_table("channel_sessions")
    op.drop_index("ix_points_transactions_expiry", table_name="points_transactions")
    op.drop_index("ix_points_transactions_tenant_customer", table_name="points_transactions")
    op.drop_table("points_transactions")
    op.drop_index("ix_reward_redemptions_customer_reward", table_name="reward_redemptions")
    op.drop_index("ix_reward_redemptions_redemption_code", table_name="reward_redemptions")
    op.drop_index("ix_reward_redemptions_tenant_id", table_name="reward_redemptions")
    op.drop_table("reward_redemptions")
    op.drop_index("ix_rewards_tenant_id", table_name="rewards")
    op.drop_table("rewards")
    op.drop_table("customer_points_balances")
    op.drop_index("ix_purchase_claims_customer_created", table_name="purchase_claims")
    op.drop_index("ix_purchase_claims_tenant_status", table_name="purchase_claims")
    op.drop_table("purchase_claims")
    op.drop_index("ix_purchases_tenant_customer", table_name="purchases")
    op.drop_table("purchases")
    op.drop_index("ix_customers_phone_number", table_name="customers")
    op.drop_index("ix_customers_tenant_id", table_name="customers")
    op.drop_table("customers")
    op.drop_index("ix_tenants_vendor_code", table_name="tenants")
    op.drop_table("tenants")

    bind = op.get_bind()
    for enum in (
        reward_redemption_status,
        points_transaction_type,
        purchase_claim_status,
        purchase_source,
        customer_loyalty_status,
    ):
        enum.drop(bind, checkfirst=True)
