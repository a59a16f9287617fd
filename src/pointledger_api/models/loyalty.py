"""Points ledger, reward catalog and redemption models."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from pointledger_api.core.clock import utcnow
from pointledger_api.db.base import Base


class CustomerPointsBalance(Base):
    """Running points balance for a customer within a tenant."""

    __tablename__ = "customer_points_balances"
    __table_args__ = (
        UniqueConstraint("tenant_id", "customer_id", name="uq_points_balances_tenant_customer"),
        CheckConstraint("current_balance >= 0", name="ck_points_balances_non_negative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id", ondelete="CASCADE"), nullable=False)
    current_balance = Column(Integer, nullable=False, default=0, server_default="0")
    total_points_earned = Column(Integer, nullable=False, default=0, server_default="0")
    total_points_redeemed = Column(Integer, nullable=False, default=0, server_default="0")
    total_points_expired = Column(Integer, nullable=False, default=0, server_default="0")
    last_earned_at = Column(DateTime(timezone=True), nullable=True)
    last_redeemed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )


class PointsTransactionType(str, Enum):
    """Ledger event kinds. ``points`` is always stored as a signed delta."""

    EARN = "earn"
    REDEEMED = "redeemed"
    ADJUSTED = "adjusted"
    REFUNDED = "refunded"
    EXPIRY = "expiry"
    WELCOME_BONUS = "welcome_bonus"


EXPIRABLE_TRANSACTION_TYPES = (
    PointsTransactionType.EARN,
    PointsTransactionType.WELCOME_BONUS,
    PointsTransactionType.ADJUSTED,
)


class PointsTransaction(Base):
    """Append-only ledger row."""

    __tablename__ = "points_transactions"
    __table_args__ = (
        Index("ix_points_transactions_tenant_customer", "tenant_id", "customer_id"),
        Index("ix_points_transactions_expiry", "expired", "expires_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id", ondelete="CASCADE"), nullable=False)
    transaction_type = Column(
        SqlEnum(
            PointsTransactionType,
            name="points_transaction_type",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
    )
    points = Column(Integer, nullable=False)
    description = Column(String, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    expired = Column(Boolean, nullable=False, default=False, server_default="false")
    purchase_id = Column(UUID(as_uuid=True), ForeignKey("purchases.id", ondelete="SET NULL"), nullable=True)
    reward_redemption_id = Column(
        UUID(as_uuid=True),
        ForeignKey("reward_redemptions.id", ondelete="SET NULL"),
        nullable=True,
    )
    created_by_user_id = Column(UUID(as_uuid=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)


class Reward(Base):
    """Reward catalog entry offered by a tenant."""

    __tablename__ = "rewards"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    terms = Column(Text, nullable=True)
    image_url = Column(String, nullable=True)
    points_required = Column(Integer, nullable=False)
    monetary_value_major = Column(Numeric(14, 2), nullable=True)
    stock_quantity = Column(Integer, nullable=True)
    max_redemptions_per_customer = Column(Integer, nullable=True)
    valid_from = Column(DateTime(timezone=True), nullable=True)
    valid_until = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    total_redemptions = Column(Integer, nullable=False, default=0, server_default="0")
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )

    redemptions = relationship("RewardRedemption", back_populates="reward")


class RewardRedemptionStatus(str, Enum):
    """Lifecycle of a reward redemption."""

    PENDING = "pending"
    VERIFIED = "verified"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


OPEN_REDEMPTION_STATUSES = (RewardRedemptionStatus.PENDING, RewardRedemptionStatus.VERIFIED)


class RewardRedemption(Base):
    """Points exchanged for a reward, presented in store via its code."""

    __tablename__ = "reward_redemptions"
    __table_args__ = (
        UniqueConstraint("tenant_id", "idempotency_key", name="uq_reward_redemptions_tenant_idempotency"),
        Index("ix_reward_redemptions_customer_reward", "customer_id", "reward_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id", ondelete="CASCADE"), nullable=False)
    reward_id = Column(UUID(as_uuid=True), ForeignKey("rewards.id", ondelete="RESTRICT"), nullable=False)
    redemption_code = Column(String(16), nullable=False, unique=True, index=True)
    points_deducted = Column(Integer, nullable=False)
    status = Column(
        SqlEnum(
            RewardRedemptionStatus,
            name="reward_redemption_status",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=RewardRedemptionStatus.PENDING,
        server_default=RewardRedemptionStatus.PENDING.value,
    )
    idempotency_key = Column(String(128), nullable=True)
    verified_by_user_id = Column(UUID(as_uuid=True), nullable=True)
    verified_at = Column(DateTime(timezone=True), nullable=True)
    fulfilled_at = Column(DateTime(timezone=True), nullable=True)
    fulfilment_notes = Column(Text, nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancellation_reason = Column(String, nullable=True)
    expired_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )

    reward = relationship("Reward", back_populates="redemptions")
