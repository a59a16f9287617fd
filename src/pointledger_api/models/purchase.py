"""Purchases and customer-submitted purchase claims."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
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
    func,
)
from sqlalchemy.dialects.postgresql import UUID

from pointledger_api.core.clock import utcnow
from pointledger_api.db.base import Base


class PurchaseSource(str, Enum):
    """How a purchase entered the ledger."""

    MANUAL = "manual"
    CLAIM = "claim"


class Purchase(Base):
    """Ledger-visible record of a customer transaction."""

    __tablename__ = "purchases"
    __table_args__ = (
        Index("ix_purchases_tenant_customer", "tenant_id", "customer_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id", ondelete="CASCADE"), nullable=False)
    amount_major = Column(Numeric(14, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    points_earned = Column(Integer, nullable=False, default=0, server_default="0")
    source = Column(
        SqlEnum(
            PurchaseSource,
            name="purchase_source",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=PurchaseSource.MANUAL,
        server_default=PurchaseSource.MANUAL.value,
    )
    logged_via = Column(String, nullable=True)
    logged_by_user_id = Column(UUID(as_uuid=True), nullable=True)
    notes = Column(Text, nullable=True)
    purchased_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)


class PurchaseClaimStatus(str, Enum):
    """Review states for a customer-submitted claim."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class PurchaseClaim(Base):
    """Purchase asserted by a customer and awaiting vendor review."""

    __tablename__ = "purchase_claims"
    __table_args__ = (
        Index("ix_purchase_claims_tenant_status", "tenant_id", "status"),
        Index("ix_purchase_claims_customer_created", "customer_id", "created_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id", ondelete="CASCADE"), nullable=False)
    amount_major = Column(Numeric(14, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    purchase_date = Column(DateTime(timezone=True), nullable=False)
    channel = Column(String, nullable=False, default="physical_store", server_default="physical_store")
    receipt_url = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    status = Column(
        SqlEnum(
            PurchaseClaimStatus,
            name="purchase_claim_status",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=PurchaseClaimStatus.PENDING,
        server_default=PurchaseClaimStatus.PENDING.value,
    )
    expires_at = Column(DateTime(timezone=True), nullable=False)
    approved_by_user_id = Column(UUID(as_uuid=True), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    rejection_reason = Column(String, nullable=True)
    points_awarded = Column(Integer, nullable=True)
    purchase_id = Column(UUID(as_uuid=True), ForeignKey("purchases.id", ondelete="SET NULL"), nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )
