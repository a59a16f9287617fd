"""Customer enrollment records."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from pointledger_api.core.clock import utcnow
from pointledger_api.db.base import Base


class CustomerLoyaltyStatus(str, Enum):
    """Whether a customer may accrue points."""

    ACTIVE = "active"
    BLOCKED = "blocked"


class Customer(Base):
    """Customer enrolled with a tenant, identified by phone number."""

    __tablename__ = "customers"
    __table_args__ = (
        UniqueConstraint("tenant_id", "phone_number", name="uq_customers_tenant_phone"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    phone_number = Column(String(32), nullable=False, index=True)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    loyalty_status = Column(
        SqlEnum(
            CustomerLoyaltyStatus,
            name="customer_loyalty_status",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=CustomerLoyaltyStatus.ACTIVE,
        server_default=CustomerLoyaltyStatus.ACTIVE.value,
    )
    blocked_reason = Column(String, nullable=True)
    opted_in = Column(Boolean, nullable=False, default=True, server_default="true")
    total_purchases = Column(Integer, nullable=False, default=0, server_default="0")
    total_spent_major = Column(Numeric(14, 2), nullable=False, default=0, server_default="0")
    last_purchase_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )

    tenant = relationship("Tenant", back_populates="customers")

    @property
    def display_name(self) -> str:
        parts = [part for part in (self.first_name, self.last_name) if part]
        return " ".join(parts) if parts else self.phone_number

    @property
    def is_blocked(self) -> bool:
        return self.loyalty_status == CustomerLoyaltyStatus.BLOCKED
