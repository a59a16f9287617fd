"""Tenant (vendor) records."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import Column, DateTime, JSON, String, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from pointledger_api.core.clock import utcnow
from pointledger_api.db.base import Base


class Tenant(Base):
    """Business running a loyalty programme."""

    __tablename__ = "tenants"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String, nullable=False)
    vendor_code = Column(String(32), nullable=False, unique=True, index=True)
    currency = Column(String(3), nullable=False, default="GBP", server_default="GBP")
    timezone = Column(String, nullable=False, default="UTC", server_default="UTC")
    settings_json = Column("settings", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )

    customers = relationship("Customer", back_populates="tenant", cascade="all, delete-orphan")
