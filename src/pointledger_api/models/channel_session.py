"""Per-identity routing state for the messaging channel."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import Column, DateTime, ForeignKey, String, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import UUID

from pointledger_api.core.clock import utcnow
from pointledger_api.db.base import Base


class ChannelSession(Base):
    """Which tenant a chat identity is currently talking to."""

    __tablename__ = "channel_sessions"
    __table_args__ = (
        UniqueConstraint("channel", "external_identity", name="uq_channel_sessions_identity"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    channel = Column(String(32), nullable=False)
    external_identity = Column(String(64), nullable=False)
    active_tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )
