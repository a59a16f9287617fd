"""Active-tenant routing for chat identities.

A phone number can be enrolled with several tenants; the chat channel needs
to know which tenant an inbound message is addressed to. One row per
(channel, external identity) records the current choice.
"""

from __future__ import annotations

from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from pointledger_api.core.clock import utcnow
from pointledger_api.domain.loyalty.errors import ValidationError
from pointledger_api.models.channel_session import ChannelSession

DEFAULT_CHANNEL = "whatsapp"


def _identity(external_identity: str) -> str:
    value = (external_identity or "").strip()
    if not value:
        raise ValidationError("External identity is required")
    return value


class ChannelSessionService:
    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def _load(self, channel: str, external_identity: str) -> ChannelSession | None:
        stmt = (
            select(ChannelSession)
            .where(
                ChannelSession.channel == channel,
                ChannelSession.external_identity == external_identity,
            )
            .execution_options(populate_existing=True)
        )
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def get_active_tenant(self, external_identity: str, *, channel: str = DEFAULT_CHANNEL) -> UUID | None:
        session = await self._load(channel, _identity(external_identity))
        return session.active_tenant_id if session else None

    async def set_active_tenant(
        self,
        external_identity: str,
        tenant_id: UUID,
        *,
        channel: str = DEFAULT_CHANNEL,
        commit: bool = True,
    ) -> ChannelSession:
        """Point the identity at ``tenant_id``; ``commit=False`` leaves the write in the caller's unit."""

        identity = _identity(external_identity)
        now = utcnow()
        session = await self._load(channel, identity)
        if session is None:
            session = ChannelSession(channel=channel, external_identity=identity, active_tenant_id=tenant_id)
            try:
                async with self._db.begin_nested():
                    self._db.add(session)
            except IntegrityError:
                session = await self._load(channel, identity)
                if session is None:
                    raise
        session.active_tenant_id = tenant_id
        session.updated_at = now
        await self._db.flush()
        if commit:
            await self._db.commit()
        logger.info("Channel session routed", channel=channel, tenant_id=str(tenant_id))
        return session

    async def clear(self, external_identity: str, *, channel: str = DEFAULT_CHANNEL) -> bool:
        session = await self._load(channel, _identity(external_identity))
        if session is None or session.active_tenant_id is None:
            return False
        session.active_tenant_id = None
        session.updated_at = utcnow()
        await self._db.commit()
        logger.info("Channel session cleared", channel=channel)
        return True


__all__ = ["ChannelSessionService", "DEFAULT_CHANNEL"]
