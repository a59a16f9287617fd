"""Scheduled expiry of uncollected reward redemptions."""

from __future__ import annotations

from typing import Any, Dict

from loguru import logger

from pointledger_api.services.loyalty.redemptions import RewardRedemptionService

from .session import SessionFactory, open_session


async def expire_stale_redemptions(*, session_factory: SessionFactory, limit: int = 500) -> Dict[str, Any]:
    session = await open_session(session_factory)
    async with session as managed_session:
        summary = await RewardRedemptionService(managed_session).expire_stale_redemptions(limit=limit)
    logger.bind(summary=summary).info("Stale redemption sweep completed")
    return summary


__all__ = ["expire_stale_redemptions"]
