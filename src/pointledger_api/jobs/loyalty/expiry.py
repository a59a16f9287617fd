"""Scheduled points expiry sweep and expiry reminders."""

from __future__ import annotations

from typing import Any, Dict

from loguru import logger

from pointledger_api.services.loyalty.expiry import PointsExpiryService

from .session import SessionFactory, open_session


async def enforce_points_expiry(*, session_factory: SessionFactory, batch_size: int | None = None) -> Dict[str, Any]:
    """Expire credits whose ``expires_at`` has passed and debit their balances."""

    session = await open_session(session_factory)
    async with session as managed_session:
        summary = await PointsExpiryService(managed_session).enforce(batch_size=batch_size)
    logger.bind(summary=summary).info("Points expiry job completed")
    return summary


async def warn_expiring_points(*, session_factory: SessionFactory, reminder_days: int | None = None) -> Dict[str, Any]:
    """Send one reminder per customer for credits expiring inside the reminder window."""

    session = await open_session(session_factory)
    async with session as managed_session:
        summary = await PointsExpiryService(managed_session).warn(reminder_days=reminder_days)
    logger.bind(summary=summary).info("Points expiry reminder job completed")
    return summary


__all__ = ["enforce_points_expiry", "warn_expiring_points"]
