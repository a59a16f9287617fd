"""Scheduled expiry of unreviewed purchase claims."""

from __future__ import annotations

from typing import Any, Dict

from loguru import logger

from pointledger_api.services.loyalty.claims import PurchaseClaimService

from .session import SessionFactory, open_session


async def expire_stale_claims(*, session_factory: SessionFactory) -> Dict[str, Any]:
    session = await open_session(session_factory)
    async with session as managed_session:
        summary = await PurchaseClaimService(managed_session).expire_stale_claims()
    logger.bind(summary=summary).info("Stale purchase claim sweep completed")
    return summary


__all__ = ["expire_stale_claims"]
