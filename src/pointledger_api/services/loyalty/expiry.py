"""Points expiry enforcement and advance warnings."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pointledger_api.core.clock import ensure_utc, utcnow
from pointledger_api.core.settings import get_settings
from pointledger_api.domain.loyalty.errors import AlreadyProcessed, InsufficientBalance
from pointledger_api.models.loyalty import EXPIRABLE_TRANSACTION_TYPES, PointsTransaction
from pointledger_api.observability.loyalty import get_loyalty_store
from pointledger_api.services.notifications import NotificationService, Notifier, dispatch_loyalty_event
from pointledger_api.services.tenants import DatabaseTenantConfigProvider, TenantConfigProvider

from .ledger import LedgerStore

WARNING_STAMP = "expiryWarningAt"


@dataclass
class _ExpiringGroup:
    tenant_id: UUID
    customer_id: UUID
    transactions: list[PointsTransaction] = field(default_factory=list)

    @property
    def points(self) -> int:
        return sum(int(item.points) for item in self.transactions)

    @property
    def earliest_expiry(self) -> datetime:
        return min(ensure_utc(item.expires_at) for item in self.transactions)


def _expirable_filters() -> list[Any]:
    return [
        PointsTransaction.transaction_type.in_(EXPIRABLE_TRANSACTION_TYPES),
        PointsTransaction.points > 0,
        PointsTransaction.expired.is_(False),
        PointsTransaction.expires_at.is_not(None),
    ]


class PointsExpiryService:
    """Sweep expired credits and warn customers about upcoming expiries.

    Each (tenant, customer) group is its own unit of work, so one failing
    customer does not block the rest of the batch, and a rerun only sees rows
    that are still unexpired.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        config: TenantConfigProvider | None = None,
        notifier: Notifier | None = None,
        ledger: LedgerStore | None = None,
    ) -> None:
        self._db = db_session
        self._settings = get_settings()
        self._config = config or DatabaseTenantConfigProvider(db_session)
        self._notifier = notifier or NotificationService(db_session)
        self._ledger = ledger or LedgerStore(db_session)
        self._observability = get_loyalty_store()

    async def enforce(self, *, now: datetime | None = None, batch_size: int | None = None) -> dict[str, int]:
        now = now or utcnow()
        stmt = (
            select(PointsTransaction)
            .where(*_expirable_filters(), PointsTransaction.expires_at <= now)
            .order_by(PointsTransaction.tenant_id, PointsTransaction.customer_id, PointsTransaction.expires_at)
            .limit(batch_size or self._settings.expiry_sweep_batch_size)
        )
        rows = list((await self._db.execute(stmt)).scalars().all())
        groups = self._group(rows)
        # Ids are read up front; a failed group rolls back and expires loaded rows.
        plan = [(group, [item.id for item in group.transactions]) for group in groups]

        processed = 0
        points_expired = 0
        notified = 0
        for group, ids in plan:
            try:
                async with self._ledger.atomic():
                    outcome = await self._ledger.expire_transactions(
                        group.tenant_id,
                        group.customer_id,
                        ids,
                        now=now,
                    )
            except (AlreadyProcessed, InsufficientBalance) as exc:
                self._observability.record_failure("points_expiry", exc.code)
                logger.warning(
                    "Skipping expiry group",
                    tenant_id=str(group.tenant_id),
                    customer_id=str(group.customer_id),
                    code=exc.code,
                    error=exc.message,
                )
                continue

            processed += len(outcome.expired_transaction_ids)
            points_expired += outcome.points_expired
            if outcome.points_expired <= 0:
                continue
            balance = await self._ledger.current_balance(group.tenant_id, group.customer_id)
            delivered = await dispatch_loyalty_event(
                self._notifier,
                self._config,
                tenant_id=group.tenant_id,
                customer_id=group.customer_id,
                event_kind="points-expired",
                payload={"points": outcome.points_expired, "balance": balance},
            )
            notified += int(delivered)

        self._observability.record_expiry_sweep(processed=processed, points=points_expired)
        summary = {"processed": processed, "customersNotified": notified, "pointsExpired": points_expired}
        logger.info("Points expiry sweep finished", customers=len(groups), **summary)
        return summary

    async def warn(self, *, now: datetime | None = None, reminder_days: int | None = None) -> dict[str, int]:
        """Notify customers whose points expire within their tenant's reminder window.

        Rows are stamped with ``expiryWarningAt`` once a warning is delivered,
        so each credit is announced at most once.
        """

        now = now or utcnow()
        tenant_stmt = (
            select(PointsTransaction.tenant_id)
            .where(*_expirable_filters(), PointsTransaction.expires_at > now)
            .distinct()
        )
        tenant_ids = list((await self._db.execute(tenant_stmt)).scalars().all())

        expiring = 0
        notified = 0
        for tenant_id in tenant_ids:
            days = reminder_days
            if days is None:
                days = (await self._config.get_settings(tenant_id)).expiry_reminder_days
            horizon = now + timedelta(days=days or self._settings.expiry_warning_days)
            stmt = (
                select(PointsTransaction)
                .where(
                    *_expirable_filters(),
                    PointsTransaction.tenant_id == tenant_id,
                    PointsTransaction.expires_at > now,
                    PointsTransaction.expires_at <= horizon,
                )
                .order_by(PointsTransaction.customer_id, PointsTransaction.expires_at)
            )
            rows = [
                row
                for row in (await self._db.execute(stmt)).scalars().all()
                if WARNING_STAMP not in (row.metadata_json or {})
            ]
            for group in self._group(rows):
                expiring += 1
                if await self._warn_group(group, now):
                    notified += 1

        self._observability.record_expiry_warning(notified)
        summary = {"expiringSoon": expiring, "notified": notified}
        logger.info("Points expiry warnings finished", tenants=len(tenant_ids), **summary)
        return summary

    async def _warn_group(self, group: _ExpiringGroup, now: datetime) -> bool:
        days_until = max(0, math.ceil((group.earliest_expiry - now).total_seconds() / 86400))
        delivered = await dispatch_loyalty_event(
            self._notifier,
            self._config,
            tenant_id=group.tenant_id,
            customer_id=group.customer_id,
            event_kind="points-expiring-soon",
            payload={
                "points": group.points,
                "days_until_expiry": days_until,
                "expires_at": group.earliest_expiry.isoformat(),
            },
        )
        if not delivered:
            return False

        async with self._ledger.atomic():
            for item in group.transactions:
                # JSON columns only track reassignment.
                item.metadata_json = {**(item.metadata_json or {}), WARNING_STAMP: now.isoformat()}
            await self._db.flush()
        return True

    @staticmethod
    def _group(rows: list[PointsTransaction]) -> list[_ExpiringGroup]:
        grouped: dict[tuple[UUID, UUID], _ExpiringGroup] = {}
        ordered: list[_ExpiringGroup] = []
        for row in rows:
            key = (row.tenant_id, row.customer_id)
            group = grouped.get(key)
            if group is None:
                group = _ExpiringGroup(tenant_id=row.tenant_id, customer_id=row.customer_id)
                grouped[key] = group
                ordered.append(group)
            group.transactions.append(row)
        return ordered


__all__ = ["PointsExpiryService", "WARNING_STAMP"]
