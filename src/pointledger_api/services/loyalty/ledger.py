"""Guarded balance mutations and the append-only points log.

Every write to ``customer_points_balances`` goes through this module. Debits
are conditional updates (``current_balance >= points``) so that concurrent
callers cannot overdraw a balance; the losing caller sees a zero row count and
gets :class:`InsufficientBalance`. Methods only flush: the workflow that owns
the unit of work commits through :meth:`LedgerStore.atomic`.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Iterable, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from pointledger_api.core.clock import utcnow
from pointledger_api.domain.loyalty.errors import AlreadyProcessed, InsufficientBalance, InvalidAmount
from pointledger_api.models.loyalty import (
    CustomerPointsBalance,
    PointsTransaction,
    PointsTransactionType,
)
from pointledger_api.observability.loyalty import get_loyalty_store

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

_CREDIT_TYPES = {
    PointsTransactionType.EARN,
    PointsTransactionType.WELCOME_BONUS,
    PointsTransactionType.ADJUSTED,
}


@dataclass
class TransactionPage:
    items: list[PointsTransaction]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total


@dataclass
class ExpiryOutcome:
    expired_transaction_ids: list[UUID]
    requested_points: int
    points_expired: int
    transaction: PointsTransaction | None


def clamp_page_size(limit: int | None) -> int:
    if not limit or limit < 1:
        return DEFAULT_PAGE_SIZE
    return min(limit, MAX_PAGE_SIZE)


class LedgerStore:
    """Owns the balance row and transaction log for (tenant, customer) pairs."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session
        self._observability = get_loyalty_store()

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[AsyncSession]:
        """Commit on success, roll back and re-raise on any failure."""

        try:
            yield self._db
        except Exception:
            await self._db.rollback()
            raise
        else:
            await self._db.commit()

    async def get_balance(self, tenant_id: UUID, customer_id: UUID) -> CustomerPointsBalance | None:
        stmt = (
            select(CustomerPointsBalance)
            .where(
                CustomerPointsBalance.tenant_id == tenant_id,
                CustomerPointsBalance.customer_id == customer_id,
            )
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def current_balance(self, tenant_id: UUID, customer_id: UUID) -> int:
        balance = await self.get_balance(tenant_id, customer_id)
        return int(balance.current_balance) if balance else 0

    async def ensure_balance(self, tenant_id: UUID, customer_id: UUID) -> CustomerPointsBalance:
        """Return the balance row, creating it on first use."""

        existing = await self.get_balance(tenant_id, customer_id)
        if existing is not None:
            return existing

        balance = CustomerPointsBalance(tenant_id=tenant_id, customer_id=customer_id)
        try:
            async with self._db.begin_nested():
                self._db.add(balance)
        except IntegrityError:
            # Another unit created it between our read and insert.
            existing = await self.get_balance(tenant_id, customer_id)
            if existing is None:
                raise
            return existing
        logger.info("Points balance created", tenant_id=str(tenant_id), customer_id=str(customer_id))
        return balance

    async def record_transaction(
        self,
        tenant_id: UUID,
        customer_id: UUID,
        *,
        transaction_type: PointsTransactionType,
        points: int,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
        expires_at: datetime | None = None,
        purchase_id: UUID | None = None,
        reward_redemption_id: UUID | None = None,
        created_by_user_id: UUID | None = None,
        created_at: datetime | None = None,
    ) -> PointsTransaction:
        transaction = PointsTransaction(
            tenant_id=tenant_id,
            customer_id=customer_id,
            transaction_type=transaction_type,
            points=int(points),
            description=description,
            metadata_json=metadata or None,
            expires_at=expires_at,
            expired=False,
            purchase_id=purchase_id,
            reward_redemption_id=reward_redemption_id,
            created_by_user_id=created_by_user_id,
            created_at=created_at or utcnow(),
        )
        self._db.add(transaction)
        await self._db.flush()
        self._observability.record_ledger_event(transaction_type.value, int(points))
        return transaction

    async def increment(
        self,
        tenant_id: UUID,
        customer_id: UUID,
        points: int,
        kind: PointsTransactionType = PointsTransactionType.EARN,
        *,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
        expires_at: datetime | None = None,
        purchase_id: UUID | None = None,
        created_by_user_id: UUID | None = None,
        occurred_at: datetime | None = None,
    ) -> PointsTransaction:
        """Credit earned points and log the transaction."""

        if kind not in _CREDIT_TYPES:
            raise ValueError(f"Unsupported credit type: {kind}")
        if points <= 0:
            raise InvalidAmount("Points to award must be positive", points=points)

        await self.ensure_balance(tenant_id, customer_id)
        now = occurred_at or utcnow()
        stmt = (
            update(CustomerPointsBalance)
            .where(
                CustomerPointsBalance.tenant_id == tenant_id,
                CustomerPointsBalance.customer_id == customer_id,
            )
            .values(
                current_balance=CustomerPointsBalance.current_balance + points,
                total_points_earned=CustomerPointsBalance.total_points_earned + points,
                last_earned_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self._db.execute(stmt)
        transaction = await self.record_transaction(
            tenant_id,
            customer_id,
            transaction_type=kind,
            points=points,
            description=description,
            metadata=metadata,
            expires_at=expires_at,
            purchase_id=purchase_id,
            created_by_user_id=created_by_user_id,
            created_at=now,
        )
        logger.info(
            "Points credited",
            tenant_id=str(tenant_id),
            customer_id=str(customer_id),
            points=points,
            kind=kind.value,
        )
        return transaction

    async def try_decrement(
        self,
        tenant_id: UUID,
        customer_id: UUID,
        points: int,
        *,
        count_as_redeemed: bool = True,
        now: datetime | None = None,
    ) -> None:
        """Debit points only if the balance covers them.

        The guard lives in the UPDATE's WHERE clause; a zero row count means
        the balance was short (or absent) at the moment of the write and
        nothing was changed.
        """

        if points <= 0:
            raise InvalidAmount("Points to deduct must be positive", points=points)

        now = now or utcnow()
        values: dict[str, Any] = {
            "current_balance": CustomerPointsBalance.current_balance - points,
            "updated_at": now,
        }
        if count_as_redeemed:
            values["total_points_redeemed"] = CustomerPointsBalance.total_points_redeemed + points
            values["last_redeemed_at"] = now

        stmt = (
            update(CustomerPointsBalance)
            .where(
                CustomerPointsBalance.tenant_id == tenant_id,
                CustomerPointsBalance.customer_id == customer_id,
                CustomerPointsBalance.current_balance >= points,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        if result.rowcount == 0:
            available = await self.current_balance(tenant_id, customer_id)
            raise InsufficientBalance(
                f"Insufficient points. Required: {points}, available: {available}",
                required=points,
                available=available,
            )

    async def refund(
        self,
        tenant_id: UUID,
        customer_id: UUID,
        points: int,
        reason: str,
        origin_redemption_id: UUID | None = None,
        *,
        metadata: dict[str, Any] | None = None,
    ) -> PointsTransaction:
        """Return previously redeemed points and reverse the redeemed total."""

        if points <= 0:
            raise InvalidAmount("Points to refund must be positive", points=points)

        await self.ensure_balance(tenant_id, customer_id)
        now = utcnow()
        stmt = (
            update(CustomerPointsBalance)
            .where(
                CustomerPointsBalance.tenant_id == tenant_id,
                CustomerPointsBalance.customer_id == customer_id,
            )
            .values(
                current_balance=CustomerPointsBalance.current_balance + points,
                total_points_redeemed=case(
                    (
                        CustomerPointsBalance.total_points_redeemed >= points,
                        CustomerPointsBalance.total_points_redeemed - points,
                    ),
                    else_=0,
                ),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self._db.execute(stmt)
        transaction = await self.record_transaction(
            tenant_id,
            customer_id,
            transaction_type=PointsTransactionType.REFUNDED,
            points=points,
            description=reason,
            metadata={"reason": reason, **(metadata or {})},
            reward_redemption_id=origin_redemption_id,
            created_at=now,
        )
        logger.info(
            "Points refunded",
            tenant_id=str(tenant_id),
            customer_id=str(customer_id),
            points=points,
            redemption_id=str(origin_redemption_id) if origin_redemption_id else None,
        )
        return transaction

    async def adjust(
        self,
        tenant_id: UUID,
        customer_id: UUID,
        delta: int,
        *,
        reason: str,
        actor_user_id: UUID | None = None,
        expires_at: datetime | None = None,
    ) -> PointsTransaction:
        """Staff correction: positive deltas credit, negative deltas debit."""

        if delta == 0:
            raise InvalidAmount("Adjustment must be non-zero", points=delta)
        metadata = {"reason": reason, "actor_user_id": str(actor_user_id) if actor_user_id else None}
        if delta > 0:
            return await self.increment(
                tenant_id,
                customer_id,
                delta,
                PointsTransactionType.ADJUSTED,
                description=reason,
                metadata=metadata,
                expires_at=expires_at,
                created_by_user_id=actor_user_id,
            )

        await self.try_decrement(tenant_id, customer_id, -delta, count_as_redeemed=False)
        transaction = await self.record_transaction(
            tenant_id,
            customer_id,
            transaction_type=PointsTransactionType.ADJUSTED,
            points=delta,
            description=reason,
            metadata=metadata,
            created_by_user_id=actor_user_id,
        )
        logger.info(
            "Points deducted by adjustment",
            tenant_id=str(tenant_id),
            customer_id=str(customer_id),
            points=-delta,
        )
        return transaction

    async def expire_transactions(
        self,
        tenant_id: UUID,
        customer_id: UUID,
        transaction_ids: Sequence[UUID],
        *,
        now: datetime | None = None,
    ) -> ExpiryOutcome:
        """Mark credit rows expired and debit their remaining value.

        The mark is itself a conditional update on ``expired = false``; if any
        row was already claimed by another sweep the whole group is rejected
        with :class:`AlreadyProcessed`. Spending draws on expiring credits
        first, so the debit is capped at whatever part of the balance is not
        backed by the customer's other unexpired credits.
        """

        now = now or utcnow()
        ids = list(dict.fromkeys(transaction_ids))
        if not ids:
            return ExpiryOutcome(expired_transaction_ids=[], requested_points=0, points_expired=0, transaction=None)

        owner_filters = (
            PointsTransaction.tenant_id == tenant_id,
            PointsTransaction.customer_id == customer_id,
            PointsTransaction.expired.is_(False),
        )
        total_stmt = select(func.coalesce(func.sum(PointsTransaction.points), 0)).where(
            PointsTransaction.id.in_(ids),
            *owner_filters,
        )
        requested = int((await self._db.execute(total_stmt)).scalar_one())
        retained_stmt = select(func.coalesce(func.sum(PointsTransaction.points), 0)).where(
            PointsTransaction.id.not_in(ids),
            PointsTransaction.points > 0,
            *owner_filters,
        )
        retained = int((await self._db.execute(retained_stmt)).scalar_one())

        mark_stmt = (
            update(PointsTransaction)
            .where(PointsTransaction.id.in_(ids), *owner_filters)
            .values(expired=True)
            .execution_options(synchronize_session=False)
        )
        marked = (await self._db.execute(mark_stmt)).rowcount
        if marked != len(ids):
            raise AlreadyProcessed(
                "Transactions already expired by another sweep",
                customer_id=customer_id,
                expected=len(ids),
                marked=marked,
            )

        available = await self.current_balance(tenant_id, customer_id)
        amount = max(0, min(requested, available - retained))
        transaction: PointsTransaction | None = None
        if amount > 0:
            debit_stmt = (
                update(CustomerPointsBalance)
                .where(
                    CustomerPointsBalance.tenant_id == tenant_id,
                    CustomerPointsBalance.customer_id == customer_id,
                    CustomerPointsBalance.current_balance >= amount,
                )
                .values(
                    current_balance=CustomerPointsBalance.current_balance - amount,
                    total_points_expired=CustomerPointsBalance.total_points_expired + amount,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if (await self._db.execute(debit_stmt)).rowcount == 0:
                raise InsufficientBalance(
                    "Balance changed during expiry",
                    required=amount,
                    customer_id=customer_id,
                )
            transaction = await self.record_transaction(
                tenant_id,
                customer_id,
                transaction_type=PointsTransactionType.EXPIRY,
                points=-amount,
                description=f"{amount} points expired",
                metadata={
                    "expiredTransactionIds": [str(item) for item in ids],
                    "expiredAt": now.isoformat(),
                    "requestedPoints": requested,
                    "retainedPoints": retained,
                },
                created_at=now,
            )

        logger.info(
            "Points expired",
            tenant_id=str(tenant_id),
            customer_id=str(customer_id),
            transactions=len(ids),
            requested_points=requested,
            points_expired=amount,
        )
        return ExpiryOutcome(
            expired_transaction_ids=ids,
            requested_points=requested,
            points_expired=amount,
            transaction=transaction,
        )

    async def list_transactions(
        self,
        tenant_id: UUID,
        customer_id: UUID,
        *,
        limit: int | None = DEFAULT_PAGE_SIZE,
        offset: int = 0,
        types: Iterable[PointsTransactionType] | None = None,
    ) -> TransactionPage:
        page_size = clamp_page_size(limit)
        offset = max(offset, 0)
        filters = [
            PointsTransaction.tenant_id == tenant_id,
            PointsTransaction.customer_id == customer_id,
        ]
        type_list = list(types or [])
        if type_list:
            filters.append(PointsTransaction.transaction_type.in_(type_list))

        count_stmt = select(func.count(PointsTransaction.id)).where(*filters)
        total = int((await self._db.execute(count_stmt)).scalar_one())
        stmt = (
            select(PointsTransaction)
            .where(*filters)
            .order_by(PointsTransaction.created_at.desc(), PointsTransaction.id.desc())
            .offset(offset)
            .limit(page_size)
        )
        items = list((await self._db.execute(stmt)).scalars().all())
        return TransactionPage(items=items, total=total, limit=page_size, offset=offset)


__all__ = [
    "DEFAULT_PAGE_SIZE",
    "ExpiryOutcome",
    "LedgerStore",
    "MAX_PAGE_SIZE",
    "TransactionPage",
    "clamp_page_size",
]
