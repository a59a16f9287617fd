"""Turn recorded purchases into earn transactions."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any
from uuid import UUID

from loguru import logger
from sqlalchemy import case, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pointledger_api.core.clock import ensure_utc, utcnow
from pointledger_api.domain.loyalty import constants
from pointledger_api.domain.loyalty.errors import (
    CustomerNotFound,
    FutureDatedPurchase,
    InvalidAmount,
    ValidationError,
)
from pointledger_api.models.customer import Customer
from pointledger_api.models.loyalty import PointsTransaction, PointsTransactionType
from pointledger_api.models.purchase import Purchase, PurchaseSource
from pointledger_api.services.notifications import NotificationService, Notifier, dispatch_loyalty_event
from pointledger_api.services.tenants import DatabaseTenantConfigProvider, TenantConfigProvider

from .ledger import LedgerStore, clamp_page_size

BLOCKED_NOTE = "[Customer blocked - no points awarded]"


@dataclass
class PurchaseResult:
    purchase: Purchase
    points_awarded: int
    customer_blocked: bool
    balance: int
    transaction: PointsTransaction | None


def _coerce_amount(amount_major: Any, amount_minor: Any, currency: str) -> Decimal:
    if (amount_major is None) == (amount_minor is None):
        raise ValidationError("Provide exactly one of amount_major or amount_minor")
    try:
        if amount_minor is not None:
            amount = constants.minor_to_major(int(amount_minor), currency)
        else:
            amount = Decimal(str(amount_major))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise InvalidAmount("Amount must be a number", amount=amount_major or amount_minor) from exc
    if not amount.is_finite() or amount <= 0:
        raise InvalidAmount("Amount must be greater than 0", amount=amount)
    return amount.quantize(Decimal("0.01"))


class PurchaseRecorder:
    """Record vendor-entered purchases and credit their points."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        config: TenantConfigProvider | None = None,
        notifier: Notifier | None = None,
        ledger: LedgerStore | None = None,
    ) -> None:
        self._db = db_session
        self._config = config or DatabaseTenantConfigProvider(db_session)
        self._notifier = notifier or NotificationService(db_session)
        self._ledger = ledger or LedgerStore(db_session)

    async def record_purchase(
        self,
        tenant_id: UUID,
        customer_id: UUID,
        *,
        amount_major: Decimal | float | str | None = None,
        amount_minor: int | None = None,
        points_override: int | None = None,
        purchased_at: datetime | None = None,
        notes: str | None = None,
        logged_by_user_id: UUID | None = None,
        notify: bool = True,
    ) -> PurchaseResult:
        async with self._ledger.atomic():
            result = await self.record_in_unit(
                tenant_id,
                customer_id,
                amount_major=amount_major,
                amount_minor=amount_minor,
                points_override=points_override,
                purchased_at=purchased_at,
                notes=notes,
                logged_by_user_id=logged_by_user_id,
                source=PurchaseSource.MANUAL,
                logged_via="manual",
            )

        logger.info(
            "Purchase recorded",
            tenant_id=str(tenant_id),
            customer_id=str(customer_id),
            purchase_id=str(result.purchase.id),
            amount=str(result.purchase.amount_major),
            points=result.points_awarded,
            blocked=result.customer_blocked,
        )
        if notify:
            await dispatch_loyalty_event(
                self._notifier,
                self._config,
                tenant_id=tenant_id,
                customer_id=customer_id,
                event_kind="purchase-recorded",
                payload={
                    "amount": str(result.purchase.amount_major),
                    "currency": result.purchase.currency,
                    "points": result.points_awarded,
                    "balance": result.balance,
                    "purchase_id": str(result.purchase.id),
                },
            )
        return result

    async def record_in_unit(
        self,
        tenant_id: UUID,
        customer_id: UUID,
        *,
        amount_major: Decimal | float | str | None = None,
        amount_minor: int | None = None,
        points_override: int | None = None,
        purchased_at: datetime | None = None,
        notes: str | None = None,
        logged_by_user_id: UUID | None = None,
        source: PurchaseSource = PurchaseSource.MANUAL,
        logged_via: str | None = None,
        transaction_metadata: dict[str, Any] | None = None,
    ) -> PurchaseResult:
        """Write the purchase, credit and counters inside the caller's unit."""

        now = utcnow()
        purchased_at = ensure_utc(purchased_at) or now
        if purchased_at > now:
            raise FutureDatedPurchase("Purchase date cannot be in the future", purchased_at=purchased_at)

        customer = await self._load_customer(tenant_id, customer_id)
        currency = await self._config.get_currency(tenant_id)
        amount = _coerce_amount(amount_major, amount_minor, currency)

        if points_override is not None:
            if int(points_override) < 0:
                raise InvalidAmount("Points override cannot be negative", points=points_override)
            points = int(points_override)
        elif amount_minor is not None:
            points = constants.points_from_minor(int(amount_minor), currency)
        else:
            points = constants.points_earned(amount, currency)

        blocked = await self._config.is_blocked(customer.id)
        if blocked:
            points = 0
            notes = f"{notes} {BLOCKED_NOTE}".strip() if notes else BLOCKED_NOTE

        purchase = Purchase(
            tenant_id=tenant_id,
            customer_id=customer.id,
            amount_major=amount,
            currency=currency,
            points_earned=points,
            source=source,
            logged_via=logged_via,
            logged_by_user_id=logged_by_user_id,
            notes=notes,
            purchased_at=purchased_at,
            created_at=now,
        )
        self._db.add(purchase)
        await self._db.flush()

        transaction: PointsTransaction | None = None
        if not blocked and points > 0:
            loyalty_settings = await self._config.get_settings(tenant_id)
            transaction = await self._ledger.increment(
                tenant_id,
                customer.id,
                points,
                PointsTransactionType.EARN,
                description=f"Purchase: {amount} {currency}",
                metadata={
                    "purchaseAmount": str(amount),
                    "purchaseId": str(purchase.id),
                    **(transaction_metadata or {}),
                },
                expires_at=loyalty_settings.earn_expiry_for(now),
                purchase_id=purchase.id,
                created_by_user_id=logged_by_user_id,
            )

        await self._bump_customer_counters(customer, amount, purchased_at)
        balance = await self._ledger.current_balance(tenant_id, customer.id)
        return PurchaseResult(
            purchase=purchase,
            points_awarded=points,
            customer_blocked=blocked,
            balance=balance,
            transaction=transaction,
        )

    async def list_purchases(
        self,
        tenant_id: UUID,
        *,
        customer_id: UUID | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Purchase]:
        stmt = select(Purchase).where(Purchase.tenant_id == tenant_id)
        if customer_id is not None:
            stmt = stmt.where(Purchase.customer_id == customer_id)
        stmt = (
            stmt.order_by(Purchase.purchased_at.desc(), Purchase.id.desc())
            .offset(max(offset, 0))
            .limit(clamp_page_size(limit))
        )
        return list((await self._db.execute(stmt)).scalars().all())

    async def _load_customer(self, tenant_id: UUID, customer_id: UUID) -> Customer:
        stmt = select(Customer).where(Customer.id == customer_id, Customer.tenant_id == tenant_id)
        customer = (await self._db.execute(stmt)).scalar_one_or_none()
        if customer is None:
            raise CustomerNotFound("Customer not found", customer_id=customer_id, tenant_id=tenant_id)
        return customer

    async def _bump_customer_counters(self, customer: Customer, amount: Decimal, purchased_at: datetime) -> None:
        stmt = (
            update(Customer)
            .where(Customer.id == customer.id)
            .values(
                total_purchases=Customer.total_purchases + 1,
                total_spent_major=func.coalesce(Customer.total_spent_major, 0) + amount,
                last_purchase_at=case(
                    (
                        or_(Customer.last_purchase_at.is_(None), Customer.last_purchase_at < purchased_at),
                        purchased_at,
                    ),
                    else_=Customer.last_purchase_at,
                ),
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await self._db.execute(stmt)
        await self._db.refresh(customer)


__all__ = ["BLOCKED_NOTE", "PurchaseRecorder", "PurchaseResult"]
