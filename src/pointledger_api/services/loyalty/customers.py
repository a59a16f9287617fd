"""Customer enrollment, blocking and phone lookup."""

from __future__ import annotations

import re
from dataclasses import dataclass
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from pointledger_api.core.clock import utcnow
from pointledger_api.domain.loyalty.errors import CustomerNotFound, TenantNotFound, ValidationError
from pointledger_api.models.customer import Customer, CustomerLoyaltyStatus
from pointledger_api.models.loyalty import PointsTransactionType
from pointledger_api.models.tenant import Tenant
from pointledger_api.services.channel_sessions import DEFAULT_CHANNEL, ChannelSessionService
from pointledger_api.services.notifications import NotificationService, Notifier, dispatch_loyalty_event
from pointledger_api.services.tenants import DatabaseTenantConfigProvider, TenantConfigProvider

from .ledger import LedgerStore

_PHONE_NOISE = re.compile(r"[\s\-().]")


def normalize_phone(phone_number: str) -> str:
    """Strip formatting; keep a single leading ``+`` if present."""

    raw = _PHONE_NOISE.sub("", (phone_number or "").strip())
    digits = raw.lstrip("+")
    if not digits.isdigit():
        raise ValidationError("Phone number must contain digits only", phone_number=phone_number)
    return f"+{digits}" if raw.startswith("+") else digits


def phone_variants(phone_number: str) -> list[str]:
    """Stored forms a phone number may match, with and without the leading ``+``."""

    normalized = normalize_phone(phone_number)
    digits = normalized.lstrip("+")
    return [normalized, digits if normalized.startswith("+") else f"+{digits}"]


@dataclass
class EnrollmentResult:
    customer: Customer
    created: bool
    welcome_bonus_points: int
    balance: int


class CustomerEnrollmentService:
    def __init__(
        self,
        db_session: AsyncSession,
        *,
        config: TenantConfigProvider | None = None,
        notifier: Notifier | None = None,
        ledger: LedgerStore | None = None,
        sessions: ChannelSessionService | None = None,
    ) -> None:
        self._db = db_session
        self._config = config or DatabaseTenantConfigProvider(db_session)
        self._notifier = notifier or NotificationService(db_session)
        self._ledger = ledger or LedgerStore(db_session)
        self._sessions = sessions or ChannelSessionService(db_session)

    async def find_by_phone(self, tenant_id: UUID, phone_number: str) -> Customer | None:
        stmt = select(Customer).where(
            Customer.tenant_id == tenant_id,
            Customer.phone_number.in_(phone_variants(phone_number)),
        )
        return (await self._db.execute(stmt)).scalars().first()

    async def enroll(
        self,
        tenant_id: UUID,
        phone_number: str,
        *,
        first_name: str | None = None,
        last_name: str | None = None,
        channel: str = DEFAULT_CHANNEL,
    ) -> EnrollmentResult:
        """Enroll a phone number with a tenant and grant the welcome bonus once."""

        tenant = await self._db.get(Tenant, tenant_id)
        if tenant is None:
            raise TenantNotFound("Tenant not found", tenant_id=tenant_id)
        phone = normalize_phone(phone_number)

        existing = await self.find_by_phone(tenant_id, phone)
        if existing is not None:
            await self._sessions.set_active_tenant(phone, tenant_id, channel=channel)
            balance = await self._ledger.current_balance(tenant_id, existing.id)
            return EnrollmentResult(customer=existing, created=False, welcome_bonus_points=0, balance=balance)

        loyalty_settings = await self._config.get_settings(tenant_id)
        bonus = loyalty_settings.welcome_bonus_points if loyalty_settings.welcome_bonus_enabled else 0
        try:
            async with self._ledger.atomic():
                now = utcnow()
                customer = Customer(
                    tenant_id=tenant_id,
                    phone_number=phone,
                    first_name=(first_name or "").strip() or None,
                    last_name=(last_name or "").strip() or None,
                    loyalty_status=CustomerLoyaltyStatus.ACTIVE,
                    opted_in=True,
                    created_at=now,
                    updated_at=now,
                )
                self._db.add(customer)
                await self._db.flush()
                if bonus > 0:
                    await self._ledger.increment(
                        tenant_id,
                        customer.id,
                        bonus,
                        PointsTransactionType.WELCOME_BONUS,
                        description="Welcome bonus",
                        metadata={"reason": "welcome_bonus"},
                        expires_at=loyalty_settings.earn_expiry_for(now),
                        occurred_at=now,
                    )
                await self._sessions.set_active_tenant(phone, tenant_id, channel=channel, commit=False)
        except IntegrityError:
            # Same phone enrolled concurrently.
            existing = await self.find_by_phone(tenant_id, phone)
            if existing is None:
                raise
            balance = await self._ledger.current_balance(tenant_id, existing.id)
            return EnrollmentResult(customer=existing, created=False, welcome_bonus_points=0, balance=balance)

        balance = await self._ledger.current_balance(tenant_id, customer.id)
        logger.info(
            "Customer enrolled",
            tenant_id=str(tenant_id),
            customer_id=str(customer.id),
            welcome_bonus=bonus,
        )
        if bonus > 0:
            await dispatch_loyalty_event(
                self._notifier,
                self._config,
                tenant_id=tenant_id,
                customer_id=customer.id,
                event_kind="welcome-bonus",
                payload={"points": bonus, "balance": balance, "tenant_name": tenant.name},
            )
        return EnrollmentResult(customer=customer, created=True, welcome_bonus_points=bonus, balance=balance)

    async def block(self, tenant_id: UUID, customer_id: UUID, *, reason: str | None = None) -> Customer:
        customer = await self._load(tenant_id, customer_id)
        customer.loyalty_status = CustomerLoyaltyStatus.BLOCKED
        customer.blocked_reason = (reason or "").strip() or None
        customer.updated_at = utcnow()
        await self._db.commit()
        logger.info("Customer blocked", tenant_id=str(tenant_id), customer_id=str(customer_id))
        return customer

    async def unblock(self, tenant_id: UUID, customer_id: UUID) -> Customer:
        customer = await self._load(tenant_id, customer_id)
        customer.loyalty_status = CustomerLoyaltyStatus.ACTIVE
        customer.blocked_reason = None
        customer.updated_at = utcnow()
        await self._db.commit()
        logger.info("Customer unblocked", tenant_id=str(tenant_id), customer_id=str(customer_id))
        return customer

    async def _load(self, tenant_id: UUID, customer_id: UUID) -> Customer:
        stmt = select(Customer).where(Customer.id == customer_id, Customer.tenant_id == tenant_id)
        customer = (await self._db.execute(stmt)).scalar_one_or_none()
        if customer is None:
            raise CustomerNotFound("Customer not found", customer_id=customer_id)
        return customer


__all__ = [
    "CustomerEnrollmentService",
    "EnrollmentResult",
    "normalize_phone",
    "phone_variants",
]
