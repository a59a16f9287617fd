from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pointledger_api.app import create_app
from pointledger_api.core.clock import utcnow
from pointledger_api.db.base import Base
from pointledger_api.db.session import build_engine, get_session
from pointledger_api.models import (
    Customer,
    CustomerLoyaltyStatus,
    PointsTransaction,
    PointsTransactionType,
    Reward,
    Tenant,
)
from pointledger_api.observability.loyalty import get_loyalty_store
from pointledger_api.observability.scheduler import get_loyalty_scheduler_store
from pointledger_api.services.loyalty import LedgerStore
from pointledger_api.services.notifications import InMemoryChatBackend


@pytest.fixture(autouse=True)
def _reset_observability() -> None:
    get_loyalty_store().reset()
    get_loyalty_scheduler_store().reset()


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    # File-backed so concurrent sessions get their own connections.
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def app_with_db(session_factory):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def chat_backend() -> InMemoryChatBackend:
    return InMemoryChatBackend()


@dataclass
class LedgerSeeder:
    """Insert fixtures through short-lived sessions and hand back plain ids."""

    session_factory: Any

    async def tenant(
        self,
        *,
        name: str = "Corner Cafe",
        vendor_code: str = "CAFE01",
        currency: str = "GBP",
        timezone: str = "UTC",
        settings: dict[str, Any] | None = None,
    ) -> UUID:
        async with self.session_factory() as session:
            tenant = Tenant(
                name=name,
                vendor_code=vendor_code,
                currency=currency,
                timezone=timezone,
                settings_json=settings,
            )
            session.add(tenant)
            await session.commit()
            return tenant.id

    async def customer(
        self,
        tenant_id: UUID,
        *,
        phone_number: str = "+447700900001",
        first_name: str | None = "Ada",
        blocked: bool = False,
    ) -> UUID:
        async with self.session_factory() as session:
            customer = Customer(
                tenant_id=tenant_id,
                phone_number=phone_number,
                first_name=first_name,
                loyalty_status=CustomerLoyaltyStatus.BLOCKED if blocked else CustomerLoyaltyStatus.ACTIVE,
            )
            session.add(customer)
            await session.commit()
            return customer.id

    async def reward(
        self,
        tenant_id: UUID,
        *,
        name: str = "Free coffee",
        points_required: int = 60,
        stock_quantity: int | None = None,
        max_redemptions_per_customer: int | None = None,
        is_active: bool = True,
        valid_from: datetime | None = None,
        valid_until: datetime | None = None,
    ) -> UUID:
        async with self.session_factory() as session:
            reward = Reward(
                tenant_id=tenant_id,
                name=name,
                points_required=points_required,
                monetary_value_major=Decimal("6.00"),
                stock_quantity=stock_quantity,
                max_redemptions_per_customer=max_redemptions_per_customer,
                is_active=is_active,
                valid_from=valid_from,
                valid_until=valid_until,
            )
            session.add(reward)
            await session.commit()
            return reward.id

    async def credit(
        self,
        tenant_id: UUID,
        customer_id: UUID,
        points: int,
        *,
        transaction_type: PointsTransactionType = PointsTransactionType.EARN,
        expires_at: datetime | None = None,
        occurred_at: datetime | None = None,
    ) -> UUID:
        async with self.session_factory() as session:
            ledger = LedgerStore(session)
            async with ledger.atomic():
                transaction = await ledger.increment(
                    tenant_id,
                    customer_id,
                    points,
                    transaction_type,
                    description="Seed credit",
                    expires_at=expires_at,
                    occurred_at=occurred_at or utcnow(),
                )
            return transaction.id

    async def balance(self, tenant_id: UUID, customer_id: UUID) -> int:
        async with self.session_factory() as session:
            return await LedgerStore(session).current_balance(tenant_id, customer_id)

    async def transaction(self, transaction_id: UUID) -> PointsTransaction:
        async with self.session_factory() as session:
            transaction = await session.get(PointsTransaction, transaction_id)
            assert transaction is not None
            return transaction


@pytest.fixture
def seed(session_factory) -> LedgerSeeder:
    return LedgerSeeder(session_factory)
