"""Vendor-recorded purchases and the points they earn."""

import datetime as dt
from decimal import Decimal

import pytest

from pointledger_api.domain.loyalty.errors import (
    CustomerNotFound,
    FutureDatedPurchase,
    InvalidAmount,
    ValidationError,
)
from pointledger_api.models.customer import Customer
from pointledger_api.models.purchase import PurchaseSource
from pointledger_api.services.loyalty import PurchaseRecorder
from pointledger_api.services.loyalty.purchases import BLOCKED_NOTE
from pointledger_api.services.notifications import NotificationService


@pytest.mark.asyncio
async def test_purchase_awards_floored_points_and_notifies(session_factory, seed, chat_backend) -> None:
    tenant_id = await seed.tenant()
    customer_id = await seed.customer(tenant_id)

    async with session_factory() as session:
        recorder = PurchaseRecorder(session, notifier=NotificationService(session, backend=chat_backend))
        result = await recorder.record_purchase(tenant_id, customer_id, amount_major="12.99", notes="Lunch")

        assert result.points_awarded == 12
        assert result.balance == 12
        assert result.purchase.source == PurchaseSource.MANUAL
        assert result.purchase.amount_major == Decimal("12.99")
        assert result.transaction is not None
        assert result.transaction.metadata_json["purchaseId"] == str(result.purchase.id)

        customer = await session.get(Customer, customer_id)
        assert customer.total_purchases == 1
        assert customer.last_purchase_at is not None

    assert len(chat_backend.sent_messages) == 1
    assert chat_backend.sent_messages[0]["metadata"]["event"] == "purchase-recorded"


@pytest.mark.asyncio
async def test_minor_units_and_override(session_factory, seed) -> None:
    tenant_id = await seed.tenant(currency="NGN", vendor_code="LAGOS1")
    customer_id = await seed.customer(tenant_id)

    async with session_factory() as session:
        recorder = PurchaseRecorder(session)
        minor = await recorder.record_purchase(tenant_id, customer_id, amount_minor=350_000)
        assert minor.purchase.amount_major == Decimal("3500.00")
        assert minor.points_awarded == 3

        override = await recorder.record_purchase(tenant_id, customer_id, amount_major=100, points_override=0)
        assert override.points_awarded == 0
        assert override.transaction is None
        assert override.balance == 3


@pytest.mark.asyncio
async def test_blocked_customer_purchase_records_without_points(session_factory, seed) -> None:
    tenant_id = await seed.tenant()
    customer_id = await seed.customer(tenant_id, blocked=True)

    async with session_factory() as session:
        result = await PurchaseRecorder(session).record_purchase(tenant_id, customer_id, amount_major=40)

    assert result.customer_blocked
    assert result.points_awarded == 0
    assert result.purchase.points_earned == 0
    assert BLOCKED_NOTE in result.purchase.notes
    assert await seed.balance(tenant_id, customer_id) == 0


@pytest.mark.asyncio
async def test_invalid_purchases_leave_no_trace(session_factory, seed) -> None:
    tenant_id = await seed.tenant()
    customer_id = await seed.customer(tenant_id)
    other_tenant_id = await seed.tenant(name="Other", vendor_code="OTHER1")

    async with session_factory() as session:
        recorder = PurchaseRecorder(session)
        with pytest.raises(InvalidAmount):
            await recorder.record_purchase(tenant_id, customer_id, amount_major="-3")
        with pytest.raises(ValidationError):
            await recorder.record_purchase(tenant_id, customer_id, amount_major=5, amount_minor=500)
        with pytest.raises(FutureDatedPurchase):
            await recorder.record_purchase(
                tenant_id,
                customer_id,
                amount_major=5,
                purchased_at=dt.datetime.now(dt.timezone.utc) + dt.timedelta(hours=2),
            )
        with pytest.raises(CustomerNotFound):
            await recorder.record_purchase(other_tenant_id, customer_id, amount_major=5)

        assert await recorder.list_purchases(tenant_id) == []


@pytest.mark.asyncio
async def test_list_purchases_filters_by_customer(session_factory, seed) -> None:
    tenant_id = await seed.tenant()
    first_id = await seed.customer(tenant_id)
    second_id = await seed.customer(tenant_id, phone_number="+447700900002")

    async with session_factory() as session:
        recorder = PurchaseRecorder(session)
        await recorder.record_purchase(tenant_id, first_id, amount_major=10)
        await recorder.record_purchase(tenant_id, second_id, amount_major=20)

        everything = await recorder.list_purchases(tenant_id)
        only_second = await recorder.list_purchases(tenant_id, customer_id=second_id)

    assert len(everything) == 2
    assert [purchase.customer_id for purchase in only_second] == [second_id]
