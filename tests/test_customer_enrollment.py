from uuid import uuid4

import pytest
from sqlalchemy import select

from pointledger_api.domain.loyalty.errors import CustomerNotFound, TenantNotFound, ValidationError
from pointledger_api.models.customer import CustomerLoyaltyStatus
from pointledger_api.models.loyalty import PointsTransaction, PointsTransactionType
from pointledger_api.services.channel_sessions import ChannelSessionService
from pointledger_api.services.loyalty import CustomerEnrollmentService, normalize_phone, phone_variants
from pointledger_api.services.notifications import NotificationService


def test_normalize_phone_strips_formatting() -> None:
    assert normalize_phone(" +44 7700-900 (001) ") == "+447700900001"
    assert normalize_phone("447700900001") == "447700900001"
    assert phone_variants("+447700900001") == ["+447700900001", "447700900001"]
    assert phone_variants("447700900001") == ["447700900001", "+447700900001"]
    with pytest.raises(ValidationError):
        normalize_phone("call me")
    with pytest.raises(ValidationError):
        normalize_phone("")


@pytest.mark.asyncio
async def test_enroll_grants_welcome_bonus_once(session_factory, seed, chat_backend) -> None:
    tenant_id = await seed.tenant(name="Corner Cafe")

    async with session_factory() as session:
        service = CustomerEnrollmentService(session, notifier=NotificationService(session, backend=chat_backend))
        first = await service.enroll(tenant_id, "+44 7700 900001", first_name=" Ada ")
        customer_id = first.customer.id
        second = await service.enroll(tenant_id, "447700900001")

        bonuses = (
            await session.execute(
                select(PointsTransaction).where(
                    PointsTransaction.customer_id == customer_id,
                    PointsTransaction.transaction_type == PointsTransactionType.WELCOME_BONUS,
                )
            )
        ).scalars().all()
        routed = await ChannelSessionService(session).get_active_tenant("+447700900001")

    assert first.created is True
    assert first.welcome_bonus_points == 10
    assert first.balance == 10
    assert first.customer.first_name == "Ada"
    assert second.created is False
    assert second.customer.id == customer_id
    assert second.welcome_bonus_points == 0
    assert second.balance == 10
    assert len(bonuses) == 1
    assert routed == tenant_id
    assert len(chat_backend.sent_messages) == 1
    assert "Welcome to Corner Cafe" in chat_backend.sent_messages[0]["body"]


@pytest.mark.asyncio
async def test_enroll_without_welcome_bonus(session_factory, seed) -> None:
    tenant_id = await seed.tenant(settings={"welcomeBonusEnabled": False})

    async with session_factory() as session:
        result = await CustomerEnrollmentService(session).enroll(tenant_id, "+447700900002")

    assert result.created is True
    assert result.welcome_bonus_points == 0
    assert result.balance == 0


@pytest.mark.asyncio
async def test_enroll_requires_known_tenant(session_factory) -> None:
    async with session_factory() as session:
        with pytest.raises(TenantNotFound):
            await CustomerEnrollmentService(session).enroll(uuid4(), "+447700900003")


@pytest.mark.asyncio
async def test_block_and_unblock(session_factory, seed) -> None:
    tenant_id = await seed.tenant()
    customer_id = await seed.customer(tenant_id)

    async with session_factory() as session:
        service = CustomerEnrollmentService(session)
        blocked = await service.block(tenant_id, customer_id, reason="Chargeback")
        assert blocked.loyalty_status == CustomerLoyaltyStatus.BLOCKED
        assert blocked.blocked_reason == "Chargeback"

        unblocked = await service.unblock(tenant_id, customer_id)
        assert unblocked.loyalty_status == CustomerLoyaltyStatus.ACTIVE
        assert unblocked.blocked_reason is None

        with pytest.raises(CustomerNotFound):
            await service.block(uuid4(), customer_id)
