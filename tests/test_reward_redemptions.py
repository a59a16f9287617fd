"""Redemption lifecycle: deduction, replay, staff check-in and expiry."""

import asyncio
import datetime as dt

import pytest
from sqlalchemy import select, update

from pointledger_api.core.clock import utcnow
from pointledger_api.domain.loyalty.errors import (
    AlreadyFulfilled,
    AlreadyProcessed,
    InsufficientBalance,
    OutOfStock,
    RedemptionExpired,
    RedemptionLimitReached,
    RedemptionNotFound,
    RewardUnavailable,
    ValidationError,
)
from pointledger_api.models.loyalty import (
    PointsTransaction,
    PointsTransactionType,
    Reward,
    RewardRedemption,
    RewardRedemptionStatus,
)
from pointledger_api.services.loyalty import RewardRedemptionService, normalize_redemption_code
from pointledger_api.services.loyalty.redemptions import generate_redemption_code
from pointledger_api.services.notifications import NotificationService


def test_redemption_code_shape() -> None:
    code = generate_redemption_code(dt.datetime(2026, 10, 19, 12, 0, tzinfo=dt.timezone.utc))
    assert code.startswith("R")
    assert len(code) == 11
    assert code.isalnum() and code.upper() == code
    assert normalize_redemption_code("  r12ab ") == "R12AB"


@pytest.mark.asyncio
async def test_redeem_deducts_points_and_stock(session_factory, seed, chat_backend) -> None:
    tenant_id = await seed.tenant()
    customer_id = await seed.customer(tenant_id)
    reward_id = await seed.reward(tenant_id, points_required=60, stock_quantity=2)
    await seed.credit(tenant_id, customer_id, 100)

    async with session_factory() as session:
        service = RewardRedemptionService(session, notifier=NotificationService(session, backend=chat_backend))
        result = await service.redeem(tenant_id, customer_id, reward_id)
        reward = await session.get(Reward, reward_id, populate_existing=True)
        ledger_rows = (
            await session.execute(
                select(PointsTransaction).where(PointsTransaction.reward_redemption_id == result.redemption.id)
            )
        ).scalars().all()

    assert result.replayed is False
    assert result.balance == 40
    assert result.redemption.status == RewardRedemptionStatus.PENDING
    assert result.redemption.points_deducted == 60
    assert reward.stock_quantity == 1
    assert reward.total_redemptions == 1
    assert [(row.transaction_type, row.points) for row in ledger_rows] == [(PointsTransactionType.REDEEMED, -60)]
    assert ledger_rows[0].description == "Redeemed: Free coffee"
    assert [message["metadata"]["event"] for message in chat_backend.sent_messages] == ["redemption-created"]
    assert result.redemption.redemption_code in chat_backend.sent_messages[0]["body"]


@pytest.mark.asyncio
async def test_idempotent_replay_returns_stored_redemption(session_factory, seed) -> None:
    tenant_id = await seed.tenant()
    customer_id = await seed.customer(tenant_id)
    reward_id = await seed.reward(tenant_id, points_required=30)
    await seed.credit(tenant_id, customer_id, 100)

    async with session_factory() as session:
        service = RewardRedemptionService(session)
        first = await service.redeem(tenant_id, customer_id, reward_id, idempotency_key="order-77")
        second = await service.redeem(tenant_id, customer_id, reward_id, idempotency_key=" order-77 ")

    assert second.replayed is True
    assert second.redemption.id == first.redemption.id
    assert second.balance == 70
    assert await seed.balance(tenant_id, customer_id) == 70


@pytest.mark.asyncio
async def test_concurrent_redemptions_never_overdraw(session_factory, seed) -> None:
    tenant_id = await seed.tenant()
    customer_id = await seed.customer(tenant_id)
    coffee_id = await seed.reward(tenant_id, name="Free coffee", points_required=60)
    cake_id = await seed.reward(tenant_id, name="Free cake", points_required=60)
    await seed.credit(tenant_id, customer_id, 100)

    async def redeem(reward_id) -> str:
        async with session_factory() as session:
            try:
                await RewardRedemptionService(session).redeem(tenant_id, customer_id, reward_id)
            except InsufficientBalance:
                return "insufficient"
            return "redeemed"

    outcomes = await asyncio.gather(redeem(coffee_id), redeem(cake_id))

    assert sorted(outcomes) == ["insufficient", "redeemed"]
    assert await seed.balance(tenant_id, customer_id) == 40


@pytest.mark.asyncio
async def test_concurrent_redemptions_never_oversell_stock(session_factory, seed) -> None:
    tenant_id = await seed.tenant()
    reward_id = await seed.reward(tenant_id, name="Last mug", points_required=10, stock_quantity=1)
    customer_ids = []
    for index in range(4):
        customer_id = await seed.customer(tenant_id, phone_number=f"+44770090010{index}")
        await seed.credit(tenant_id, customer_id, 50)
        customer_ids.append(customer_id)

    async def redeem(customer_id) -> str:
        async with session_factory() as session:
            try:
                await RewardRedemptionService(session).redeem(tenant_id, customer_id, reward_id)
            except OutOfStock:
                return "out_of_stock"
            return "redeemed"

    outcomes = await asyncio.gather(*(redeem(customer_id) for customer_id in customer_ids))

    assert sorted(outcomes) == ["out_of_stock", "out_of_stock", "out_of_stock", "redeemed"]
    balances = [await seed.balance(tenant_id, customer_id) for customer_id in customer_ids]
    assert sorted(balances) == [40, 50, 50, 50]
    reward = await _reward(session_factory, reward_id)
    assert reward.stock_quantity == 0
    assert reward.total_redemptions == 1


@pytest.mark.asyncio
async def test_redeem_guards(session_factory, seed) -> None:
    tenant_id = await seed.tenant()
    customer_id = await seed.customer(tenant_id)
    sold_out_id = await seed.reward(tenant_id, name="Mug", points_required=10, stock_quantity=0)
    hidden_id = await seed.reward(tenant_id, name="Secret menu", points_required=10, is_active=False)
    future_id = await seed.reward(
        tenant_id,
        name="Summer special",
        points_required=10,
        valid_from=utcnow() + dt.timedelta(days=3),
    )
    lapsed_id = await seed.reward(
        tenant_id,
        name="Spring special",
        points_required=10,
        valid_until=utcnow() - dt.timedelta(days=1),
    )
    pricey_id = await seed.reward(tenant_id, name="Hamper", points_required=500)
    await seed.credit(tenant_id, customer_id, 50)

    async with session_factory() as session:
        service = RewardRedemptionService(session)
        with pytest.raises(OutOfStock):
            await service.redeem(tenant_id, customer_id, sold_out_id)
        for reward_id in (hidden_id, future_id, lapsed_id):
            with pytest.raises(RewardUnavailable):
                await service.redeem(tenant_id, customer_id, reward_id)
        with pytest.raises(InsufficientBalance):
            await service.redeem(tenant_id, customer_id, pricey_id)

    assert await seed.balance(tenant_id, customer_id) == 50


@pytest.mark.asyncio
async def test_one_open_redemption_per_reward_and_customer_cap(session_factory, seed) -> None:
    tenant_id = await seed.tenant()
    customer_id = await seed.customer(tenant_id)
    reward_id = await seed.reward(tenant_id, points_required=20, max_redemptions_per_customer=1)
    await seed.credit(tenant_id, customer_id, 100)

    async with session_factory() as session:
        service = RewardRedemptionService(session)
        first = await service.redeem(tenant_id, customer_id, reward_id)
        redemption_id = first.redemption.id

        with pytest.raises(AlreadyProcessed):
            await service.redeem(tenant_id, customer_id, reward_id)

        await service.fulfill(tenant_id, redemption_id, notes="Handed over")
        with pytest.raises(RedemptionLimitReached):
            await service.redeem(tenant_id, customer_id, reward_id)

    assert await seed.balance(tenant_id, customer_id) == 80


@pytest.mark.asyncio
async def test_cancel_refunds_and_frees_the_cap(session_factory, seed) -> None:
    tenant_id = await seed.tenant()
    customer_id = await seed.customer(tenant_id)
    reward_id = await seed.reward(tenant_id, points_required=60, max_redemptions_per_customer=1)
    await seed.credit(tenant_id, customer_id, 100)

    async with session_factory() as session:
        service = RewardRedemptionService(session)
        result = await service.redeem(tenant_id, customer_id, reward_id)
        redemption_id = result.redemption.id

        cancelled = await service.cancel(tenant_id, redemption_id, reason="Customer changed mind")
        assert cancelled.status == RewardRedemptionStatus.CANCELLED
        assert cancelled.cancellation_reason == "Customer changed mind"

        with pytest.raises(AlreadyProcessed):
            await service.cancel(tenant_id, redemption_id)

        refunds = (
            await session.execute(
                select(PointsTransaction).where(
                    PointsTransaction.reward_redemption_id == redemption_id,
                    PointsTransaction.transaction_type == PointsTransactionType.REFUNDED,
                )
            )
        ).scalars().all()
        assert [(row.points, row.description) for row in refunds] == [(60, "Refund: Customer changed mind")]

        again = await service.redeem(tenant_id, customer_id, reward_id)
        assert again.balance == 40

    reward = await _reward(session_factory, reward_id)
    assert reward.total_redemptions == 2


@pytest.mark.asyncio
async def test_verify_then_fulfill(session_factory, seed) -> None:
    tenant_id = await seed.tenant()
    customer_id = await seed.customer(tenant_id)
    reward_id = await seed.reward(tenant_id, points_required=10)
    await seed.credit(tenant_id, customer_id, 10)

    async with session_factory() as session:
        service = RewardRedemptionService(session)
        result = await service.redeem(tenant_id, customer_id, reward_id)
        redemption_id = result.redemption.id
        code = result.redemption.redemption_code

        with pytest.raises(ValidationError):
            await service.verify(tenant_id, "   ")
        with pytest.raises(RedemptionNotFound):
            await service.verify(tenant_id, "RNOPE0000")

        verified = await service.verify(tenant_id, code.lower())
        assert verified.status == RewardRedemptionStatus.VERIFIED
        assert verified.verified_at is not None

        fulfilled = await service.fulfill(tenant_id, redemption_id, notes="Latte")
        assert fulfilled.status == RewardRedemptionStatus.FULFILLED
        assert fulfilled.fulfilment_notes == "Latte"

        with pytest.raises(AlreadyFulfilled):
            await service.verify(tenant_id, code)
        with pytest.raises(AlreadyFulfilled):
            await service.fulfill(tenant_id, redemption_id)
        with pytest.raises(AlreadyFulfilled):
            await service.cancel(tenant_id, redemption_id)


@pytest.mark.asyncio
async def test_cancelled_code_no_longer_verifies(session_factory, seed) -> None:
    tenant_id = await seed.tenant()
    customer_id = await seed.customer(tenant_id)
    reward_id = await seed.reward(tenant_id, points_required=10)
    await seed.credit(tenant_id, customer_id, 10)

    async with session_factory() as session:
        service = RewardRedemptionService(session)
        result = await service.redeem(tenant_id, customer_id, reward_id)
        code = result.redemption.redemption_code
        await service.cancel(tenant_id, result.redemption.id)

        with pytest.raises(RedemptionNotFound):
            await service.verify(tenant_id, code)


@pytest.mark.asyncio
async def test_stale_redemptions_expire_with_refund(session_factory, seed) -> None:
    tenant_id = await seed.tenant()
    customer_id = await seed.customer(tenant_id)
    reward_id = await seed.reward(tenant_id, points_required=40)
    await seed.credit(tenant_id, customer_id, 100)

    async with session_factory() as session:
        service = RewardRedemptionService(session, ttl_hours=24)
        result = await service.redeem(tenant_id, customer_id, reward_id)
        redemption_id = result.redemption.id
        code = result.redemption.redemption_code

        assert await service.expire_stale_redemptions(tenant_id=tenant_id) == {
            "scanned": 0,
            "expired": 0,
            "refundedPoints": 0,
        }
        later = utcnow() + dt.timedelta(hours=25)
        assert await service.expire_stale_redemptions(tenant_id=tenant_id, now=later) == {
            "scanned": 1,
            "expired": 1,
            "refundedPoints": 40,
        }
        assert await service.expire_stale_redemptions(tenant_id=tenant_id, now=later) == {
            "scanned": 0,
            "expired": 0,
            "refundedPoints": 0,
        }

        with pytest.raises(RedemptionExpired):
            await service.verify(tenant_id, code)
        with pytest.raises(AlreadyProcessed):
            await service.fulfill(tenant_id, redemption_id)

    assert await seed.balance(tenant_id, customer_id) == 100


@pytest.mark.asyncio
async def test_verified_redemptions_expire_after_ttl(session_factory, seed) -> None:
    tenant_id = await seed.tenant()
    customer_id = await seed.customer(tenant_id)
    coffee_id = await seed.reward(tenant_id, name="Free coffee", points_required=30)
    cake_id = await seed.reward(tenant_id, name="Free cake", points_required=20)
    await seed.credit(tenant_id, customer_id, 100)

    async with session_factory() as session:
        service = RewardRedemptionService(session, ttl_hours=24)
        coffee = await service.redeem(tenant_id, customer_id, coffee_id)
        cake = await service.redeem(tenant_id, customer_id, cake_id)
        coffee_redemption_id = coffee.redemption.id
        cake_redemption_id = cake.redemption.id
        await service.verify(tenant_id, coffee.redemption.redemption_code)
        await service.verify(tenant_id, cake.redemption.redemption_code)

        await session.execute(
            update(RewardRedemption)
            .where(RewardRedemption.id == coffee_redemption_id)
            .values(created_at=utcnow() - dt.timedelta(hours=25))
        )
        await session.commit()

        with pytest.raises(RedemptionExpired):
            await service.fulfill(tenant_id, coffee_redemption_id)

        swept = await service.expire_stale_redemptions(tenant_id=tenant_id, now=utcnow() + dt.timedelta(hours=25))
        assert swept == {"scanned": 1, "expired": 1, "refundedPoints": 20}

        statuses = {
            row.id: row.status
            for row in (
                await session.execute(
                    select(RewardRedemption)
                    .where(RewardRedemption.id.in_([coffee_redemption_id, cake_redemption_id]))
                    .execution_options(populate_existing=True)
                )
            ).scalars()
        }

    assert statuses == {
        coffee_redemption_id: RewardRedemptionStatus.EXPIRED,
        cake_redemption_id: RewardRedemptionStatus.EXPIRED,
    }
    assert await seed.balance(tenant_id, customer_id) == 100


@pytest.mark.asyncio
async def test_expiry_can_forfeit_points(session_factory, seed) -> None:
    tenant_id = await seed.tenant()
    customer_id = await seed.customer(tenant_id)
    reward_id = await seed.reward(tenant_id, points_required=40)
    await seed.credit(tenant_id, customer_id, 100)

    async with session_factory() as session:
        service = RewardRedemptionService(session, refund_on_expiry=False)
        await service.redeem(tenant_id, customer_id, reward_id)
        outcome = await service.expire_stale_redemptions(now=utcnow() + dt.timedelta(days=2))

    assert outcome == {"scanned": 1, "expired": 1, "refundedPoints": 0}
    assert await seed.balance(tenant_id, customer_id) == 60


@pytest.mark.asyncio
async def test_list_and_stats(session_factory, seed) -> None:
    tenant_id = await seed.tenant()
    ada_id = await seed.customer(tenant_id, phone_number="+447700900001")
    bob_id = await seed.customer(tenant_id, phone_number="+447700900002", first_name="Bob")
    reward_id = await seed.reward(tenant_id, points_required=10)
    await seed.credit(tenant_id, ada_id, 50)
    await seed.credit(tenant_id, bob_id, 50)

    async with session_factory() as session:
        service = RewardRedemptionService(session)
        ada = await service.redeem(tenant_id, ada_id, reward_id)
        await service.fulfill(tenant_id, ada.redemption.id)
        await service.redeem(tenant_id, bob_id, reward_id)

        assert len(await service.list_redemptions(tenant_id)) == 2
        pending = await service.list_redemptions(tenant_id, status=RewardRedemptionStatus.PENDING)
        assert [row.customer_id for row in pending] == [bob_id]
        assert len(await service.list_redemptions(tenant_id, customer_id=ada_id)) == 1

        stats = await service.redemption_stats(tenant_id)

    assert stats.total == 2
    assert stats.by_status["fulfilled"] == 1
    assert stats.by_status["pending"] == 1
    assert stats.by_status["cancelled"] == 0
    assert stats.as_dict()["completionRate"] == 50.0


async def _reward(session_factory, reward_id) -> Reward:
    async with session_factory() as session:
        reward = await session.get(Reward, reward_id)
        assert reward is not None
        return reward
