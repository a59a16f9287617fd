import datetime as dt
from decimal import Decimal

import pytest

from pointledger_api.core.clock import utcnow
from pointledger_api.domain.loyalty.errors import RewardNotFound, ValidationError
from pointledger_api.services.loyalty import RewardCatalogService


@pytest.mark.asyncio
async def test_suggest_points_uses_tenant_burn_rate(session_factory, seed) -> None:
    default_id = await seed.tenant(vendor_code="CAFE01")
    generous_id = await seed.tenant(vendor_code="CAFE02", settings={"burnRate": "0.05"})
    naira_id = await seed.tenant(vendor_code="LAGOS1", currency="NGN")

    async with session_factory() as session:
        service = RewardCatalogService(session)
        default = await service.suggest_points(default_id, "5")
        generous = await service.suggest_points(generous_id, Decimal("5"))
        naira = await service.suggest_points(naira_id, 1500)

    assert default.points_required == 500
    assert default.as_dict() == {
        "pointsRequired": 500,
        "pointValue": "0.01",
        "minimumRewardValue": "5",
        "currency": "GBP",
    }
    assert generous.points_required == 100
    # One naira point is worth 1000 * 0.01.
    assert naira.points_required == 150


@pytest.mark.asyncio
async def test_suggest_points_enforces_minimum_value(session_factory, seed) -> None:
    tenant_id = await seed.tenant(settings={"minRewardValue": "8"})

    async with session_factory() as session:
        service = RewardCatalogService(session)
        with pytest.raises(ValidationError):
            await service.suggest_points(tenant_id, "6")
        with pytest.raises(ValidationError):
            await service.suggest_points(tenant_id, "free")
        assert (await service.suggest_points(tenant_id, "8")).minimum_reward_value == Decimal("8")


@pytest.mark.asyncio
async def test_create_reward_defaults_points_from_value(session_factory, seed) -> None:
    tenant_id = await seed.tenant()

    async with session_factory() as session:
        service = RewardCatalogService(session)
        reward = await service.create_reward(tenant_id, name="  Cake slice ", monetary_value_major="6.00", stock_quantity=5)

        with pytest.raises(ValidationError):
            await service.create_reward(tenant_id, name="Mystery")
        with pytest.raises(ValidationError):
            await service.create_reward(tenant_id, name="", points_required=10)
        with pytest.raises(ValidationError):
            await service.create_reward(tenant_id, name="Mug", points_required=10, colour="blue")
        with pytest.raises(ValidationError):
            await service.create_reward(tenant_id, name="Mug", points_required=0)

    assert reward.name == "Cake slice"
    assert reward.points_required == 600
    assert reward.monetary_value_major == Decimal("6.00")
    assert reward.stock_quantity == 5
    assert reward.is_active is True


@pytest.mark.asyncio
async def test_invalid_update_leaves_reward_unchanged(session_factory, seed) -> None:
    tenant_id = await seed.tenant()
    reward_id = await seed.reward(tenant_id, points_required=60)
    now = utcnow()

    async with session_factory() as session:
        service = RewardCatalogService(session)
        with pytest.raises(ValidationError):
            await service.update_reward(tenant_id, reward_id, {"points_required": 0})
        with pytest.raises(ValidationError):
            await service.update_reward(
                tenant_id,
                reward_id,
                {"valid_from": now, "valid_until": now - dt.timedelta(days=1)},
            )
        with pytest.raises(ValidationError):
            await service.update_reward(tenant_id, reward_id, {"monetary_value_major": "2"})

        unchanged = await service.get_reward(tenant_id, reward_id)
        assert unchanged.points_required == 60
        assert unchanged.valid_until is None

        updated = await service.update_reward(tenant_id, reward_id, {"points_required": 75, "name": "Large coffee"})

    assert updated.points_required == 75
    assert updated.name == "Large coffee"


@pytest.mark.asyncio
async def test_soft_delete_and_active_listing(session_factory, seed) -> None:
    tenant_id = await seed.tenant()
    coffee_id = await seed.reward(tenant_id, name="Free coffee", points_required=60)
    await seed.reward(tenant_id, name="Mug", points_required=200, stock_quantity=0)
    await seed.reward(tenant_id, name="Retired", points_required=10, is_active=False)
    await seed.reward(tenant_id, name="Winter special", points_required=30, valid_from=utcnow() + dt.timedelta(days=10))
    cake_id = await seed.reward(tenant_id, name="Cake", points_required=90)

    async with session_factory() as session:
        service = RewardCatalogService(session)
        assert [reward.name for reward in await service.list_rewards(tenant_id)] == [
            "Retired",
            "Winter special",
            "Free coffee",
            "Cake",
            "Mug",
        ]
        active = await service.list_rewards(tenant_id, active_only=True)
        assert [reward.id for reward in active] == [coffee_id, cake_id]

        deleted = await service.delete_reward(tenant_id, cake_id)
        assert deleted.deleted_at is not None
        assert deleted.is_active is False
        with pytest.raises(RewardNotFound):
            await service.get_reward(tenant_id, cake_id)
        assert [reward.id for reward in await service.list_rewards(tenant_id, active_only=True)] == [coffee_id]
