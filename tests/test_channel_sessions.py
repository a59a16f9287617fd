import pytest

from pointledger_api.domain.loyalty.errors import ValidationError
from pointledger_api.services.channel_sessions import ChannelSessionService


@pytest.mark.asyncio
async def test_route_switch_and_clear(session_factory, seed) -> None:
    cafe_id = await seed.tenant(name="Corner Cafe", vendor_code="CAFE01")
    bakery_id = await seed.tenant(name="Bakery", vendor_code="BAKE01")

    async with session_factory() as session:
        service = ChannelSessionService(session)
        assert await service.get_active_tenant("+447700900001") is None

        await service.set_active_tenant("+447700900001", cafe_id)
        assert await service.get_active_tenant(" +447700900001 ") == cafe_id

        await service.set_active_tenant("+447700900001", bakery_id)
        assert await service.get_active_tenant("+447700900001") == bakery_id
        assert await service.get_active_tenant("+447700900001", channel="sms") is None

        assert await service.clear("+447700900001") is True
        assert await service.clear("+447700900001") is False
        assert await service.get_active_tenant("+447700900001") is None


@pytest.mark.asyncio
async def test_identity_is_required(session_factory, seed) -> None:
    tenant_id = await seed.tenant()
    async with session_factory() as session:
        service = ChannelSessionService(session)
        with pytest.raises(ValidationError):
            await service.set_active_tenant("  ", tenant_id)
        with pytest.raises(ValidationError):
            await service.get_active_tenant("")
