"""Customer purchase claims: submission guards and vendor review."""

import asyncio
import datetime as dt
from decimal import Decimal

import pytest

from pointledger_api.domain.loyalty.errors import (
    AlreadyProcessed,
    CustomerBlocked,
    CustomerNotFound,
    DuplicateSubmission,
    ExpiredWindow,
    FutureDatedPurchase,
    InvalidDate,
    RateLimited,
    TenantNotFound,
    ValidationError,
)
from pointledger_api.models.purchase import PurchaseClaimStatus, PurchaseSource
from pointledger_api.services.loyalty import PurchaseClaimService, PurchaseRecorder, parse_purchase_date, start_of_day
from pointledger_api.services.notifications import NotificationService


def _hours_ago(hours: int) -> str:
    return (dt.datetime.now(dt.timezone.utc) - dt.timedelta(hours=hours)).isoformat()


def test_parse_purchase_date_accepts_dates_and_iso_strings() -> None:
    assert parse_purchase_date("2026-03-01") == dt.datetime(2026, 3, 1, tzinfo=dt.timezone.utc)
    assert parse_purchase_date("2026-03-01T10:30:00Z") == dt.datetime(2026, 3, 1, 10, 30, tzinfo=dt.timezone.utc)
    assert parse_purchase_date(dt.date(2026, 3, 1)).tzinfo is not None
    with pytest.raises(InvalidDate):
        parse_purchase_date("yesterday")
    with pytest.raises(InvalidDate):
        parse_purchase_date(None)


def test_start_of_day_uses_tenant_timezone() -> None:
    now = dt.datetime(2026, 6, 1, 2, 0, tzinfo=dt.timezone.utc)
    # 03:00 in Lagos, so the local day started at 23:00 UTC the previous evening.
    assert start_of_day(now, "Africa/Lagos") == dt.datetime(2026, 5, 31, 23, 0, tzinfo=dt.timezone.utc)
    assert start_of_day(now, "Not/AZone") == dt.datetime(2026, 6, 1, tzinfo=dt.timezone.utc)


@pytest.mark.asyncio
async def test_submit_claim_by_vendor_code(session_factory, seed, chat_backend) -> None:
    tenant_id = await seed.tenant(vendor_code="CAFE01")
    customer_id = await seed.customer(tenant_id, phone_number="+447700900001")

    async with session_factory() as session:
        service = PurchaseClaimService(session, notifier=NotificationService(session, backend=chat_backend))
        claim = await service.submit_claim(
            phone_number="447700900001",
            amount_major="18.50",
            purchase_date=_hours_ago(2),
            vendor_code="cafe01",
            receipt_url="https://receipts.example/1.jpg",
            customer_name="Ada",
        )

    assert claim.tenant_id == tenant_id
    assert claim.customer_id == customer_id
    assert claim.status == PurchaseClaimStatus.PENDING
    assert claim.amount_major == Decimal("18.50")
    assert claim.channel == "physical_store"
    assert claim.metadata_json["customerName"] == "Ada"
    assert claim.expires_at - claim.created_at == dt.timedelta(hours=48)
    assert [message["metadata"]["event"] for message in chat_backend.sent_messages] == ["claim-submitted"]


@pytest.mark.asyncio
async def test_submit_claim_guards(session_factory, seed) -> None:
    tenant_id = await seed.tenant()
    await seed.customer(tenant_id, phone_number="+447700900001")
    await seed.customer(tenant_id, phone_number="+447700900009", blocked=True)

    async with session_factory() as session:
        service = PurchaseClaimService(session)

        with pytest.raises(TenantNotFound):
            await service.submit_claim(
                phone_number="+447700900001", amount_major=5, purchase_date=_hours_ago(1), vendor_code="NOPE"
            )
        with pytest.raises(ValidationError):
            await service.submit_claim(phone_number="+447700900001", amount_major=5, purchase_date=_hours_ago(1))
        with pytest.raises(CustomerNotFound):
            await service.submit_claim(
                phone_number="+447700900555", amount_major=5, purchase_date=_hours_ago(1), tenant_id=tenant_id
            )
        with pytest.raises(CustomerBlocked):
            await service.submit_claim(
                phone_number="+447700900009", amount_major=5, purchase_date=_hours_ago(1), tenant_id=tenant_id
            )
        with pytest.raises(FutureDatedPurchase):
            await service.submit_claim(
                phone_number="+447700900001", amount_major=5, purchase_date=_hours_ago(-3), tenant_id=tenant_id
            )
        with pytest.raises(ExpiredWindow):
            await service.submit_claim(
                phone_number="+447700900001", amount_major=5, purchase_date=_hours_ago(24 * 8), tenant_id=tenant_id
            )
        with pytest.raises(ValidationError):
            await service.submit_claim(
                phone_number="+447700900001",
                amount_major=5,
                purchase_date=_hours_ago(1),
                tenant_id=tenant_id,
                channel="carrier-pigeon",
            )


@pytest.mark.asyncio
async def test_fourth_claim_in_a_day_is_rate_limited(session_factory, seed) -> None:
    tenant_id = await seed.tenant()
    await seed.customer(tenant_id)

    async with session_factory() as session:
        service = PurchaseClaimService(session)
        for amount in ("10.00", "11.00", "12.00"):
            await service.submit_claim(
                phone_number="+447700900001",
                amount_major=amount,
                purchase_date=_hours_ago(1),
                tenant_id=tenant_id,
            )
        with pytest.raises(RateLimited):
            await service.submit_claim(
                phone_number="+447700900001",
                amount_major="13.00",
                purchase_date=_hours_ago(1),
                tenant_id=tenant_id,
            )


@pytest.mark.asyncio
async def test_identical_claim_is_a_duplicate(session_factory, seed) -> None:
    tenant_id = await seed.tenant()
    await seed.customer(tenant_id)
    purchase_date = _hours_ago(3)

    async with session_factory() as session:
        service = PurchaseClaimService(session)
        await service.submit_claim(
            phone_number="+447700900001", amount_major="9.99", purchase_date=purchase_date, tenant_id=tenant_id
        )
        with pytest.raises(DuplicateSubmission):
            await service.submit_claim(
                phone_number="+447700900001", amount_major="9.99", purchase_date=purchase_date, tenant_id=tenant_id
            )


@pytest.mark.asyncio
async def test_approve_claim_credits_points_once(session_factory, seed) -> None:
    tenant_id = await seed.tenant()
    customer_id = await seed.customer(tenant_id)

    async with session_factory() as session:
        service = PurchaseClaimService(session)
        claim = await service.submit_claim(
            phone_number="+447700900001", amount_major="25.40", purchase_date=_hours_ago(5), tenant_id=tenant_id
        )
        claim_id = claim.id

        review = await service.approve_claim(tenant_id, claim_id)
        assert review.claim.status == PurchaseClaimStatus.APPROVED
        assert review.claim.points_awarded == 25
        assert review.purchase is not None
        assert review.purchase.purchase.source == PurchaseSource.CLAIM
        assert review.claim.purchase_id == review.purchase.purchase.id

        with pytest.raises(AlreadyProcessed) as excinfo:
            await service.approve_claim(tenant_id, claim_id)
        assert excinfo.value.message == "Claim already approved"
        with pytest.raises(AlreadyProcessed):
            await service.reject_claim(tenant_id, claim_id, reason="Too late")

        purchases = await PurchaseRecorder(session).list_purchases(tenant_id, customer_id=customer_id)
        assert len(purchases) == 1

    assert await seed.balance(tenant_id, customer_id) == 25


@pytest.mark.asyncio
async def test_concurrent_approvals_credit_once(session_factory, seed) -> None:
    tenant_id = await seed.tenant()
    customer_id = await seed.customer(tenant_id)

    async with session_factory() as session:
        claim = await PurchaseClaimService(session).submit_claim(
            phone_number="+447700900001", amount_major="40", purchase_date=_hours_ago(1), tenant_id=tenant_id
        )
        claim_id = claim.id

    async def approve() -> bool:
        async with session_factory() as session:
            try:
                await PurchaseClaimService(session).approve_claim(tenant_id, claim_id)
            except AlreadyProcessed:
                return False
            return True

    outcomes = await asyncio.gather(approve(), approve(), approve())

    assert outcomes.count(True) == 1
    assert await seed.balance(tenant_id, customer_id) == 40


@pytest.mark.asyncio
async def test_reject_claim_requires_reason(session_factory, seed) -> None:
    tenant_id = await seed.tenant()
    customer_id = await seed.customer(tenant_id)

    async with session_factory() as session:
        service = PurchaseClaimService(session)
        claim = await service.submit_claim(
            phone_number="+447700900001", amount_major="7", purchase_date=_hours_ago(1), tenant_id=tenant_id
        )
        claim_id = claim.id

        with pytest.raises(ValidationError):
            await service.reject_claim(tenant_id, claim_id, reason="  ")
        review = await service.reject_claim(tenant_id, claim_id, reason="No matching sale")

    assert review.claim.status == PurchaseClaimStatus.REJECTED
    assert review.claim.rejection_reason == "No matching sale"
    assert review.purchase is None
    assert await seed.balance(tenant_id, customer_id) == 0


@pytest.mark.asyncio
async def test_expire_stale_claims(session_factory, seed) -> None:
    tenant_id = await seed.tenant()
    await seed.customer(tenant_id)

    async with session_factory() as session:
        service = PurchaseClaimService(session)
        claim = await service.submit_claim(
            phone_number="+447700900001", amount_major="7", purchase_date=_hours_ago(1), tenant_id=tenant_id
        )
        claim_id = claim.id

        assert await service.expire_stale_claims() == {"expired": 0}
        later = dt.datetime.now(dt.timezone.utc) + dt.timedelta(hours=49)
        assert await service.expire_stale_claims(now=later) == {"expired": 1}

        refreshed = await service.get_claim(tenant_id, claim_id)
        assert refreshed.status == PurchaseClaimStatus.EXPIRED
        with pytest.raises(AlreadyProcessed):
            await service.approve_claim(tenant_id, claim_id)


@pytest.mark.asyncio
async def test_list_claims_flags_risky_submissions(session_factory, seed) -> None:
    tenant_id = await seed.tenant(settings={"claimHighAmountThreshold": "100"})
    await seed.customer(tenant_id)

    async with session_factory() as session:
        service = PurchaseClaimService(session)
        await service.submit_claim(
            phone_number="+447700900001", amount_major="150", purchase_date=_hours_ago(2), tenant_id=tenant_id
        )
        await service.submit_claim(
            phone_number="+447700900001",
            amount_major="20",
            purchase_date=_hours_ago(1),
            tenant_id=tenant_id,
            receipt_url="https://receipts.example/2.jpg",
        )

        views = await service.list_claims(tenant_id)

    assert len(views) == 2
    flags = {str(view.claim.amount_major): set(view.fraud_flags) for view in views}
    assert flags["150.00"] == {"high_amount", "new_customer", "no_receipt"}
    assert flags["20.00"] == {"new_customer"}
    assert all(view.total_claims == 2 and view.rejection_rate == 0 for view in views)
