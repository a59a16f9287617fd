"""Customer-submitted purchase claims and vendor review.

``pending -> approved | rejected | expired``. A claim leaves ``pending`` only
through a conditional UPDATE on its current status, so concurrent reviewers
cannot both approve the same claim.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pointledger_api.core.clock import ensure_utc, utcnow
from pointledger_api.core.settings import get_settings
from pointledger_api.domain.loyalty.errors import (
    AlreadyProcessed,
    ClaimNotFound,
    CustomerBlocked,
    CustomerNotFound,
    DuplicateSubmission,
    ExpiredWindow,
    FutureDatedPurchase,
    InvalidAmount,
    InvalidDate,
    LedgerError,
    RateLimited,
    ValidationError,
)
from pointledger_api.models.customer import Customer
from pointledger_api.models.purchase import PurchaseClaim, PurchaseClaimStatus, PurchaseSource
from pointledger_api.observability.loyalty import get_loyalty_store
from pointledger_api.services.notifications import NotificationService, Notifier, dispatch_loyalty_event
from pointledger_api.services.tenants import DatabaseTenantConfigProvider, TenantConfigProvider

from .customers import phone_variants
from .ledger import LedgerStore, clamp_page_size
from .purchases import PurchaseRecorder, PurchaseResult

NEW_CUSTOMER_PURCHASES = 3
HIGH_REJECTION_RATE = 30
REPEATED_AMOUNT_WINDOW = 5
REPEATED_AMOUNT_MIN_CLAIMS = 3


@dataclass
class ClaimReview:
    claim: PurchaseClaim
    purchase: PurchaseResult | None = None


@dataclass
class ClaimView:
    """A claim annotated with fraud-risk flags for reviewers."""

    claim: PurchaseClaim
    fraud_flags: list[str] = field(default_factory=list)
    total_claims: int = 0
    rejected_claims: int = 0

    @property
    def rejection_rate(self) -> int:
        if not self.total_claims:
            return 0
        return round(self.rejected_claims / self.total_claims * 100)


def parse_purchase_date(value: Any) -> datetime:
    """Accept datetimes, dates and ISO strings; dates mean midnight UTC."""

    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    if isinstance(value, str) and value.strip():
        text = value.strip()
        try:
            if len(text) == 10:
                return datetime.combine(date.fromisoformat(text), time.min, tzinfo=timezone.utc)
            return ensure_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
        except ValueError as exc:
            raise InvalidDate("Invalid purchase date", purchase_date=value) from exc
    raise InvalidDate("Invalid purchase date", purchase_date=value)


def start_of_day(now: datetime, tz_name: str | None) -> datetime:
    try:
        zone = ZoneInfo(tz_name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown tenant timezone, using UTC", timezone=tz_name)
        zone = ZoneInfo("UTC")
    local = now.astimezone(zone)
    return datetime.combine(local.date(), time.min, tzinfo=zone).astimezone(timezone.utc)


class PurchaseClaimService:
    """Accept, rate-limit and review purchase claims."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        config: TenantConfigProvider | None = None,
        notifier: Notifier | None = None,
        ledger: LedgerStore | None = None,
        recorder: PurchaseRecorder | None = None,
    ) -> None:
        self._db = db_session
        self._settings = get_settings()
        self._config = config or DatabaseTenantConfigProvider(db_session)
        self._notifier = notifier or NotificationService(db_session)
        self._ledger = ledger or LedgerStore(db_session)
        self._recorder = recorder or PurchaseRecorder(
            db_session,
            config=self._config,
            notifier=self._notifier,
            ledger=self._ledger,
        )
        self._observability = get_loyalty_store()

    async def submit_claim(
        self,
        *,
        phone_number: str,
        amount_major: Any,
        purchase_date: Any,
        tenant_id: UUID | None = None,
        vendor_code: str | None = None,
        channel: str | None = None,
        receipt_url: str | None = None,
        description: str | None = None,
        customer_name: str | None = None,
        submitted_via: str = "whatsapp",
    ) -> PurchaseClaim:
        try:
            claim = await self._submit(
                phone_number=phone_number,
                amount_major=amount_major,
                purchase_date=purchase_date,
                tenant_id=tenant_id,
                vendor_code=vendor_code,
                channel=channel,
                receipt_url=receipt_url,
                description=description,
                customer_name=customer_name,
                submitted_via=submitted_via,
            )
        except LedgerError as exc:
            self._observability.record_failure("claim_submit", exc.code)
            logger.info("Purchase claim refused", code=exc.code, tenant_id=str(tenant_id) if tenant_id else vendor_code)
            raise

        self._observability.record_claim_event("submitted")
        logger.info(
            "Purchase claim submitted",
            tenant_id=str(claim.tenant_id),
            customer_id=str(claim.customer_id),
            claim_id=str(claim.id),
            amount=str(claim.amount_major),
        )
        await dispatch_loyalty_event(
            self._notifier,
            self._config,
            tenant_id=claim.tenant_id,
            customer_id=claim.customer_id,
            event_kind="claim-submitted",
            payload={"amount": str(claim.amount_major), "currency": claim.currency, "claim_id": str(claim.id)},
        )
        return claim

    async def _submit(
        self,
        *,
        phone_number: str,
        amount_major: Any,
        purchase_date: Any,
        tenant_id: UUID | None,
        vendor_code: str | None,
        channel: str | None,
        receipt_url: str | None,
        description: str | None,
        customer_name: str | None,
        submitted_via: str,
    ) -> PurchaseClaim:
        if not (phone_number or "").strip():
            raise ValidationError("Phone number is required")
        if tenant_id is None:
            if not vendor_code:
                raise ValidationError("Tenant id or vendor code is required")
            tenant = await DatabaseTenantConfigProvider(self._db).get_tenant_by_vendor_code(vendor_code)
            tenant_id = tenant.id

        amount = _claim_amount(amount_major)
        channel = (channel or self._settings.claim_default_channel).strip().lower()
        if self._settings.claim_channels and channel not in self._settings.claim_channels:
            raise ValidationError("Unsupported purchase channel", channel=channel)

        async with self._ledger.atomic():
            customer = await self._find_customer(tenant_id, phone_number)
            if customer.is_blocked:
                raise CustomerBlocked("Customer is blocked from earning points", customer_id=customer.id)

            now = utcnow()
            purchased_at = parse_purchase_date(purchase_date)
            if purchased_at > now:
                raise FutureDatedPurchase("Purchase date cannot be in the future", purchase_date=purchased_at)
            window = timedelta(days=self._settings.claim_submission_window_days)
            if purchased_at < now - window:
                raise ExpiredWindow(
                    f"Claims must be submitted within {window.days} days of the purchase",
                    purchase_date=purchased_at,
                )

            day_start = start_of_day(now, await self._config.get_timezone(tenant_id))
            today_stmt = select(func.count(PurchaseClaim.id)).where(
                PurchaseClaim.customer_id == customer.id,
                PurchaseClaim.created_at >= day_start,
            )
            claims_today = int((await self._db.execute(today_stmt)).scalar_one())
            limit = self._settings.claim_daily_limit
            if claims_today >= limit:
                raise RateLimited(f"Daily purchase claim limit reached ({limit} per day)", limit=limit)

            duplicate_stmt = select(PurchaseClaim.id).where(
                PurchaseClaim.customer_id == customer.id,
                PurchaseClaim.tenant_id == tenant_id,
                PurchaseClaim.amount_major == amount,
                PurchaseClaim.purchase_date == purchased_at,
                PurchaseClaim.channel == channel,
                PurchaseClaim.created_at >= now - timedelta(minutes=self._settings.claim_duplicate_window_minutes),
            )
            if (await self._db.execute(duplicate_stmt)).first() is not None:
                raise DuplicateSubmission(
                    "A similar claim was already submitted recently",
                    amount=amount,
                    channel=channel,
                )

            metadata: dict[str, Any] = {"submittedVia": submitted_via}
            if customer_name:
                metadata["customerName"] = customer_name.strip()
            claim = PurchaseClaim(
                tenant_id=tenant_id,
                customer_id=customer.id,
                amount_major=amount,
                currency=await self._config.get_currency(tenant_id),
                purchase_date=purchased_at,
                channel=channel,
                receipt_url=(receipt_url or "").strip() or None,
                description=description,
                status=PurchaseClaimStatus.PENDING,
                expires_at=now + timedelta(hours=self._settings.claim_processing_window_hours),
                metadata_json=metadata,
                created_at=now,
                updated_at=now,
            )
            self._db.add(claim)
            await self._db.flush()
        return claim

    async def approve_claim(
        self,
        tenant_id: UUID,
        claim_id: UUID,
        *,
        approved_by_user_id: UUID | None = None,
        points_override: int | None = None,
    ) -> ClaimReview:
        """Approve a pending claim and credit its points as a ``claim`` purchase."""

        try:
            async with self._ledger.atomic():
                now = utcnow()
                await self._transition(
                    tenant_id,
                    claim_id,
                    status=PurchaseClaimStatus.APPROVED,
                    approved_by_user_id=approved_by_user_id,
                    approved_at=now,
                    updated_at=now,
                )
                claim = await self._load_claim(tenant_id, claim_id)
                result = await self._recorder.record_in_unit(
                    tenant_id,
                    claim.customer_id,
                    amount_major=claim.amount_major,
                    points_override=points_override,
                    purchased_at=claim.purchase_date,
                    notes=f"Approved purchase claim {claim.id}",
                    logged_by_user_id=approved_by_user_id,
                    source=PurchaseSource.CLAIM,
                    logged_via="claim_approval",
                    transaction_metadata={"claimId": str(claim.id)},
                )
                claim.purchase_id = result.purchase.id
                claim.points_awarded = result.points_awarded
                await self._db.flush()
        except LedgerError as exc:
            self._observability.record_failure("claim_approve", exc.code)
            raise

        self._observability.record_claim_event("approved")
        logger.info(
            "Purchase claim approved",
            tenant_id=str(tenant_id),
            claim_id=str(claim_id),
            purchase_id=str(result.purchase.id),
            points=result.points_awarded,
        )
        await dispatch_loyalty_event(
            self._notifier,
            self._config,
            tenant_id=tenant_id,
            customer_id=claim.customer_id,
            event_kind="claim-approved",
            payload={
                "points": result.points_awarded,
                "balance": result.balance,
                "amount": str(claim.amount_major),
                "currency": claim.currency,
                "claim_id": str(claim.id),
            },
        )
        return ClaimReview(claim=claim, purchase=result)

    async def reject_claim(
        self,
        tenant_id: UUID,
        claim_id: UUID,
        *,
        reason: str,
        rejected_by_user_id: UUID | None = None,
    ) -> ClaimReview:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("Rejection reason is required")

        try:
            async with self._ledger.atomic():
                await self._transition(
                    tenant_id,
                    claim_id,
                    status=PurchaseClaimStatus.REJECTED,
                    rejection_reason=reason,
                    updated_at=utcnow(),
                )
        except LedgerError as exc:
            self._observability.record_failure("claim_reject", exc.code)
            raise
        claim = await self._load_claim(tenant_id, claim_id)

        self._observability.record_claim_event("rejected")
        logger.info(
            "Purchase claim rejected",
            tenant_id=str(tenant_id),
            claim_id=str(claim_id),
            reviewer=str(rejected_by_user_id) if rejected_by_user_id else None,
        )
        await dispatch_loyalty_event(
            self._notifier,
            self._config,
            tenant_id=tenant_id,
            customer_id=claim.customer_id,
            event_kind="claim-rejected",
            payload={"reason": reason, "amount": str(claim.amount_major), "currency": claim.currency},
        )
        return ClaimReview(claim=claim)

    async def _transition(self, tenant_id: UUID, claim_id: UUID, **values: Any) -> None:
        stmt = (
            update(PurchaseClaim)
            .where(
                PurchaseClaim.id == claim_id,
                PurchaseClaim.tenant_id == tenant_id,
                PurchaseClaim.status == PurchaseClaimStatus.PENDING,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if (await self._db.execute(stmt)).rowcount:
            return
        claim = await self._load_claim(tenant_id, claim_id)
        raise AlreadyProcessed(f"Claim already {claim.status.value}", claim_id=claim_id, status=claim.status.value)

    async def expire_stale_claims(
        self,
        *,
        tenant_id: UUID | None = None,
        now: datetime | None = None,
    ) -> dict[str, int]:
        """Move pending claims past their review window to ``expired``."""

        now = now or utcnow()
        async with self._ledger.atomic():
            stmt = update(PurchaseClaim).where(
                PurchaseClaim.status == PurchaseClaimStatus.PENDING,
                PurchaseClaim.expires_at <= now,
            )
            if tenant_id is not None:
                stmt = stmt.where(PurchaseClaim.tenant_id == tenant_id)
            stmt = stmt.values(status=PurchaseClaimStatus.EXPIRED, updated_at=now).execution_options(
                synchronize_session=False
            )
            expired = int((await self._db.execute(stmt)).rowcount or 0)
        for _ in range(expired):
            self._observability.record_claim_event("expired")
        if expired:
            logger.info("Stale purchase claims expired", expired=expired)
        return {"expired": expired}

    async def list_claims(
        self,
        tenant_id: UUID,
        *,
        status: PurchaseClaimStatus | None = PurchaseClaimStatus.PENDING,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[ClaimView]:
        stmt = select(PurchaseClaim).where(PurchaseClaim.tenant_id == tenant_id)
        if status is not None:
            stmt = stmt.where(PurchaseClaim.status == status)
        stmt = (
            stmt.order_by(PurchaseClaim.created_at.desc(), PurchaseClaim.id.desc())
            .offset(max(offset, 0))
            .limit(clamp_page_size(limit))
        )
        claims = list((await self._db.execute(stmt)).scalars().all())
        if not claims:
            return []

        threshold = (await self._config.get_settings(tenant_id)).claim_high_amount_threshold
        history: dict[UUID, tuple[int, int, list[Decimal], int]] = {}
        views: list[ClaimView] = []
        for claim in claims:
            if claim.customer_id not in history:
                history[claim.customer_id] = await self._customer_history(claim.customer_id)
            total, rejected, recent_amounts, purchases = history[claim.customer_id]

            flags: list[str] = []
            if Decimal(str(claim.amount_major)) > threshold:
                flags.append("high_amount")
            if purchases < NEW_CUSTOMER_PURCHASES:
                flags.append("new_customer")
            if not claim.receipt_url:
                flags.append("no_receipt")
            if total and rejected / total * 100 > HIGH_REJECTION_RATE:
                flags.append("high_rejection_rate")
            if total >= REPEATED_AMOUNT_MIN_CLAIMS and len(set(recent_amounts)) == 1:
                flags.append("repeated_amount")
            views.append(ClaimView(claim=claim, fraud_flags=flags, total_claims=total, rejected_claims=rejected))
        return views

    async def _customer_history(self, customer_id: UUID) -> tuple[int, int, list[Decimal], int]:
        counts_stmt = select(
            func.count(PurchaseClaim.id),
            func.count(PurchaseClaim.id).filter(PurchaseClaim.status == PurchaseClaimStatus.REJECTED),
        ).where(PurchaseClaim.customer_id == customer_id)
        total, rejected = (await self._db.execute(counts_stmt)).one()
        recent_stmt = (
            select(PurchaseClaim.amount_major)
            .where(PurchaseClaim.customer_id == customer_id)
            .order_by(PurchaseClaim.created_at.desc())
            .limit(REPEATED_AMOUNT_WINDOW)
        )
        recent = [Decimal(str(value)) for value in (await self._db.execute(recent_stmt)).scalars().all()]
        purchases = (await self._db.execute(select(Customer.total_purchases).where(Customer.id == customer_id))).scalar()
        return int(total), int(rejected or 0), recent, int(purchases or 0)

    async def get_claim(self, tenant_id: UUID, claim_id: UUID) -> PurchaseClaim:
        return await self._load_claim(tenant_id, claim_id)

    async def _load_claim(self, tenant_id: UUID, claim_id: UUID) -> PurchaseClaim:
        stmt = (
            select(PurchaseClaim)
            .where(PurchaseClaim.id == claim_id, PurchaseClaim.tenant_id == tenant_id)
            .execution_options(populate_existing=True)
        )
        claim = (await self._db.execute(stmt)).scalar_one_or_none()
        if claim is None:
            raise ClaimNotFound("Claim not found", claim_id=claim_id)
        return claim

    async def _find_customer(self, tenant_id: UUID, phone_number: str) -> Customer:
        stmt = select(Customer).where(
            Customer.tenant_id == tenant_id,
            Customer.phone_number.in_(phone_variants(phone_number)),
        )
        customer = (await self._db.execute(stmt)).scalars().first()
        if customer is None:
            raise CustomerNotFound("Customer not registered with this business", tenant_id=tenant_id)
        return customer


def _claim_amount(value: Any) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise InvalidAmount("Amount must be a number", amount=value) from exc
    if not amount.is_finite() or amount <= 0:
        raise InvalidAmount("Amount must be greater than 0", amount=value)
    return amount.quantize(Decimal("0.01"))


__all__ = [
    "ClaimReview",
    "ClaimView",
    "PurchaseClaimService",
    "parse_purchase_date",
    "start_of_day",
]
