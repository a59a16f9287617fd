"""API endpoints for the tenant loyalty ledger: customers, purchases, rewards and redemptions."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from pointledger_api.api.dependencies.security import require_api_key
from pointledger_api.core.clock import utcnow
from pointledger_api.db.session import get_session
from pointledger_api.domain.loyalty.errors import CustomerNotFound, TenantNotFound
from pointledger_api.models.customer import Customer
from pointledger_api.models.loyalty import (
    PointsTransaction,
    PointsTransactionType,
    Reward,
    RewardRedemption,
    RewardRedemptionStatus,
)
from pointledger_api.models.purchase import Purchase, PurchaseClaim, PurchaseClaimStatus
from pointledger_api.models.tenant import Tenant
from pointledger_api.services.channel_sessions import DEFAULT_CHANNEL, ChannelSessionService
from pointledger_api.services.loyalty import (
    ClaimReview,
    ClaimView,
    CustomerEnrollmentService,
    LedgerStore,
    PurchaseClaimService,
    PurchaseRecorder,
    RewardCatalogService,
    RewardRedemptionService,
)
from pointledger_api.services.notifications import NotificationService, Notifier
from pointledger_api.services.tenants import DatabaseTenantConfigProvider, TenantLoyaltySettings


router = APIRouter(prefix="/loyalty", tags=["loyalty"])


def get_notifier(db: AsyncSession = Depends(get_session)) -> Notifier:
    """Notifier used by request handlers; overridden in tests."""

    return NotificationService(db)


class EnrollRequest(BaseModel):
    phoneNumber: str = Field(min_length=1)
    firstName: Optional[str] = None
    lastName: Optional[str] = None
    channel: str = DEFAULT_CHANNEL


class CustomerResponse(BaseModel):
    id: UUID
    tenantId: UUID
    phoneNumber: str
    firstName: Optional[str]
    lastName: Optional[str]
    loyaltyStatus: str
    blockedReason: Optional[str]
    totalPurchases: int
    totalSpent: Decimal
    lastPurchaseAt: Optional[datetime]
    createdAt: datetime


class EnrollResponse(BaseModel):
    customer: CustomerResponse
    created: bool
    welcomeBonusPoints: int
    balance: int


class BlockRequest(BaseModel):
    reason: Optional[str] = None


class BalanceResponse(BaseModel):
    customerId: UUID
    currentBalance: int
    totalPointsEarned: int
    totalPointsRedeemed: int
    totalPointsExpired: int
    lastEarnedAt: Optional[datetime]
    lastRedeemedAt: Optional[datetime]


class TransactionResponse(BaseModel):
    id: UUID
    transactionType: str
    points: int
    description: Optional[str]
    metadata: dict[str, Any]
    expiresAt: Optional[datetime]
    expired: bool
    purchaseId: Optional[UUID]
    rewardRedemptionId: Optional[UUID]
    createdAt: datetime


class TransactionPageResponse(BaseModel):
    items: List[TransactionResponse]
    total: int
    limit: int
    offset: int
    hasMore: bool


class AdjustmentRequest(BaseModel):
    points: int
    reason: str = Field(min_length=1)
    actorUserId: Optional[UUID] = None


class PurchaseRequest(BaseModel):
    customerId: UUID
    amount: Optional[Decimal] = None
    amountMinor: Optional[int] = None
    pointsOverride: Optional[int] = Field(default=None, ge=0)
    purchasedAt: Optional[datetime] = None
    notes: Optional[str] = None
    loggedByUserId: Optional[UUID] = None


class PurchaseResponse(BaseModel):
    id: UUID
    customerId: UUID
    amount: Decimal
    currency: str
    pointsEarned: int
    source: str
    notes: Optional[str]
    purchasedAt: datetime
    createdAt: datetime


class PurchaseRecordResponse(BaseModel):
    purchase: PurchaseResponse
    pointsAwarded: int
    customerBlocked: bool
    balance: int


class RewardCreateRequest(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    terms: Optional[str] = None
    imageUrl: Optional[str] = None
    pointsRequired: Optional[int] = Field(default=None, gt=0)
    monetaryValue: Optional[Decimal] = None
    stockQuantity: Optional[int] = Field(default=None, ge=0)
    maxRedemptionsPerCustomer: Optional[int] = Field(default=None, gt=0)
    validFrom: Optional[datetime] = None
    validUntil: Optional[datetime] = None
    isActive: bool = True


class RewardUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    terms: Optional[str] = None
    imageUrl: Optional[str] = None
    pointsRequired: Optional[int] = Field(default=None, gt=0)
    monetaryValue: Optional[Decimal] = None
    stockQuantity: Optional[int] = Field(default=None, ge=0)
    maxRedemptionsPerCustomer: Optional[int] = Field(default=None, gt=0)
    validFrom: Optional[datetime] = None
    validUntil: Optional[datetime] = None
    isActive: Optional[bool] = None


class RewardResponse(BaseModel):
    id: UUID
    name: str
    description: Optional[str]
    terms: Optional[str]
    imageUrl: Optional[str]
    pointsRequired: int
    monetaryValue: Optional[Decimal]
    stockQuantity: Optional[int]
    maxRedemptionsPerCustomer: Optional[int]
    validFrom: Optional[datetime]
    validUntil: Optional[datetime]
    isActive: bool
    totalRedemptions: int
    createdAt: datetime


class PointsSuggestionRequest(BaseModel):
    monetaryValue: Decimal


class RedeemRequest(BaseModel):
    customerId: UUID
    rewardId: UUID
    idempotencyKey: Optional[str] = Field(default=None, max_length=128)


class RedemptionResponse(BaseModel):
    id: UUID
    customerId: UUID
    rewardId: UUID
    redemptionCode: str
    pointsDeducted: int
    status: str
    verifiedAt: Optional[datetime]
    fulfilledAt: Optional[datetime]
    fulfilmentNotes: Optional[str]
    cancelledAt: Optional[datetime]
    cancellationReason: Optional[str]
    expiredAt: Optional[datetime]
    createdAt: datetime


class RedeemResponse(BaseModel):
    redemption: RedemptionResponse
    rewardName: str
    balance: int
    replayed: bool


class VerifyRequest(BaseModel):
    code: str
    verifiedByUserId: Optional[UUID] = None


class FulfillRequest(BaseModel):
    notes: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class RedemptionStatsResponse(BaseModel):
    total: int
    byStatus: dict[str, int]
    completionRate: float


class ClaimSubmitRequest(BaseModel):
    phoneNumber: str = Field(min_length=1)
    amount: Decimal
    purchaseDate: str
    tenantId: Optional[UUID] = None
    vendorCode: Optional[str] = None
    channel: Optional[str] = None
    receiptUrl: Optional[str] = None
    description: Optional[str] = None
    customerName: Optional[str] = None
    submittedVia: str = "whatsapp"


class ClaimResponse(BaseModel):
    id: UUID
    customerId: UUID
    amount: Decimal
    currency: str
    purchaseDate: datetime
    channel: str
    receiptUrl: Optional[str]
    description: Optional[str]
    status: str
    expiresAt: datetime
    approvedAt: Optional[datetime]
    rejectionReason: Optional[str]
    pointsAwarded: Optional[int]
    purchaseId: Optional[UUID]
    createdAt: datetime


class ClaimReviewItemResponse(BaseModel):
    claim: ClaimResponse
    fraudFlags: List[str]
    totalClaims: int
    rejectedClaims: int
    rejectionRate: int


class ClaimApproveRequest(BaseModel):
    approvedByUserId: Optional[UUID] = None
    pointsOverride: Optional[int] = Field(default=None, ge=0)


class ClaimRejectRequest(BaseModel):
    reason: str = Field(min_length=1)
    rejectedByUserId: Optional[UUID] = None


class ClaimReviewResponse(BaseModel):
    claim: ClaimResponse
    pointsAwarded: Optional[int] = None
    balance: Optional[int] = None


class TenantSettingsUpdateRequest(BaseModel):
    burnRate: Optional[Decimal] = None
    welcomeBonusEnabled: Optional[bool] = None
    welcomeBonusPoints: Optional[int] = Field(default=None, ge=0)
    pointsExpiryEnabled: Optional[bool] = None
    pointsExpiryDays: Optional[int] = Field(default=None, gt=0)
    expiryReminderDays: Optional[int] = Field(default=None, gt=0)
    minRewardValue: Optional[Decimal] = None
    claimHighAmountThreshold: Optional[Decimal] = None
    notifyPurchase: Optional[bool] = None
    notifyRedemption: Optional[bool] = None
    notifyClaims: Optional[bool] = None
    notifyPointsExpiry: Optional[bool] = None
    notifyPointsExpiryWarning: Optional[bool] = None


class ChannelSessionRequest(BaseModel):
    tenantId: UUID
    channel: str = DEFAULT_CHANNEL


class ChannelSessionResponse(BaseModel):
    externalIdentity: str
    channel: str
    activeTenantId: Optional[UUID]


_REWARD_FIELDS = {
    "name": "name",
    "description": "description",
    "terms": "terms",
    "imageUrl": "image_url",
    "pointsRequired": "points_required",
    "monetaryValue": "monetary_value_major",
    "stockQuantity": "stock_quantity",
    "maxRedemptionsPerCustomer": "max_redemptions_per_customer",
    "validFrom": "valid_from",
    "validUntil": "valid_until",
    "isActive": "is_active",
}

_SETTINGS_FIELDS = {
    "burnRate": "burn_rate",
    "welcomeBonusEnabled": "welcome_bonus_enabled",
    "welcomeBonusPoints": "welcome_bonus_points",
    "pointsExpiryEnabled": "points_expiry_enabled",
    "pointsExpiryDays": "points_expiry_days",
    "expiryReminderDays": "expiry_reminder_days",
    "minRewardValue": "min_reward_value",
    "claimHighAmountThreshold": "claim_high_amount_threshold",
    "notifyPurchase": "notify_purchase",
    "notifyRedemption": "notify_redemption",
    "notifyClaims": "notify_claims",
    "notifyPointsExpiry": "notify_points_expiry",
    "notifyPointsExpiryWarning": "notify_points_expiry_warning",
}


def _parse_enum(enum_cls, value: str | None, label: str):
    if value is None:
        return None
    try:
        return enum_cls(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Unsupported {label}: {value}") from exc


async def _require_tenant(db: AsyncSession, tenant_id: UUID) -> Tenant:
    tenant = await db.get(Tenant, tenant_id)
    if tenant is None:
        raise TenantNotFound("Tenant not found", tenant_id=tenant_id)
    return tenant


async def _require_customer(db: AsyncSession, tenant_id: UUID, customer_id: UUID) -> Customer:
    customer = await db.get(Customer, customer_id)
    if customer is None or customer.tenant_id != tenant_id:
        raise CustomerNotFound("Customer not found", customer_id=customer_id, tenant_id=tenant_id)
    return customer


# Customers


@router.post(
    "/tenants/{tenant_id}/customers",
    response_model=EnrollResponse,
    dependencies=[Depends(require_api_key)],
)
async def enroll_customer(
    tenant_id: UUID,
    payload: EnrollRequest,
    response: Response,
    db: AsyncSession = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
) -> EnrollResponse:
    """Enroll a phone number with the tenant, granting the welcome bonus on first join."""

    service = CustomerEnrollmentService(db, notifier=notifier)
    result = await service.enroll(
        tenant_id,
        payload.phoneNumber,
        first_name=payload.firstName,
        last_name=payload.lastName,
        channel=payload.channel,
    )
    if result.created:
        response.status_code = status.HTTP_201_CREATED
    return EnrollResponse(
        customer=_serialize_customer(result.customer),
        created=result.created,
        welcomeBonusPoints=result.welcome_bonus_points,
        balance=result.balance,
    )


@router.post(
    "/tenants/{tenant_id}/customers/{customer_id}/block",
    response_model=CustomerResponse,
    dependencies=[Depends(require_api_key)],
)
async def block_customer(
    tenant_id: UUID,
    customer_id: UUID,
    payload: BlockRequest | None = None,
    db: AsyncSession = Depends(get_session),
) -> CustomerResponse:
    service = CustomerEnrollmentService(db)
    customer = await service.block(tenant_id, customer_id, reason=payload.reason if payload else None)
    return _serialize_customer(customer)


@router.post(
    "/tenants/{tenant_id}/customers/{customer_id}/unblock",
    response_model=CustomerResponse,
    dependencies=[Depends(require_api_key)],
)
async def unblock_customer(
    tenant_id: UUID,
    customer_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> CustomerResponse:
    service = CustomerEnrollmentService(db)
    customer = await service.unblock(tenant_id, customer_id)
    return _serialize_customer(customer)


@router.get("/tenants/{tenant_id}/customers/{customer_id}/balance", response_model=BalanceResponse)
async def get_customer_balance(
    tenant_id: UUID,
    customer_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> BalanceResponse:
    await _require_customer(db, tenant_id, customer_id)
    balance = await LedgerStore(db).get_balance(tenant_id, customer_id)
    if balance is None:
        return BalanceResponse(
            customerId=customer_id,
            currentBalance=0,
            totalPointsEarned=0,
            totalPointsRedeemed=0,
            totalPointsExpired=0,
            lastEarnedAt=None,
            lastRedeemedAt=None,
        )
    return BalanceResponse(
        customerId=customer_id,
        currentBalance=balance.current_balance,
        totalPointsEarned=balance.total_points_earned,
        totalPointsRedeemed=balance.total_points_redeemed,
        totalPointsExpired=balance.total_points_expired,
        lastEarnedAt=balance.last_earned_at,
        lastRedeemedAt=balance.last_redeemed_at,
    )


@router.get(
    "/tenants/{tenant_id}/customers/{customer_id}/transactions",
    response_model=TransactionPageResponse,
)
async def list_customer_transactions(
    tenant_id: UUID,
    customer_id: UUID,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    types: Optional[List[str]] = Query(None),
    db: AsyncSession = Depends(get_session),
) -> TransactionPageResponse:
    """Page through the customer's ledger, newest first."""

    await _require_customer(db, tenant_id, customer_id)
    type_filters = [_parse_enum(PointsTransactionType, value, "transaction type") for value in types or []]
    page = await LedgerStore(db).list_transactions(
        tenant_id,
        customer_id,
        limit=limit,
        offset=offset,
        types=type_filters,
    )
    return TransactionPageResponse(
        items=[_serialize_transaction(item) for item in page.items],
        total=page.total,
        limit=page.limit,
        offset=page.offset,
        hasMore=page.has_more,
    )


@router.post(
    "/tenants/{tenant_id}/customers/{customer_id}/adjustments",
    response_model=TransactionResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_api_key)],
)
async def adjust_customer_points(
    tenant_id: UUID,
    customer_id: UUID,
    payload: AdjustmentRequest,
    db: AsyncSession = Depends(get_session),
) -> TransactionResponse:
    """Staff correction of a balance; negative points debit."""

    await _require_customer(db, tenant_id, customer_id)
    ledger = LedgerStore(db)
    config = DatabaseTenantConfigProvider(db)
    expires_at = None
    if payload.points > 0:
        expires_at = (await config.get_settings(tenant_id)).earn_expiry_for(utcnow())
    async with ledger.atomic():
        transaction = await ledger.adjust(
            tenant_id,
            customer_id,
            payload.points,
            reason=payload.reason,
            actor_user_id=payload.actorUserId,
            expires_at=expires_at,
        )
    return _serialize_transaction(transaction)


# Purchases


@router.post(
    "/tenants/{tenant_id}/purchases",
    response_model=PurchaseRecordResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_api_key)],
)
async def record_purchase(
    tenant_id: UUID,
    payload: PurchaseRequest,
    db: AsyncSession = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
) -> PurchaseRecordResponse:
    recorder = PurchaseRecorder(db, notifier=notifier)
    result = await recorder.record_purchase(
        tenant_id,
        payload.customerId,
        amount_major=payload.amount,
        amount_minor=payload.amountMinor,
        points_override=payload.pointsOverride,
        purchased_at=payload.purchasedAt,
        notes=payload.notes,
        logged_by_user_id=payload.loggedByUserId,
    )
    return PurchaseRecordResponse(
        purchase=_serialize_purchase(result.purchase),
        pointsAwarded=result.points_awarded,
        customerBlocked=result.customer_blocked,
        balance=result.balance,
    )


@router.get("/tenants/{tenant_id}/purchases", response_model=List[PurchaseResponse])
async def list_purchases(
    tenant_id: UUID,
    customer_id: Optional[UUID] = Query(None, alias="customerId"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_session),
) -> List[PurchaseResponse]:
    purchases = await PurchaseRecorder(db).list_purchases(
        tenant_id,
        customer_id=customer_id,
        limit=limit,
        offset=offset,
    )
    return [_serialize_purchase(purchase) for purchase in purchases]


# Rewards


@router.get("/tenants/{tenant_id}/rewards", response_model=List[RewardResponse])
async def list_rewards(
    tenant_id: UUID,
    active_only: bool = Query(False, alias="activeOnly"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_session),
) -> List[RewardResponse]:
    rewards = await RewardCatalogService(db).list_rewards(
        tenant_id,
        active_only=active_only,
        limit=limit,
        offset=offset,
    )
    return [_serialize_reward(reward) for reward in rewards]


@router.post(
    "/tenants/{tenant_id}/rewards",
    response_model=RewardResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_api_key)],
)
async def create_reward(
    tenant_id: UUID,
    payload: RewardCreateRequest,
    db: AsyncSession = Depends(get_session),
) -> RewardResponse:
    """Create a reward; points default to the burn-rate suggestion for its monetary value."""

    await _require_tenant(db, tenant_id)
    fields = {_REWARD_FIELDS[key]: value for key, value in payload.model_dump(exclude_unset=True).items()}
    reward = await RewardCatalogService(db).create_reward(tenant_id, **fields)
    return _serialize_reward(reward)


@router.post("/tenants/{tenant_id}/rewards/suggest-points")
async def suggest_reward_points(
    tenant_id: UUID,
    payload: PointsSuggestionRequest,
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    suggestion = await RewardCatalogService(db).suggest_points(tenant_id, payload.monetaryValue)
    return suggestion.as_dict()


@router.get("/tenants/{tenant_id}/rewards/{reward_id}", response_model=RewardResponse)
async def get_reward(
    tenant_id: UUID,
    reward_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> RewardResponse:
    reward = await RewardCatalogService(db).get_reward(tenant_id, reward_id)
    return _serialize_reward(reward)


@router.patch(
    "/tenants/{tenant_id}/rewards/{reward_id}",
    response_model=RewardResponse,
    dependencies=[Depends(require_api_key)],
)
async def update_reward(
    tenant_id: UUID,
    reward_id: UUID,
    payload: RewardUpdateRequest,
    db: AsyncSession = Depends(get_session),
) -> RewardResponse:
    changes = {_REWARD_FIELDS[key]: value for key, value in payload.model_dump(exclude_unset=True).items()}
    reward = await RewardCatalogService(db).update_reward(tenant_id, reward_id, changes)
    return _serialize_reward(reward)


@router.delete(
    "/tenants/{tenant_id}/rewards/{reward_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_api_key)],
)
async def delete_reward(
    tenant_id: UUID,
    reward_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> Response:
    await RewardCatalogService(db).delete_reward(tenant_id, reward_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Redemptions


@router.post(
    "/tenants/{tenant_id}/redemptions",
    response_model=RedeemResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_api_key)],
)
async def redeem_reward(
    tenant_id: UUID,
    payload: RedeemRequest,
    response: Response,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    db: AsyncSession = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
) -> RedeemResponse:
    """Exchange points for a reward; retries with the same key replay the first result."""

    service = RewardRedemptionService(db, notifier=notifier)
    result = await service.redeem(
        tenant_id,
        payload.customerId,
        payload.rewardId,
        idempotency_key=idempotency_key or payload.idempotencyKey,
    )
    if result.replayed:
        response.status_code = status.HTTP_200_OK
    return RedeemResponse(
        redemption=_serialize_redemption(result.redemption),
        rewardName=result.reward.name,
        balance=result.balance,
        replayed=result.replayed,
    )


@router.get("/tenants/{tenant_id}/redemptions", response_model=List[RedemptionResponse])
async def list_redemptions(
    tenant_id: UUID,
    status_filter: Optional[str] = Query(None, alias="status"),
    customer_id: Optional[UUID] = Query(None, alias="customerId"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
) -> List[RedemptionResponse]:
    redemption_status = _parse_enum(RewardRedemptionStatus, status_filter, "redemption status")
    redemptions = await RewardRedemptionService(db, notifier=notifier).list_redemptions(
        tenant_id,
        status=redemption_status,
        customer_id=customer_id,
        limit=limit,
        offset=offset,
    )
    return [_serialize_redemption(redemption) for redemption in redemptions]


@router.get("/tenants/{tenant_id}/redemptions/stats", response_model=RedemptionStatsResponse)
async def redemption_stats(
    tenant_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> RedemptionStatsResponse:
    stats = await RewardRedemptionService(db).redemption_stats(tenant_id)
    return RedemptionStatsResponse(**stats.as_dict())


@router.post(
    "/tenants/{tenant_id}/redemptions/verify",
    response_model=RedemptionResponse,
    dependencies=[Depends(require_api_key)],
)
async def verify_redemption(
    tenant_id: UUID,
    payload: VerifyRequest,
    db: AsyncSession = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
) -> RedemptionResponse:
    redemption = await RewardRedemptionService(db, notifier=notifier).verify(
        tenant_id,
        payload.code,
        verified_by_user_id=payload.verifiedByUserId,
    )
    return _serialize_redemption(redemption)


@router.post(
    "/tenants/{tenant_id}/redemptions/{redemption_id}/fulfill",
    response_model=RedemptionResponse,
    dependencies=[Depends(require_api_key)],
)
async def fulfill_redemption(
    tenant_id: UUID,
    redemption_id: UUID,
    payload: FulfillRequest | None = None,
    db: AsyncSession = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
) -> RedemptionResponse:
    redemption = await RewardRedemptionService(db, notifier=notifier).fulfill(
        tenant_id,
        redemption_id,
        notes=payload.notes if payload else None,
    )
    return _serialize_redemption(redemption)


@router.post(
    "/tenants/{tenant_id}/redemptions/{redemption_id}/cancel",
    response_model=RedemptionResponse,
    dependencies=[Depends(require_api_key)],
)
async def cancel_redemption(
    tenant_id: UUID,
    redemption_id: UUID,
    payload: CancelRequest | None = None,
    db: AsyncSession = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
) -> RedemptionResponse:
    """Cancel an open redemption and refund its points."""

    redemption = await RewardRedemptionService(db, notifier=notifier).cancel(
        tenant_id,
        redemption_id,
        reason=payload.reason if payload else None,
    )
    return _serialize_redemption(redemption)


# Purchase claims


@router.post(
    "/claims",
    response_model=ClaimResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_api_key)],
)
async def submit_claim(
    payload: ClaimSubmitRequest,
    db: AsyncSession = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
) -> ClaimResponse:
    """Customer-submitted purchase awaiting vendor review."""

    claim = await PurchaseClaimService(db, notifier=notifier).submit_claim(
        phone_number=payload.phoneNumber,
        amount_major=payload.amount,
        purchase_date=payload.purchaseDate,
        tenant_id=payload.tenantId,
        vendor_code=payload.vendorCode,
        channel=payload.channel,
        receipt_url=payload.receiptUrl,
        description=payload.description,
        customer_name=payload.customerName,
        submitted_via=payload.submittedVia,
    )
    return _serialize_claim(claim)


@router.get("/tenants/{tenant_id}/claims", response_model=List[ClaimReviewItemResponse])
async def list_claims(
    tenant_id: UUID,
    status_filter: Optional[str] = Query(PurchaseClaimStatus.PENDING.value, alias="status"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_session),
) -> List[ClaimReviewItemResponse]:
    claim_status = None if status_filter == "all" else _parse_enum(PurchaseClaimStatus, status_filter, "claim status")
    views = await PurchaseClaimService(db).list_claims(tenant_id, status=claim_status, limit=limit, offset=offset)
    return [_serialize_claim_view(view) for view in views]


@router.post(
    "/tenants/{tenant_id}/claims/{claim_id}/approve",
    response_model=ClaimReviewResponse,
    dependencies=[Depends(require_api_key)],
)
async def approve_claim(
    tenant_id: UUID,
    claim_id: UUID,
    payload: ClaimApproveRequest | None = None,
    db: AsyncSession = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
) -> ClaimReviewResponse:
    review = await PurchaseClaimService(db, notifier=notifier).approve_claim(
        tenant_id,
        claim_id,
        approved_by_user_id=payload.approvedByUserId if payload else None,
        points_override=payload.pointsOverride if payload else None,
    )
    return _serialize_claim_review(review)


@router.post(
    "/tenants/{tenant_id}/claims/{claim_id}/reject",
    response_model=ClaimReviewResponse,
    dependencies=[Depends(require_api_key)],
)
async def reject_claim(
    tenant_id: UUID,
    claim_id: UUID,
    payload: ClaimRejectRequest,
    db: AsyncSession = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
) -> ClaimReviewResponse:
    review = await PurchaseClaimService(db, notifier=notifier).reject_claim(
        tenant_id,
        claim_id,
        reason=payload.reason,
        rejected_by_user_id=payload.rejectedByUserId,
    )
    return _serialize_claim_review(review)


# Tenant settings


@router.get("/tenants/{tenant_id}/settings")
async def get_tenant_settings(
    tenant_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    loyalty_settings = await DatabaseTenantConfigProvider(db).get_settings(tenant_id)
    return _serialize_settings(loyalty_settings)


@router.patch("/tenants/{tenant_id}/settings", dependencies=[Depends(require_api_key)])
async def update_tenant_settings(
    tenant_id: UUID,
    payload: TenantSettingsUpdateRequest,
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    changes = {_SETTINGS_FIELDS[key]: value for key, value in payload.model_dump(exclude_unset=True).items()}
    ledger = LedgerStore(db)
    async with ledger.atomic():
        loyalty_settings = await DatabaseTenantConfigProvider(db).update_settings(tenant_id, changes)
    return _serialize_settings(loyalty_settings)


# Channel sessions


@router.get("/sessions/{external_identity}", response_model=ChannelSessionResponse)
async def get_channel_session(
    external_identity: str,
    channel: str = Query(DEFAULT_CHANNEL),
    db: AsyncSession = Depends(get_session),
) -> ChannelSessionResponse:
    tenant_id = await ChannelSessionService(db).get_active_tenant(external_identity, channel=channel)
    if tenant_id is None:
        raise HTTPException(status_code=404, detail="No active tenant for this identity")
    return ChannelSessionResponse(externalIdentity=external_identity, channel=channel, activeTenantId=tenant_id)


@router.put(
    "/sessions/{external_identity}",
    response_model=ChannelSessionResponse,
    dependencies=[Depends(require_api_key)],
)
async def set_channel_session(
    external_identity: str,
    payload: ChannelSessionRequest,
    db: AsyncSession = Depends(get_session),
) -> ChannelSessionResponse:
    """Route an external chat identity to a tenant's programme."""

    await _require_tenant(db, payload.tenantId)
    session = await ChannelSessionService(db).set_active_tenant(
        external_identity,
        payload.tenantId,
        channel=payload.channel,
    )
    return ChannelSessionResponse(
        externalIdentity=session.external_identity,
        channel=session.channel,
        activeTenantId=session.active_tenant_id,
    )


@router.delete(
    "/sessions/{external_identity}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_api_key)],
)
async def clear_channel_session(
    external_identity: str,
    channel: str = Query(DEFAULT_CHANNEL),
    db: AsyncSession = Depends(get_session),
) -> Response:
    await ChannelSessionService(db).clear(external_identity, channel=channel)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


def _serialize_customer(customer: Customer) -> CustomerResponse:
    return CustomerResponse(
        id=customer.id,
        tenantId=customer.tenant_id,
        phoneNumber=customer.phone_number,
        firstName=customer.first_name,
        lastName=customer.last_name,
        loyaltyStatus=customer.loyalty_status.value,
        blockedReason=customer.blocked_reason,
        totalPurchases=customer.total_purchases or 0,
        totalSpent=Decimal(str(customer.total_spent_major or 0)),
        lastPurchaseAt=customer.last_purchase_at,
        createdAt=customer.created_at,
    )


def _serialize_transaction(transaction: PointsTransaction) -> TransactionResponse:
    return TransactionResponse(
        id=transaction.id,
        transactionType=transaction.transaction_type.value,
        points=transaction.points,
        description=transaction.description,
        metadata=transaction.metadata_json or {},
        expiresAt=transaction.expires_at,
        expired=bool(transaction.expired),
        purchaseId=transaction.purchase_id,
        rewardRedemptionId=transaction.reward_redemption_id,
        createdAt=transaction.created_at,
    )


def _serialize_purchase(purchase: Purchase) -> PurchaseResponse:
    return PurchaseResponse(
        id=purchase.id,
        customerId=purchase.customer_id,
        amount=Decimal(str(purchase.amount_major)),
        currency=purchase.currency,
        pointsEarned=purchase.points_earned,
        source=purchase.source.value,
        notes=purchase.notes,
        purchasedAt=purchase.purchased_at,
        createdAt=purchase.created_at,
    )


def _serialize_reward(reward: Reward) -> RewardResponse:
    return RewardResponse(
        id=reward.id,
        name=reward.name,
        description=reward.description,
        terms=reward.terms,
        imageUrl=reward.image_url,
        pointsRequired=reward.points_required,
        monetaryValue=Decimal(str(reward.monetary_value_major)) if reward.monetary_value_major is not None else None,
        stockQuantity=reward.stock_quantity,
        maxRedemptionsPerCustomer=reward.max_redemptions_per_customer,
        validFrom=reward.valid_from,
        validUntil=reward.valid_until,
        isActive=bool(reward.is_active),
        totalRedemptions=reward.total_redemptions or 0,
        createdAt=reward.created_at,
    )


def _serialize_redemption(redemption: RewardRedemption) -> RedemptionResponse:
    return RedemptionResponse(
        id=redemption.id,
        customerId=redemption.customer_id,
        rewardId=redemption.reward_id,
        redemptionCode=redemption.redemption_code,
        pointsDeducted=redemption.points_deducted,
        status=redemption.status.value,
        verifiedAt=redemption.verified_at,
        fulfilledAt=redemption.fulfilled_at,
        fulfilmentNotes=redemption.fulfilment_notes,
        cancelledAt=redemption.cancelled_at,
        cancellationReason=redemption.cancellation_reason,
        expiredAt=redemption.expired_at,
        createdAt=redemption.created_at,
    )


def _serialize_claim(claim: PurchaseClaim) -> ClaimResponse:
    return ClaimResponse(
        id=claim.id,
        customerId=claim.customer_id,
        amount=Decimal(str(claim.amount_major)),
        currency=claim.currency,
        purchaseDate=claim.purchase_date,
        channel=claim.channel,
        receiptUrl=claim.receipt_url,
        description=claim.description,
        status=claim.status.value,
        expiresAt=claim.expires_at,
        approvedAt=claim.approved_at,
        rejectionReason=claim.rejection_reason,
        pointsAwarded=claim.points_awarded,
        purchaseId=claim.purchase_id,
        createdAt=claim.created_at,
    )


def _serialize_claim_view(view: ClaimView) -> ClaimReviewItemResponse:
    return ClaimReviewItemResponse(
        claim=_serialize_claim(view.claim),
        fraudFlags=list(view.fraud_flags),
        totalClaims=view.total_claims,
        rejectedClaims=view.rejected_claims,
        rejectionRate=view.rejection_rate,
    )


def _serialize_claim_review(review: ClaimReview) -> ClaimReviewResponse:
    return ClaimReviewResponse(
        claim=_serialize_claim(review.claim),
        pointsAwarded=review.purchase.points_awarded if review.purchase else None,
        balance=review.purchase.balance if review.purchase else None,
    )


def _serialize_settings(loyalty_settings: TenantLoyaltySettings) -> dict[str, Any]:
    document = loyalty_settings.to_document()
    camel = {snake: camel for camel, snake in _SETTINGS_FIELDS.items()}
    return {camel.get(key, key): value for key, value in document.items() if key != "schema_version"} | {
        "schemaVersion": document["schema_version"]
    }
