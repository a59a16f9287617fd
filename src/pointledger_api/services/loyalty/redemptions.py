"""Reward redemption lifecycle.

``pending -> verified -> fulfilled`` is the happy path. Open redemptions
(pending or verified) may be cancelled, which always refunds, or expire 24h
after creation. Every status change is a conditional UPDATE on the expected
prior status, so a redemption can only leave an open state once.
"""

from __future__ import annotations

import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from pointledger_api.core.clock import ensure_utc, utcnow
from pointledger_api.core.settings import get_settings
from pointledger_api.domain.loyalty.errors import (
    AlreadyFulfilled,
    AlreadyProcessed,
    CustomerNotFound,
    LedgerError,
    OutOfStock,
    RedemptionExpired,
    RedemptionLimitReached,
    RedemptionNotFound,
    RewardNotFound,
    RewardUnavailable,
    ValidationError,
)
from pointledger_api.models.customer import Customer
from pointledger_api.models.loyalty import (
    OPEN_REDEMPTION_STATUSES,
    PointsTransactionType,
    Reward,
    RewardRedemption,
    RewardRedemptionStatus,
)
from pointledger_api.observability.loyalty import get_loyalty_store
from pointledger_api.services.notifications import NotificationService, Notifier, dispatch_loyalty_event
from pointledger_api.services.tenants import DatabaseTenantConfigProvider, TenantConfigProvider

from .ledger import LedgerStore, clamp_page_size

_CODE_ALPHABET = string.ascii_uppercase + string.digits
_BASE36_DIGITS = string.digits + string.ascii_uppercase


def _to_base36(value: int) -> str:
    if value <= 0:
        return "0"
    digits: list[str] = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36_DIGITS[remainder])
    return "".join(reversed(digits))


def generate_redemption_code(now: datetime | None = None) -> str:
    """``R`` + six base36 clock characters + four random characters."""

    moment = now or utcnow()
    clock = _to_base36(int(moment.timestamp() * 1000))[-6:].rjust(6, "0")
    suffix = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(4))
    return f"R{clock}{suffix}"


def normalize_redemption_code(code: str) -> str:
    return (code or "").strip().upper()


@dataclass
class RedemptionResult:
    redemption: RewardRedemption
    reward: Reward
    balance: int
    replayed: bool = False


@dataclass
class RedemptionStats:
    total: int
    by_status: dict[str, int] = field(default_factory=dict)

    @property
    def completion_rate(self) -> float:
        if not self.total:
            return 0.0
        fulfilled = self.by_status.get(RewardRedemptionStatus.FULFILLED.value, 0)
        return round(fulfilled / self.total * 100, 1)

    def as_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "byStatus": dict(self.by_status),
            "completionRate": self.completion_rate,
        }


class RewardRedemptionService:
    """Exchange points for rewards and drive redemptions to a terminal state."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        config: TenantConfigProvider | None = None,
        notifier: Notifier | None = None,
        ledger: LedgerStore | None = None,
        ttl_hours: int | None = None,
        refund_on_expiry: bool | None = None,
    ) -> None:
        settings = get_settings()
        self._db = db_session
        self._config = config or DatabaseTenantConfigProvider(db_session)
        self._notifier = notifier or NotificationService(db_session)
        self._ledger = ledger or LedgerStore(db_session)
        self._ttl = timedelta(hours=ttl_hours or settings.redemption_ttl_hours)
        self._refund_on_expiry = settings.redemption_expiry_refund if refund_on_expiry is None else refund_on_expiry
        self._code_attempts = settings.redemption_code_max_attempts
        self._observability = get_loyalty_store()

    async def redeem(
        self,
        tenant_id: UUID,
        customer_id: UUID,
        reward_id: UUID,
        *,
        idempotency_key: str | None = None,
    ) -> RedemptionResult:
        """Deduct points for a reward; replays with a known key return the stored redemption."""

        key = (idempotency_key or "").strip() or None
        if key:
            replay = await self._replay(tenant_id, key)
            if replay is not None:
                return replay

        try:
            async with self._ledger.atomic():
                result = await self._redeem_in_unit(tenant_id, customer_id, reward_id, key)
        except IntegrityError:
            # A concurrent request with the same key committed first.
            replay = await self._replay(tenant_id, key) if key else None
            if replay is None:
                raise
            return replay
        except LedgerError as exc:
            self._observability.record_failure("redeem", exc.code)
            logger.info(
                "Redemption rejected",
                tenant_id=str(tenant_id),
                customer_id=str(customer_id),
                reward_id=str(reward_id),
                code=exc.code,
            )
            raise

        self._observability.record_redemption_event("created")
        logger.info(
            "Redemption created",
            tenant_id=str(tenant_id),
            customer_id=str(customer_id),
            redemption_id=str(result.redemption.id),
            code=result.redemption.redemption_code,
            points=result.redemption.points_deducted,
        )
        await self._notify(
            result.redemption,
            "redemption-created",
            reward_name=result.reward.name,
            balance=result.balance,
        )
        return result

    async def _replay(self, tenant_id: UUID, key: str) -> RedemptionResult | None:
        stmt = select(RewardRedemption).where(
            RewardRedemption.tenant_id == tenant_id,
            RewardRedemption.idempotency_key == key,
        )
        existing = (await self._db.execute(stmt)).scalar_one_or_none()
        if existing is None:
            return None
        reward = await self._db.get(Reward, existing.reward_id)
        balance = await self._ledger.current_balance(tenant_id, existing.customer_id)
        self._observability.record_redemption_event("replayed")
        logger.info(
            "Redemption replayed for idempotency key",
            tenant_id=str(tenant_id),
            redemption_id=str(existing.id),
        )
        return RedemptionResult(redemption=existing, reward=reward, balance=balance, replayed=True)

    async def _redeem_in_unit(
        self,
        tenant_id: UUID,
        customer_id: UUID,
        reward_id: UUID,
        idempotency_key: str | None,
    ) -> RedemptionResult:
        now = utcnow()
        reward = await self._load_reward(tenant_id, reward_id)
        self._assert_available(reward, now)
        await self._assert_customer(tenant_id, customer_id)

        open_count = await self._count_redemptions(customer_id, reward.id, OPEN_REDEMPTION_STATUSES)
        if open_count:
            raise AlreadyProcessed(
                "You already have a pending redemption for this reward",
                reward_id=reward.id,
            )
        if reward.stock_quantity is not None and reward.stock_quantity <= 0:
            raise OutOfStock(reward_id=reward.id)
        cap = reward.max_redemptions_per_customer
        if cap:
            used = await self._count_active_redemptions(customer_id, reward.id)
            if used >= cap:
                raise RedemptionLimitReached(
                    f"Maximum redemptions ({cap}) reached for this reward",
                    reward_id=reward.id,
                    limit=cap,
                )

        cost = int(reward.points_required)
        await self._ledger.ensure_balance(tenant_id, customer_id)
        await self._ledger.try_decrement(tenant_id, customer_id, cost, now=now)
        await self._claim_stock(reward)

        redemption = RewardRedemption(
            id=uuid4(),
            tenant_id=tenant_id,
            customer_id=customer_id,
            reward_id=reward.id,
            redemption_code=await self._unique_code(now),
            points_deducted=cost,
            status=RewardRedemptionStatus.PENDING,
            idempotency_key=idempotency_key,
            created_at=now,
            updated_at=now,
        )
        self._db.add(redemption)
        await self._db.flush()

        # Counts are re-read after insert to catch concurrent units that passed the pre-checks.
        if await self._count_redemptions(customer_id, reward.id, OPEN_REDEMPTION_STATUSES) > 1:
            raise AlreadyProcessed("You already have a pending redemption for this reward", reward_id=reward.id)
        if cap and await self._count_active_redemptions(customer_id, reward.id) > cap:
            raise RedemptionLimitReached(
                f"Maximum redemptions ({cap}) reached for this reward",
                reward_id=reward.id,
                limit=cap,
            )

        await self._ledger.record_transaction(
            tenant_id,
            customer_id,
            transaction_type=PointsTransactionType.REDEEMED,
            points=-cost,
            description=f"Redeemed: {reward.name}",
            metadata={"rewardId": str(reward.id), "redemptionCode": redemption.redemption_code},
            reward_redemption_id=redemption.id,
            created_at=now,
        )
        balance = await self._ledger.current_balance(tenant_id, customer_id)
        return RedemptionResult(redemption=redemption, reward=reward, balance=balance)

    def _assert_available(self, reward: Reward, now: datetime) -> None:
        if not reward.is_active:
            raise RewardUnavailable("Reward is not available", reward_id=reward.id)
        valid_from = ensure_utc(reward.valid_from)
        if valid_from and now < valid_from:
            raise RewardUnavailable("Reward is not yet available", reward_id=reward.id, valid_from=valid_from)
        valid_until = ensure_utc(reward.valid_until)
        if valid_until and now > valid_until:
            raise RewardUnavailable("Reward has expired", reward_id=reward.id, valid_until=valid_until)

    async def _claim_stock(self, reward: Reward) -> None:
        if reward.stock_quantity is None:
            stmt = (
                update(Reward)
                .where(Reward.id == reward.id, Reward.stock_quantity.is_(None))
                .values(total_redemptions=Reward.total_redemptions + 1)
            )
        else:
            stmt = (
                update(Reward)
                .where(Reward.id == reward.id, Reward.stock_quantity > 0)
                .values(
                    total_redemptions=Reward.total_redemptions + 1,
                    stock_quantity=Reward.stock_quantity - 1,
                )
            )
        result = await self._db.execute(stmt.execution_options(synchronize_session=False))
        if result.rowcount == 0:
            raise OutOfStock(reward_id=reward.id)

    async def _unique_code(self, now: datetime) -> str:
        for _ in range(self._code_attempts):
            code = generate_redemption_code(now)
            stmt = select(RewardRedemption.id).where(RewardRedemption.redemption_code == code)
            if (await self._db.execute(stmt)).first() is None:
                return code
        raise RuntimeError("Unable to allocate a unique redemption code")

    async def verify(
        self,
        tenant_id: UUID,
        code: str,
        *,
        verified_by_user_id: UUID | None = None,
    ) -> RewardRedemption:
        """Staff check-in of a presented code."""

        normalized = normalize_redemption_code(code)
        if not normalized:
            raise ValidationError("Redemption code is required")
        stmt = select(RewardRedemption).where(
            RewardRedemption.tenant_id == tenant_id,
            RewardRedemption.redemption_code == normalized,
            RewardRedemption.status != RewardRedemptionStatus.CANCELLED,
        )
        redemption = (await self._db.execute(stmt)).scalar_one_or_none()
        if redemption is None:
            raise RedemptionNotFound("Invalid redemption code", code=normalized)
        if redemption.status == RewardRedemptionStatus.FULFILLED:
            raise AlreadyFulfilled("This reward has already been claimed", code=normalized)
        if redemption.status == RewardRedemptionStatus.EXPIRED:
            raise RedemptionExpired("This redemption code has expired", code=normalized)

        now = utcnow()
        if self._is_stale(redemption, now):
            await self._expire_and_notify(redemption, now)
            raise RedemptionExpired("This redemption code has expired", code=normalized)

        async with self._ledger.atomic():
            stmt = (
                update(RewardRedemption)
                .where(
                    RewardRedemption.id == redemption.id,
                    RewardRedemption.status.in_(OPEN_REDEMPTION_STATUSES),
                )
                .values(
                    status=RewardRedemptionStatus.VERIFIED,
                    verified_by_user_id=verified_by_user_id,
                    verified_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if (await self._db.execute(stmt)).rowcount == 0:
                raise AlreadyProcessed("Redemption is no longer open", code=normalized)
        await self._db.refresh(redemption)
        self._observability.record_redemption_event("verified")
        logger.info("Redemption verified", tenant_id=str(tenant_id), redemption_id=str(redemption.id))
        return redemption

    async def fulfill(
        self,
        tenant_id: UUID,
        redemption_id: UUID,
        *,
        notes: str | None = None,
    ) -> RewardRedemption:
        redemption = await self._load_redemption(tenant_id, redemption_id)
        if redemption.status == RewardRedemptionStatus.FULFILLED:
            raise AlreadyFulfilled("Redemption already fulfilled", redemption_id=redemption_id)
        if redemption.status not in OPEN_REDEMPTION_STATUSES:
            raise AlreadyProcessed(
                f"Cannot fulfil a {redemption.status.value} redemption",
                redemption_id=redemption_id,
            )

        now = utcnow()
        if self._is_stale(redemption, now):
            await self._expire_and_notify(redemption, now)
            raise RedemptionExpired("This redemption code has expired", redemption_id=redemption_id)

        async with self._ledger.atomic():
            stmt = (
                update(RewardRedemption)
                .where(
                    RewardRedemption.id == redemption.id,
                    RewardRedemption.status.in_(OPEN_REDEMPTION_STATUSES),
                )
                .values(
                    status=RewardRedemptionStatus.FULFILLED,
                    fulfilled_at=now,
                    fulfilment_notes=notes,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if (await self._db.execute(stmt)).rowcount == 0:
                raise AlreadyFulfilled("Redemption already fulfilled", redemption_id=redemption_id)
        await self._db.refresh(redemption)

        self._observability.record_redemption_event("fulfilled")
        logger.info("Redemption fulfilled", tenant_id=str(tenant_id), redemption_id=str(redemption.id))
        reward = await self._db.get(Reward, redemption.reward_id)
        await self._notify(redemption, "redemption-fulfilled", reward_name=reward.name if reward else None)
        return redemption

    async def cancel(
        self,
        tenant_id: UUID,
        redemption_id: UUID,
        *,
        reason: str | None = None,
    ) -> RewardRedemption:
        """Cancel an open redemption and refund its points."""

        redemption = await self._load_redemption(tenant_id, redemption_id)
        if redemption.status == RewardRedemptionStatus.CANCELLED:
            raise AlreadyProcessed("Redemption already cancelled", redemption_id=redemption_id)
        if redemption.status == RewardRedemptionStatus.FULFILLED:
            raise AlreadyFulfilled("Cannot cancel a fulfilled redemption", redemption_id=redemption_id)
        if redemption.status not in OPEN_REDEMPTION_STATUSES:
            raise AlreadyProcessed(
                f"Cannot cancel a {redemption.status.value} redemption",
                redemption_id=redemption_id,
            )

        reason = (reason or "").strip() or "Cancelled by vendor"
        now = utcnow()
        async with self._ledger.atomic():
            stmt = (
                update(RewardRedemption)
                .where(
                    RewardRedemption.id == redemption.id,
                    RewardRedemption.status.in_(OPEN_REDEMPTION_STATUSES),
                )
                .values(
                    status=RewardRedemptionStatus.CANCELLED,
                    cancelled_at=now,
                    cancellation_reason=reason,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if (await self._db.execute(stmt)).rowcount == 0:
                raise AlreadyProcessed("Redemption is no longer open", redemption_id=redemption_id)
            await self._ledger.refund(
                tenant_id,
                redemption.customer_id,
                int(redemption.points_deducted),
                f"Refund: {reason}",
                redemption.id,
                metadata={"redemptionCode": redemption.redemption_code},
            )
        await self._db.refresh(redemption)

        self._observability.record_redemption_event("cancelled")
        logger.info(
            "Redemption cancelled",
            tenant_id=str(tenant_id),
            redemption_id=str(redemption.id),
            points_refunded=redemption.points_deducted,
            reason=reason,
        )
        balance = await self._ledger.current_balance(tenant_id, redemption.customer_id)
        await self._notify(redemption, "redemption-cancelled", reason=reason, balance=balance)
        return redemption

    async def expire_stale_redemptions(
        self,
        *,
        tenant_id: UUID | None = None,
        now: datetime | None = None,
        limit: int = 500,
    ) -> dict[str, int]:
        """Expire open redemptions older than the TTL, one unit per redemption."""

        now = now or utcnow()
        cutoff = now - self._ttl
        stmt = select(RewardRedemption).where(
            RewardRedemption.status.in_(OPEN_REDEMPTION_STATUSES),
            RewardRedemption.created_at <= cutoff,
        )
        if tenant_id is not None:
            stmt = stmt.where(RewardRedemption.tenant_id == tenant_id)
        stmt = stmt.order_by(RewardRedemption.created_at.asc()).limit(limit)
        candidates = list((await self._db.execute(stmt)).scalars().all())

        expired = 0
        refunded_points = 0
        for redemption in candidates:
            refunded = await self._expire_and_notify(redemption, now)
            if refunded is None:
                continue
            expired += 1
            refunded_points += refunded
        return {"scanned": len(candidates), "expired": expired, "refundedPoints": refunded_points}

    async def _expire_and_notify(self, redemption: RewardRedemption, now: datetime) -> int | None:
        """Expire one open redemption; returns refunded points, or ``None`` if it was no longer open."""

        refunded = 0
        async with self._ledger.atomic():
            stmt = (
                update(RewardRedemption)
                .where(
                    RewardRedemption.id == redemption.id,
                    RewardRedemption.status.in_(OPEN_REDEMPTION_STATUSES),
                )
                .values(status=RewardRedemptionStatus.EXPIRED, expired_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if (await self._db.execute(stmt)).rowcount == 0:
                return None
            if self._refund_on_expiry and redemption.points_deducted:
                await self._ledger.refund(
                    redemption.tenant_id,
                    redemption.customer_id,
                    int(redemption.points_deducted),
                    "Refund: redemption expired",
                    redemption.id,
                    metadata={"redemptionCode": redemption.redemption_code, "expiredAt": now.isoformat()},
                )
                refunded = int(redemption.points_deducted)
        await self._db.refresh(redemption)

        self._observability.record_redemption_event("expired")
        logger.info(
            "Redemption expired",
            tenant_id=str(redemption.tenant_id),
            redemption_id=str(redemption.id),
            refund_policy="refund" if self._refund_on_expiry else "forfeit",
            points_refunded=refunded,
        )
        await self._notify(redemption, "redemption-expired", refunded=bool(refunded))
        return refunded

    def _is_stale(self, redemption: RewardRedemption, now: datetime) -> bool:
        created_at = ensure_utc(redemption.created_at)
        return created_at is not None and created_at + self._ttl <= now

    async def get_by_code(self, tenant_id: UUID, code: str) -> RewardRedemption:
        normalized = normalize_redemption_code(code)
        stmt = select(RewardRedemption).where(
            RewardRedemption.tenant_id == tenant_id,
            RewardRedemption.redemption_code == normalized,
        )
        redemption = (await self._db.execute(stmt)).scalar_one_or_none()
        if redemption is None:
            raise RedemptionNotFound("Invalid redemption code", code=normalized)
        return redemption

    async def list_redemptions(
        self,
        tenant_id: UUID,
        *,
        status: RewardRedemptionStatus | None = None,
        customer_id: UUID | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[RewardRedemption]:
        """List redemptions after sweeping the tenant's stale open ones."""

        await self.expire_stale_redemptions(tenant_id=tenant_id)
        stmt = select(RewardRedemption).where(RewardRedemption.tenant_id == tenant_id)
        if status is not None:
            stmt = stmt.where(RewardRedemption.status == status)
        if customer_id is not None:
            stmt = stmt.where(RewardRedemption.customer_id == customer_id)
        stmt = (
            stmt.order_by(RewardRedemption.created_at.desc(), RewardRedemption.id.desc())
            .offset(max(offset, 0))
            .limit(clamp_page_size(limit))
        )
        return list((await self._db.execute(stmt)).scalars().all())

    async def redemption_stats(self, tenant_id: UUID) -> RedemptionStats:
        stmt = (
            select(RewardRedemption.status, func.count(RewardRedemption.id))
            .where(RewardRedemption.tenant_id == tenant_id)
            .group_by(RewardRedemption.status)
        )
        rows = (await self._db.execute(stmt)).all()
        by_status = {status.value: 0 for status in RewardRedemptionStatus}
        for status, count in rows:
            by_status[status.value] = int(count)
        return RedemptionStats(total=sum(by_status.values()), by_status=by_status)

    async def _load_reward(self, tenant_id: UUID, reward_id: UUID) -> Reward:
        stmt = (
            select(Reward)
            .where(Reward.id == reward_id, Reward.tenant_id == tenant_id, Reward.deleted_at.is_(None))
            .execution_options(populate_existing=True)
        )
        reward = (await self._db.execute(stmt)).scalar_one_or_none()
        if reward is None:
            raise RewardNotFound("Reward not found", reward_id=reward_id)
        return reward

    async def _load_redemption(self, tenant_id: UUID, redemption_id: UUID) -> RewardRedemption:
        stmt = (
            select(RewardRedemption)
            .where(RewardRedemption.id == redemption_id, RewardRedemption.tenant_id == tenant_id)
            .execution_options(populate_existing=True)
        )
        redemption = (await self._db.execute(stmt)).scalar_one_or_none()
        if redemption is None:
            raise RedemptionNotFound("Redemption not found", redemption_id=redemption_id)
        return redemption

    async def _assert_customer(self, tenant_id: UUID, customer_id: UUID) -> None:
        stmt = select(Customer.id).where(Customer.id == customer_id, Customer.tenant_id == tenant_id)
        if (await self._db.execute(stmt)).first() is None:
            raise CustomerNotFound("Customer not found", customer_id=customer_id)

    async def _count_redemptions(
        self,
        customer_id: UUID,
        reward_id: UUID,
        statuses: Iterable[RewardRedemptionStatus],
    ) -> int:
        stmt = select(func.count(RewardRedemption.id)).where(
            RewardRedemption.customer_id == customer_id,
            RewardRedemption.reward_id == reward_id,
            RewardRedemption.status.in_(list(statuses)),
        )
        return int((await self._db.execute(stmt)).scalar_one())

    async def _count_active_redemptions(self, customer_id: UUID, reward_id: UUID) -> int:
        stmt = select(func.count(RewardRedemption.id)).where(
            RewardRedemption.customer_id == customer_id,
            RewardRedemption.reward_id == reward_id,
            RewardRedemption.status != RewardRedemptionStatus.CANCELLED,
        )
        return int((await self._db.execute(stmt)).scalar_one())

    async def _notify(self, redemption: RewardRedemption, event_kind: str, **extra: Any) -> None:
        payload = {
            "code": redemption.redemption_code,
            "points": redemption.points_deducted,
            "redemption_id": str(redemption.id),
            **{key: value for key, value in extra.items() if value is not None},
        }
        await dispatch_loyalty_event(
            self._notifier,
            self._config,
            tenant_id=redemption.tenant_id,
            customer_id=redemption.customer_id,
            event_kind=event_kind,
            payload=payload,
        )


__all__ = [
    "RedemptionResult",
    "RedemptionStats",
    "RewardRedemptionService",
    "generate_redemption_code",
    "normalize_redemption_code",
]
