"""Tenant reward catalog management."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pointledger_api.core.clock import ensure_utc, utcnow
from pointledger_api.domain.loyalty import constants
from pointledger_api.domain.loyalty.errors import RewardNotFound, ValidationError
from pointledger_api.models.loyalty import Reward
from pointledger_api.services.tenants import DatabaseTenantConfigProvider, TenantConfigProvider

from .ledger import clamp_page_size

_MUTABLE_FIELDS = frozenset(
    {
        "name",
        "description",
        "terms",
        "image_url",
        "points_required",
        "monetary_value_major",
        "stock_quantity",
        "max_redemptions_per_customer",
        "valid_from",
        "valid_until",
        "is_active",
    }
)


@dataclass(frozen=True)
class PointsSuggestion:
    points_required: int
    point_value: Decimal
    minimum_reward_value: Decimal
    currency: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "pointsRequired": self.points_required,
            "pointValue": str(self.point_value),
            "minimumRewardValue": str(self.minimum_reward_value),
            "currency": self.currency,
        }


class RewardCatalogService:
    """Create, edit and soft-delete rewards with currency-aware validation."""

    def __init__(self, db_session: AsyncSession, *, config: TenantConfigProvider | None = None) -> None:
        self._db = db_session
        self._config = config or DatabaseTenantConfigProvider(db_session)

    async def suggest_points(self, tenant_id: UUID, monetary_value_major: Any) -> PointsSuggestion:
        """Points a reward of the given value should cost at the tenant's burn rate."""

        value = _coerce_value(monetary_value_major)
        currency = await self._config.get_currency(tenant_id)
        loyalty_settings = await self._config.get_settings(tenant_id)
        floor = constants.effective_minimum_reward_value(currency, loyalty_settings.min_reward_value)
        if value < floor:
            raise ValidationError(
                f"Reward value must be at least {floor} {currency}",
                monetary_value_major=value,
                minimum=floor,
            )
        return PointsSuggestion(
            points_required=constants.points_required(value, currency, loyalty_settings.burn_rate),
            point_value=constants.point_value(currency, loyalty_settings.burn_rate),
            minimum_reward_value=floor,
            currency=currency,
        )

    async def create_reward(self, tenant_id: UUID, **fields: Any) -> Reward:
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValidationError("Unknown reward fields", fields=sorted(unknown))
        name = (fields.get("name") or "").strip()
        if not name:
            raise ValidationError("Reward name is required")

        monetary_value = fields.get("monetary_value_major")
        if fields.get("points_required") is None:
            if monetary_value is None:
                raise ValidationError("Provide points_required or monetary_value_major")
            fields["points_required"] = (await self.suggest_points(tenant_id, monetary_value)).points_required

        reward = Reward(tenant_id=tenant_id, name=name, is_active=True, total_redemptions=0)
        self._apply(reward, {key: value for key, value in fields.items() if key != "name"})
        await self._validate(tenant_id, reward)
        self._db.add(reward)
        await self._db.commit()
        await self._db.refresh(reward)
        logger.info(
            "Reward created",
            tenant_id=str(tenant_id),
            reward_id=str(reward.id),
            points_required=reward.points_required,
        )
        return reward

    async def update_reward(self, tenant_id: UUID, reward_id: UUID, changes: Mapping[str, Any]) -> Reward:
        unknown = set(changes) - _MUTABLE_FIELDS
        if unknown:
            raise ValidationError("Unknown reward fields", fields=sorted(unknown))
        reward = await self.get_reward(tenant_id, reward_id)
        if "name" in changes and not (changes["name"] or "").strip():
            raise ValidationError("Reward name is required")
        try:
            self._apply(reward, changes)
            await self._validate(tenant_id, reward)
        except ValidationError:
            await self._db.rollback()
            raise
        reward.updated_at = utcnow()
        await self._db.commit()
        await self._db.refresh(reward)
        logger.info("Reward updated", tenant_id=str(tenant_id), reward_id=str(reward.id), fields=sorted(changes))
        return reward

    async def delete_reward(self, tenant_id: UUID, reward_id: UUID) -> Reward:
        """Soft delete; existing redemptions keep their reward reference."""

        reward = await self.get_reward(tenant_id, reward_id)
        now = utcnow()
        reward.deleted_at = now
        reward.is_active = False
        reward.updated_at = now
        await self._db.commit()
        logger.info("Reward deleted", tenant_id=str(tenant_id), reward_id=str(reward.id))
        return reward

    async def get_reward(self, tenant_id: UUID, reward_id: UUID) -> Reward:
        stmt = select(Reward).where(
            Reward.id == reward_id,
            Reward.tenant_id == tenant_id,
            Reward.deleted_at.is_(None),
        )
        reward = (await self._db.execute(stmt)).scalar_one_or_none()
        if reward is None:
            raise RewardNotFound("Reward not found", reward_id=reward_id)
        return reward

    async def list_rewards(
        self,
        tenant_id: UUID,
        *,
        active_only: bool = False,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Reward]:
        stmt = select(Reward).where(Reward.tenant_id == tenant_id, Reward.deleted_at.is_(None))
        if active_only:
            now = utcnow()
            stmt = stmt.where(
                Reward.is_active.is_(True),
                (Reward.valid_from.is_(None)) | (Reward.valid_from <= now),
                (Reward.valid_until.is_(None)) | (Reward.valid_until >= now),
                (Reward.stock_quantity.is_(None)) | (Reward.stock_quantity > 0),
            )
        stmt = (
            stmt.order_by(Reward.points_required.asc(), Reward.name.asc())
            .offset(max(offset, 0))
            .limit(clamp_page_size(limit))
        )
        return list((await self._db.execute(stmt)).scalars().all())

    @staticmethod
    def _apply(reward: Reward, changes: Mapping[str, Any]) -> None:
        for key, value in changes.items():
            if key == "name":
                value = value.strip()
            elif key == "monetary_value_major" and value is not None:
                value = _coerce_value(value)
            elif key in {"valid_from", "valid_until"}:
                value = ensure_utc(value)
            setattr(reward, key, value)

    async def _validate(self, tenant_id: UUID, reward: Reward) -> None:
        points = reward.points_required
        if isinstance(points, bool) or not isinstance(points, int) or points < 1:
            raise ValidationError("Points required must be a whole number of at least 1", points_required=points)
        if reward.stock_quantity is not None and int(reward.stock_quantity) < 0:
            raise ValidationError("Stock quantity cannot be negative", stock_quantity=reward.stock_quantity)
        cap = reward.max_redemptions_per_customer
        if cap is not None and int(cap) < 0:
            raise ValidationError("Redemption limit cannot be negative", max_redemptions_per_customer=cap)
        valid_from = ensure_utc(reward.valid_from)
        valid_until = ensure_utc(reward.valid_until)
        if valid_from and valid_until and valid_until <= valid_from:
            raise ValidationError("Valid until must be after valid from", valid_from=valid_from, valid_until=valid_until)
        if reward.monetary_value_major is not None:
            currency = await self._config.get_currency(tenant_id)
            loyalty_settings = await self._config.get_settings(tenant_id)
            floor = constants.effective_minimum_reward_value(currency, loyalty_settings.min_reward_value)
            if Decimal(str(reward.monetary_value_major)) < floor:
                raise ValidationError(
                    f"Reward value must be at least {floor} {currency}",
                    monetary_value_major=reward.monetary_value_major,
                    minimum=floor,
                )


def _coerce_value(value: Any) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValidationError("Reward value must be a number", monetary_value_major=value) from exc
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("Reward value must be greater than 0", monetary_value_major=value)
    return amount


__all__ = ["PointsSuggestion", "RewardCatalogService"]
