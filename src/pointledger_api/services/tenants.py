"""Tenant configuration provider backed by the ``tenants`` table.

Per-tenant loyalty settings used to live in an untyped JSON bag that mixed
snake_case and camelCase keys. ``TenantLoyaltySettings`` is the typed,
versioned replacement; ``from_document`` upgrades legacy documents on read
and ``to_document`` always writes the current schema.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Mapping, Protocol
from uuid import UUID

from loguru import logger
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as SchemaValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pointledger_api.domain.loyalty import constants
from pointledger_api.domain.loyalty.errors import CustomerNotFound, TenantNotFound, ValidationError
from pointledger_api.models.customer import Customer, CustomerLoyaltyStatus
from pointledger_api.models.tenant import Tenant

SETTINGS_SCHEMA_VERSION = 2

# Notification event kind -> preference flag on TenantLoyaltySettings.
_PREFERENCE_BY_EVENT: dict[str, str] = {
    "purchase-recorded": "notify_purchase",
    "claim-submitted": "notify_claims",
    "claim-approved": "notify_claims",
    "claim-rejected": "notify_claims",
    "redemption-created": "notify_redemption",
    "redemption-fulfilled": "notify_redemption",
    "redemption-cancelled": "notify_redemption",
    "redemption-expired": "notify_redemption",
    "points-expired": "notify_points_expiry",
    "points-expiring-soon": "notify_points_expiry_warning",
    "welcome-bonus": "welcome_bonus_enabled",
}


def _alias(*names: str) -> AliasChoices:
    return AliasChoices(*names)


class TenantLoyaltySettings(BaseModel):
    """Typed loyalty configuration for a tenant."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    schema_version: int = Field(default=SETTINGS_SCHEMA_VERSION, validation_alias=_alias("schema_version", "schemaVersion"))
    burn_rate: Decimal = Field(default=constants.BURN_RATE_DEFAULT, validation_alias=_alias("burn_rate", "burnRate"))
    welcome_bonus_enabled: bool = Field(
        default=True,
        validation_alias=_alias("welcome_bonus_enabled", "welcomeBonusEnabled"),
    )
    welcome_bonus_points: int = Field(
        default=constants.DEFAULT_WELCOME_BONUS,
        ge=0,
        validation_alias=_alias("welcome_bonus_points", "welcomeBonusPoints"),
    )
    points_expiry_enabled: bool = Field(
        default=False,
        validation_alias=_alias("points_expiry_enabled", "pointsExpiryEnabled"),
    )
    points_expiry_days: int = Field(
        default=365,
        ge=1,
        validation_alias=_alias("points_expiry_days", "pointsExpiryDays"),
    )
    expiry_reminder_days: int = Field(
        default=7,
        ge=1,
        validation_alias=_alias("expiry_reminder_days", "expiryReminderDays"),
    )
    min_reward_value: Decimal | None = Field(
        default=None,
        validation_alias=_alias("min_reward_value", "minRewardValue", "min_reward_value_major", "minRewardValueMajor"),
    )
    claim_high_amount_threshold: Decimal = Field(
        default=Decimal("10000"),
        validation_alias=_alias("claim_high_amount_threshold", "claimHighAmountThreshold"),
    )
    notify_purchase: bool = Field(default=True, validation_alias=_alias("notify_purchase", "notifyPurchase"))
    notify_redemption: bool = Field(default=True, validation_alias=_alias("notify_redemption", "notifyRedemption"))
    notify_claims: bool = Field(
        default=True,
        validation_alias=_alias("notify_claims", "notify_new_claims", "notifyNewClaims"),
    )
    notify_points_expiry: bool = Field(
        default=True,
        validation_alias=_alias("notify_points_expiry", "notify_expiry", "notifyExpiry"),
    )
    notify_points_expiry_warning: bool = Field(
        default=True,
        validation_alias=_alias("notify_points_expiry_warning", "notifyPointsExpiryWarning"),
    )

    @field_validator("burn_rate", mode="before")
    @classmethod
    def _clamp_burn_rate(cls, value: Any) -> Decimal:
        return constants.clamp_burn_rate(value)

    @classmethod
    def from_document(cls, document: Mapping[str, Any] | None) -> "TenantLoyaltySettings":
        """Build settings from a stored document, upgrading older schemas."""

        if not document:
            return cls()
        payload = dict(document)
        version = payload.get("schema_version") or payload.get("schemaVersion") or 1
        if int(version) < SETTINGS_SCHEMA_VERSION:
            payload = _migrate_v1(payload)
        return cls.model_validate(payload)

    def to_document(self) -> dict[str, Any]:
        document = self.model_dump(mode="json")
        document["schema_version"] = SETTINGS_SCHEMA_VERSION
        return document

    def earn_expiry_for(self, earned_at: datetime) -> datetime | None:
        """Expiry stamped on credit transactions, or ``None`` when disabled."""

        if not self.points_expiry_enabled:
            return None
        return earned_at + timedelta(days=self.points_expiry_days)

    def preference_enabled(self, event_kind: str) -> bool:
        flag = _PREFERENCE_BY_EVENT.get(event_kind)
        if flag is None:
            return True
        return bool(getattr(self, flag))


def _migrate_v1(payload: dict[str, Any]) -> dict[str, Any]:
    """Version 1 stored expiry as value + unit and allowed null toggles."""

    unit = str(payload.pop("points_expiry_unit", payload.pop("pointsExpiryUnit", "days")) or "days").lower()
    for key in ("points_expiry_days", "pointsExpiryDays"):
        if key in payload and payload[key] is not None and unit.startswith("month"):
            payload[key] = int(payload[key]) * 30
    for key, value in list(payload.items()):
        if value is None:
            payload.pop(key)
    payload["schema_version"] = SETTINGS_SCHEMA_VERSION
    return payload


class TenantConfigProvider(Protocol):
    """Currency, burn-rate and preference facts consumed by ledger workflows."""

    async def get_currency(self, tenant_id: UUID) -> str:
        ...

    async def get_burn_rate(self, tenant_id: UUID) -> Decimal:
        ...

    async def get_timezone(self, tenant_id: UUID) -> str:
        ...

    async def get_settings(self, tenant_id: UUID) -> TenantLoyaltySettings:
        ...

    async def is_blocked(self, customer_id: UUID) -> bool:
        ...

    async def notify_preferences_enabled(self, tenant_id: UUID, kind: str) -> bool:
        ...


class DatabaseTenantConfigProvider:
    """Read tenant configuration through the active session."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def _tenant(self, tenant_id: UUID) -> Tenant:
        # Session.get serves from the identity map and reloads rows expired by a rollback.
        tenant = await self._db.get(Tenant, tenant_id)
        if tenant is None:
            raise TenantNotFound("Tenant not found", tenant_id=tenant_id)
        return tenant

    async def get_tenant_by_vendor_code(self, vendor_code: str) -> Tenant:
        code = (vendor_code or "").strip().upper()
        if not code:
            raise ValidationError("Vendor code is required")
        stmt = select(Tenant).where(Tenant.vendor_code == code)
        tenant = (await self._db.execute(stmt)).scalar_one_or_none()
        if tenant is None:
            raise TenantNotFound("Invalid vendor code", vendor_code=code)
        return tenant

    async def get_currency(self, tenant_id: UUID) -> str:
        tenant = await self._tenant(tenant_id)
        return constants.normalize_currency(tenant.currency)

    async def get_burn_rate(self, tenant_id: UUID) -> Decimal:
        return (await self.get_settings(tenant_id)).burn_rate

    async def get_timezone(self, tenant_id: UUID) -> str:
        tenant = await self._tenant(tenant_id)
        return tenant.timezone or "UTC"

    async def get_settings(self, tenant_id: UUID) -> TenantLoyaltySettings:
        tenant = await self._tenant(tenant_id)
        return TenantLoyaltySettings.from_document(tenant.settings_json)

    async def is_blocked(self, customer_id: UUID) -> bool:
        customer = await self._db.get(Customer, customer_id)
        if customer is None:
            raise CustomerNotFound("Customer not found", customer_id=customer_id)
        return customer.loyalty_status == CustomerLoyaltyStatus.BLOCKED

    async def notify_preferences_enabled(self, tenant_id: UUID, kind: str) -> bool:
        return (await self.get_settings(tenant_id)).preference_enabled(kind)

    async def update_settings(self, tenant_id: UUID, changes: Mapping[str, Any]) -> TenantLoyaltySettings:
        """Apply a partial update and persist the current schema."""

        tenant = await self._tenant(tenant_id)
        current = TenantLoyaltySettings.from_document(tenant.settings_json)
        merged = {**current.model_dump(), **dict(changes)}
        if "burn_rate" in changes:
            validation = constants.validate_burn_rate(changes["burn_rate"])
            if not validation.valid:
                raise ValidationError(validation.error or "Invalid burn rate", burn_rate=changes["burn_rate"])
        try:
            updated = TenantLoyaltySettings.model_validate(merged)
        except SchemaValidationError as exc:
            raise ValidationError("Invalid loyalty settings", errors=exc.error_count()) from exc
        tenant.settings_json = updated.to_document()
        await self._db.flush()
        logger.info("Tenant loyalty settings updated", tenant_id=str(tenant_id), keys=sorted(changes))
        return updated


__all__ = [
    "DatabaseTenantConfigProvider",
    "SETTINGS_SCHEMA_VERSION",
    "TenantConfigProvider",
    "TenantLoyaltySettings",
]
