"""Currency-fixed earn rules and tenant-bounded burn rules.

Earning is fixed per currency: ``floor(amount / earn_unit)`` points, never
configurable by a tenant. Burning is tenant-configurable within
``[BURN_RATE_MIN, BURN_RATE_MAX]``; one point is worth ``earn_unit * burn_rate``
in major currency units. Earn rounds down and cost rounds up.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

DEFAULT_CURRENCY = "GBP"

EARN_UNITS: dict[str, Decimal] = {
    "GBP": Decimal("1"),
    "USD": Decimal("1"),
    "EUR": Decimal("1"),
    "NGN": Decimal("1000"),
}

BURN_RATE_MIN = Decimal("0.01")
BURN_RATE_MAX = Decimal("0.05")
BURN_RATE_DEFAULT = Decimal("0.01")

MINIMUM_REWARD_VALUE: dict[str, Decimal] = {
    "GBP": Decimal("5"),
    "USD": Decimal("5"),
    "EUR": Decimal("5"),
    "NGN": Decimal("500"),
}

CURRENCY_MINOR_UNITS: dict[str, int] = {
    "GBP": 100,
    "USD": 100,
    "EUR": 100,
    "NGN": 100,
}

DEFAULT_WELCOME_BONUS = 10


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def normalize_currency(currency: str | None) -> str:
    code = (currency or "").strip().upper()
    return code if code in EARN_UNITS else DEFAULT_CURRENCY


def earn_unit(currency: str | None) -> Decimal:
    return EARN_UNITS[normalize_currency(currency)]


def points_earned(amount_major: Decimal | float | int | str, currency: str | None) -> int:
    """Points for a purchase in major units, floored."""

    amount = _to_decimal(amount_major)
    if amount <= 0:
        return 0
    return int(math.floor(amount / earn_unit(currency)))


def points_from_minor(amount_minor: int, currency: str | None) -> int:
    return points_earned(minor_to_major(amount_minor, currency), currency)


def minor_to_major(amount_minor: int, currency: str | None) -> Decimal:
    minor_units = CURRENCY_MINOR_UNITS.get(normalize_currency(currency), 100)
    return Decimal(int(amount_minor)) / Decimal(minor_units)


def clamp_burn_rate(burn_rate: Decimal | float | str | None) -> Decimal:
    if burn_rate is None:
        return BURN_RATE_DEFAULT
    try:
        rate = _to_decimal(burn_rate)
    except (InvalidOperation, TypeError, ValueError):
        return BURN_RATE_DEFAULT
    if not rate.is_finite():
        return BURN_RATE_DEFAULT
    return max(BURN_RATE_MIN, min(BURN_RATE_MAX, rate))


def point_value(currency: str | None, burn_rate: Decimal | float | str | None = BURN_RATE_DEFAULT) -> Decimal:
    """Redemption value of one point in major units."""

    return earn_unit(currency) * clamp_burn_rate(burn_rate)


def points_required(
    reward_value_major: Decimal | float | int | str,
    currency: str | None,
    burn_rate: Decimal | float | str | None = BURN_RATE_DEFAULT,
) -> int:
    """Points a reward of the given value costs, ceiled."""

    value = _to_decimal(reward_value_major)
    return int(math.ceil(value / point_value(currency, burn_rate)))


def reward_value(
    points: int,
    currency: str | None,
    burn_rate: Decimal | float | str | None = BURN_RATE_DEFAULT,
) -> Decimal:
    return Decimal(int(points)) * point_value(currency, burn_rate)


def minimum_reward_value(currency: str | None) -> Decimal:
    return MINIMUM_REWARD_VALUE[normalize_currency(currency)]


def effective_minimum_reward_value(currency: str | None, tenant_minimum: Decimal | float | None = None) -> Decimal:
    """Tenants may raise the floor, never lower it."""

    floor = minimum_reward_value(currency)
    if tenant_minimum is None:
        return floor
    return max(floor, _to_decimal(tenant_minimum))


@dataclass(frozen=True)
class BurnRateValidation:
    valid: bool
    value: Decimal | None = None
    error: str | None = None


def validate_burn_rate(burn_rate: Any) -> BurnRateValidation:
    try:
        rate = _to_decimal(burn_rate)
    except (InvalidOperation, TypeError, ValueError):
        return BurnRateValidation(valid=False, error="Burn rate must be a number")
    if not rate.is_finite():
        return BurnRateValidation(valid=False, error="Burn rate must be a number")
    if rate < BURN_RATE_MIN:
        return BurnRateValidation(valid=False, error=f"Burn rate cannot be less than {BURN_RATE_MIN * 100}%")
    if rate > BURN_RATE_MAX:
        return BurnRateValidation(valid=False, error=f"Burn rate cannot exceed {BURN_RATE_MAX * 100}%")
    return BurnRateValidation(valid=True, value=rate)


__all__ = [
    "BURN_RATE_DEFAULT",
    "BURN_RATE_MAX",
    "BURN_RATE_MIN",
    "BurnRateValidation",
    "CURRENCY_MINOR_UNITS",
    "DEFAULT_CURRENCY",
    "DEFAULT_WELCOME_BONUS",
    "EARN_UNITS",
    "MINIMUM_REWARD_VALUE",
    "clamp_burn_rate",
    "earn_unit",
    "effective_minimum_reward_value",
    "minimum_reward_value",
    "minor_to_major",
    "normalize_currency",
    "point_value",
    "points_earned",
    "points_from_minor",
    "points_required",
    "reward_value",
    "validate_burn_rate",
]
