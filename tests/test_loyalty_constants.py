from decimal import Decimal

from pointledger_api.domain.loyalty import constants


def test_points_earned_floors_per_currency() -> None:
    assert constants.points_earned(Decimal("12.99"), "GBP") == 12
    assert constants.points_earned(Decimal("2999"), "NGN") == 2
    assert constants.points_earned(Decimal("0"), "GBP") == 0
    assert constants.points_earned(Decimal("-5"), "USD") == 0


def test_unknown_currency_falls_back_to_default() -> None:
    assert constants.normalize_currency("xyz") == constants.DEFAULT_CURRENCY
    assert constants.normalize_currency(" usd ") == "USD"
    assert constants.earn_unit(None) == Decimal("1")


def test_points_from_minor_units() -> None:
    assert constants.points_from_minor(1250, "GBP") == 12
    assert constants.points_from_minor(250_000, "NGN") == 2


def test_burn_rate_is_clamped() -> None:
    assert constants.clamp_burn_rate(Decimal("0.5")) == constants.BURN_RATE_MAX
    assert constants.clamp_burn_rate(Decimal("0")) == constants.BURN_RATE_MIN
    assert constants.clamp_burn_rate("not-a-number") == constants.BURN_RATE_DEFAULT
    assert constants.clamp_burn_rate(None) == constants.BURN_RATE_DEFAULT


def test_points_required_rounds_up() -> None:
    # 1 point is worth 0.01 GBP at the default burn rate.
    assert constants.points_required(Decimal("5"), "GBP") == 500
    assert constants.points_required(Decimal("5.001"), "GBP") == 501
    assert constants.points_required(Decimal("5"), "GBP", Decimal("0.05")) == 100
    assert constants.reward_value(500, "GBP") == Decimal("5.00")


def test_minimum_reward_value_can_only_be_raised() -> None:
    assert constants.effective_minimum_reward_value("GBP") == Decimal("5")
    assert constants.effective_minimum_reward_value("GBP", Decimal("2")) == Decimal("5")
    assert constants.effective_minimum_reward_value("GBP", Decimal("8")) == Decimal("8")
    assert constants.effective_minimum_reward_value("NGN") == Decimal("500")


def test_validate_burn_rate_reports_bounds() -> None:
    assert constants.validate_burn_rate("0.02").valid
    low = constants.validate_burn_rate("0.001")
    assert not low.valid and "less than" in (low.error or "")
    high = constants.validate_burn_rate(Decimal("0.2"))
    assert not high.valid and "exceed" in (high.error or "")
    assert not constants.validate_burn_rate("abc").valid
