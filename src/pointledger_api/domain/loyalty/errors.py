"""Typed failures raised by ledger workflows.

Every error is expected and recoverable: it carries a stable ``code``, a
user-presentable message and keyword context for rendering or logging.
"""

from __future__ import annotations

from typing import Any


class LedgerError(Exception):
    code = "ledger_error"
    status_code = 400

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def as_dict(self) -> dict[str, Any]:
        return {
            "detail": self.message,
            "code": self.code,
            "context": {key: str(value) for key, value in self.context.items()},
        }


class ValidationError(LedgerError):
    code = "validation_error"


class InvalidAmount(ValidationError):
    code = "invalid_amount"


class InvalidDate(ValidationError):
    code = "invalid_date"


class FutureDatedPurchase(ValidationError):
    code = "future_dated_purchase"


class RewardUnavailable(ValidationError):
    code = "reward_unavailable"


class RedemptionLimitReached(ValidationError):
    code = "redemption_limit_reached"


class NotFoundError(LedgerError):
    code = "not_found"
    status_code = 404


class TenantNotFound(NotFoundError):
    code = "tenant_not_found"


class CustomerNotFound(NotFoundError):
    code = "customer_not_found"


class RewardNotFound(NotFoundError):
    code = "reward_not_found"


class RedemptionNotFound(NotFoundError):
    code = "redemption_not_found"


class ClaimNotFound(NotFoundError):
    code = "claim_not_found"


class CustomerBlocked(LedgerError):
    code = "customer_blocked"
    status_code = 403


class InsufficientBalance(LedgerError):
    code = "insufficient_balance"

    def __init__(self, message: str = "Insufficient points balance", **context: Any) -> None:
        super().__init__(message, **context)


class OutOfStock(LedgerError):
    code = "out_of_stock"
    status_code = 409

    def __init__(self, message: str = "Reward is out of stock", **context: Any) -> None:
        super().__init__(message, **context)


class AlreadyProcessed(LedgerError):
    code = "already_processed"
    status_code = 409


class AlreadyFulfilled(AlreadyProcessed):
    code = "already_fulfilled"


class RedemptionExpired(AlreadyProcessed):
    code = "redemption_expired"


class RateLimited(LedgerError):
    code = "rate_limited"
    status_code = 429


class DuplicateSubmission(LedgerError):
    code = "duplicate_submission"
    status_code = 409


class ExpiredWindow(LedgerError):
    code = "expired_window"


__all__ = [
    "AlreadyFulfilled",
    "AlreadyProcessed",
    "ClaimNotFound",
    "CustomerBlocked",
    "CustomerNotFound",
    "DuplicateSubmission",
    "ExpiredWindow",
    "FutureDatedPurchase",
    "InsufficientBalance",
    "InvalidAmount",
    "InvalidDate",
    "LedgerError",
    "NotFoundError",
    "OutOfStock",
    "RateLimited",
    "RedemptionExpired",
    "RedemptionLimitReached",
    "RedemptionNotFound",
    "RewardNotFound",
    "RewardUnavailable",
    "TenantNotFound",
    "ValidationError",
]
