"""Loyalty ledger service exports."""

from .claims import ClaimReview, ClaimView, PurchaseClaimService, parse_purchase_date, start_of_day  # noqa: F401
from .customers import CustomerEnrollmentService, EnrollmentResult, normalize_phone, phone_variants  # noqa: F401
from .expiry import PointsExpiryService  # noqa: F401
from .ledger import ExpiryOutcome, LedgerStore, TransactionPage  # noqa: F401
from .purchases import PurchaseRecorder, PurchaseResult  # noqa: F401
from .redemptions import (  # noqa: F401
    RedemptionResult,
    RedemptionStats,
    RewardRedemptionService,
    generate_redemption_code,
    normalize_redemption_code,
)
from .rewards import PointsSuggestion, RewardCatalogService  # noqa: F401

__all__ = [
    "ClaimReview",
    "ClaimView",
    "CustomerEnrollmentService",
    "EnrollmentResult",
    "ExpiryOutcome",
    "LedgerStore",
    "PointsExpiryService",
    "PointsSuggestion",
    "PurchaseClaimService",
    "PurchaseRecorder",
    "PurchaseResult",
    "RedemptionResult",
    "RedemptionStats",
    "RewardCatalogService",
    "RewardRedemptionService",
    "TransactionPage",
    "generate_redemption_code",
    "normalize_phone",
    "normalize_redemption_code",
    "parse_purchase_date",
    "phone_variants",
    "start_of_day",
]
