"""SQLAlchemy models package."""

from .tenant import Tenant  # noqa: F401
from .customer import Customer, CustomerLoyaltyStatus  # noqa: F401
from .purchase import (  # noqa: F401
    Purchase,
    PurchaseClaim,
    PurchaseClaimStatus,
    PurchaseSource,
)
from .loyalty import (  # noqa: F401
    EXPIRABLE_TRANSACTION_TYPES,
    OPEN_REDEMPTION_STATUSES,
    CustomerPointsBalance,
    PointsTransaction,
    PointsTransactionType,
    Reward,
    RewardRedemption,
    RewardRedemptionStatus,
)
from .channel_session import ChannelSession  # noqa: F401

__all__ = [
    "ChannelSession",
    "Customer",
    "CustomerLoyaltyStatus",
    "CustomerPointsBalance",
    "EXPIRABLE_TRANSACTION_TYPES",
    "OPEN_REDEMPTION_STATUSES",
    "PointsTransaction",
    "PointsTransactionType",
    "Purchase",
    "PurchaseClaim",
    "PurchaseClaimStatus",
    "PurchaseSource",
    "Reward",
    "RewardRedemption",
    "RewardRedemptionStatus",
    "Tenant",
]
