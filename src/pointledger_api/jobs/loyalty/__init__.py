"""Loyalty job exports."""

from .claims import expire_stale_claims  # noqa: F401
from .expiry import enforce_points_expiry, warn_expiring_points  # noqa: F401
from .redemptions import expire_stale_redemptions  # noqa: F401

__all__ = [
    "enforce_points_expiry",
    "expire_stale_claims",
    "expire_stale_redemptions",
    "warn_expiring_points",
]
