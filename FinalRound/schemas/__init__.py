"""
Pydantic schemas shared by the billing core and the web layer.
"""

from .common import BaseSchema, ErrorCode, ErrorResponse, SuccessResponse
from .entitlements import EntitlementBundle, FeatureFlags, RateLimits, TierType, normalize_tier
from .billing import SubscriptionStatus

__all__ = [
    "BaseSchema",
    "ErrorCode",
    "ErrorResponse",
    "SuccessResponse",
    "EntitlementBundle",
    "FeatureFlags",
    "RateLimits",
    "TierType",
    "normalize_tier",
    "SubscriptionStatus",
]
