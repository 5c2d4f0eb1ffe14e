from __future__ import annotations

from enum import Enum
from typing import Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class TierType(str, Enum):
    FREE = "free"
    PRO = "pro"
    PRO_PLUS = "pro_plus"


TIER_ALIASES: Dict[str, TierType] = {
    "free": TierType.FREE,
    "pro": TierType.PRO,
    "pro_plus": TierType.PRO_PLUS,
    "proplus": TierType.PRO_PLUS,
    "pro+": TierType.PRO_PLUS,
    "business": TierType.PRO_PLUS,
}


def normalize_tier(value: Union[TierType, str, None]) -> TierType:
    """Map any stored or user-supplied plan name to a tier; unknown means free."""
    if isinstance(value, TierType):
        return value
    key = str(value or "").strip().lower()
    return TIER_ALIASES.get(key, TierType.FREE)


class RateLimits(BaseModel):
    model_config = ConfigDict(extra="forbid")

    requests_per_minute: int = Field(..., ge=1)
    max_concurrent: int = Field(..., ge=1)


class FeatureFlags(BaseModel):
    model_config = ConfigDict(extra="forbid")

    summary: bool = False


class EntitlementBundle(BaseModel):
    """Resolved quotas, rate limits and feature flags for one tier."""
    model_config = ConfigDict(extra="forbid")

    tier: TierType
    name: str
    price_usd: float = Field(..., ge=0)
    transcription_minutes: int = Field(..., ge=0, description="Monthly transcription-minute quota")
    ai_tokens: int = Field(..., ge=0, description="Monthly aggregate AI-token quota")
    ai_requests: int = Field(..., ge=0, description="Monthly AI request quota")
    tokens_by_model: Dict[str, int] = Field(default_factory=dict, description="Per-model token allowance; keys form the model allowlist")
    features: FeatureFlags
    rate_limits: RateLimits

    def allows_model(self, model: str) -> bool:
        return model in self.tokens_by_model
