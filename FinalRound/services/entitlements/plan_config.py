"""
Plan limits loader and Entitlement Resolver.

`resolve_entitlements(tier)` is the pure tier -> bundle mapping other
subsystems consume. Unknown or missing tiers resolve to the free bundle.
"""

from __future__ import annotations

import hashlib
import os
from functools import lru_cache
from typing import Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from FinalRound.config.settings import get_settings
from FinalRound.schemas.entitlements import (
    EntitlementBundle,
    FeatureFlags,
    RateLimits,
    TierType,
    normalize_tier,
)
from FinalRound.utils.exceptions import ConfigException


class TierPlanConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    price_usd: float = Field(..., ge=0)
    transcription_minutes: int = Field(..., ge=0)
    ai_tokens: int = Field(..., ge=0)
    ai_requests: int = Field(..., ge=0)
    tokens_by_model: Dict[str, int]
    features: FeatureFlags
    rate_limits: RateLimits

    @model_validator(mode="after")
    def validate_token_allowances(self) -> "TierPlanConfig":
        if any(v < 0 for v in self.tokens_by_model.values()):
            raise ValueError("tokens_by_model values must be >= 0")
        return self


class PlansConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    version: Optional[str] = None
    tiers: Dict[str, TierPlanConfig]

    @model_validator(mode="after")
    def validate_tiers(self) -> "PlansConfig":
        required = {t.value for t in TierType}
        actual = set(self.tiers.keys())
        if required - actual:
            raise ValueError(f"Missing tier entries: {sorted(required - actual)}")
        if actual - required:
            raise ValueError(f"Unknown tier entries: {sorted(actual - required)}")
        return self


class PlansConfigLoader:
    def __init__(self, path: Optional[str] = None):
        self._path = path or get_settings().billing.plans_path
        self._fingerprint: Optional[str] = None

    @lru_cache(maxsize=1)
    def get(self) -> PlansConfig:
        if not os.path.exists(self._path):
            raise ConfigException(f"Plans config not found: {self._path}")

        with open(self._path, "r", encoding="utf-8") as f:
            content = f.read()
        self._fingerprint = hashlib.sha256(content.encode("utf-8")).hexdigest()
        data = yaml.safe_load(content) or {}

        try:
            return PlansConfig.model_validate(data)
        except ValidationError as exc:
            raise ConfigException(f"Invalid plans config: {exc}") from exc

    def fingerprint(self) -> str:
        """sha256 of the plans file, loading it if needed."""
        if self._fingerprint is None:
            self.get()
        return self._fingerprint or ""


_loader: Optional[PlansConfigLoader] = None


def get_plans_loader() -> PlansConfigLoader:
    global _loader
    if _loader is None:
        _loader = PlansConfigLoader()
    return _loader


def set_plans_loader(loader: Optional[PlansConfigLoader]) -> None:
    global _loader
    _loader = loader


def resolve_entitlements(tier: Union[TierType, str, None]) -> EntitlementBundle:
    """Map a tier to its entitlement bundle; never raises for unknown tiers."""
    resolved = normalize_tier(tier)
    plan = get_plans_loader().get().tiers[resolved.value]
    return EntitlementBundle(tier=resolved, **plan.model_dump())


def list_plans() -> List[EntitlementBundle]:
    return [resolve_entitlements(t) for t in TierType]


def plan_display_name(tier: Union[TierType, str, None]) -> str:
    """Human name used in emails: Free / Pro / Pro Plus."""
    resolved = normalize_tier(tier)
    return {
        TierType.FREE: "Free",
        TierType.PRO: "Pro",
        TierType.PRO_PLUS: "Pro Plus",
    }[resolved]
