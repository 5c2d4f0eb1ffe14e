from __future__ import annotations

from typing import Dict, Optional

from FinalRound.config.settings import PayPalConfig, get_settings
from FinalRound.schemas.entitlements import TierType


def plan_id_to_tier_table(config: Optional[PayPalConfig] = None) -> Dict[str, TierType]:
    """Static PayPal plan_id -> tier table built from PAYPAL_PLAN_ID_* settings."""
    config = config or get_settings().paypal
    table: Dict[str, TierType] = {}
    if config.plan_id_pro:
        table[config.plan_id_pro] = TierType.PRO
    if config.plan_id_pro_plus:
        table[config.plan_id_pro_plus] = TierType.PRO_PLUS
    return table


def map_plan_id_to_tier(plan_id: Optional[str], config: Optional[PayPalConfig] = None) -> Optional[TierType]:
    """Map a PayPal plan_id to a paid tier; None when the id is blank or unmapped."""
    key = str(plan_id or "").strip()
    if not key:
        return None
    return plan_id_to_tier_table(config).get(key)
