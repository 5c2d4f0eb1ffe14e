"""
Entitlements - tier -> quota / rate-limit / feature bundle resolution.
"""

from .billing_period import billing_period_for
from .plan_config import (
    PlansConfigLoader,
    get_plans_loader,
    list_plans,
    plan_display_name,
    resolve_entitlements,
    set_plans_loader,
)
from .plan_mapping import map_plan_id_to_tier, plan_id_to_tier_table

__all__ = [
    "PlansConfigLoader",
    "billing_period_for",
    "get_plans_loader",
    "list_plans",
    "map_plan_id_to_tier",
    "plan_display_name",
    "plan_id_to_tier_table",
    "resolve_entitlements",
    "set_plans_loader",
]
