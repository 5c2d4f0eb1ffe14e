"""
Plan limits, plan-id mapping and billing period tests
"""
from datetime import datetime

import pytest

from FinalRound.config.settings import PayPalConfig
from FinalRound.database.models import Subscription
from FinalRound.schemas.entitlements import TierType, normalize_tier
from FinalRound.services.entitlements import (
    PlansConfigLoader,
    billing_period_for,
    list_plans,
    map_plan_id_to_tier,
    plan_display_name,
    resolve_entitlements,
    set_plans_loader,
)
from FinalRound.services.entitlements.billing_period import add_months
from FinalRound.utils.exceptions import ConfigException
from tests.conftest import PLAN_PRO, PLAN_PRO_PLUS


class TestResolveEntitlements:
    def test_paid_tiers(self, settings):
        pro = resolve_entitlements("pro")
        plus = resolve_entitlements(TierType.PRO_PLUS)

        assert pro.transcription_minutes == 600
        assert pro.features.summary is True
        assert plus.rate_limits.max_concurrent == 3
        assert plus.allows_model("gpt-5.2")
        assert not pro.allows_model("gpt-5.2")

    @pytest.mark.parametrize("tier", [None, "", "enterprise", "FREE"])
    def test_unknown_tier_resolves_to_free(self, settings, tier):
        bundle = resolve_entitlements(tier)
        assert bundle.tier == TierType.FREE
        assert bundle.features.summary is False

    def test_aliases(self):
        assert normalize_tier("Pro+") == TierType.PRO_PLUS
        assert normalize_tier("business") == TierType.PRO_PLUS
        assert plan_display_name("pro_plus") == "Pro Plus"

    def test_list_plans_in_tier_order(self, settings):
        assert [p.tier for p in list_plans()] == [TierType.FREE, TierType.PRO, TierType.PRO_PLUS]


class TestPlansLoader:
    def test_missing_file(self, settings, tmp_path):
        with pytest.raises(ConfigException):
            PlansConfigLoader(str(tmp_path / "nope.yaml")).get()

    def test_missing_tier_is_rejected(self, settings, tmp_path):
        path = tmp_path / "plans.yaml"
        path.write_text("tiers:\n  free:\n    name: Free\n", encoding="utf-8")
        with pytest.raises(ConfigException):
            PlansConfigLoader(str(path)).get()

    def test_fingerprint_is_stable(self, settings):
        loader = PlansConfigLoader()
        set_plans_loader(loader)
        assert len(loader.fingerprint()) == 64
        assert loader.fingerprint() == PlansConfigLoader().fingerprint()


class TestPlanMapping:
    def test_configured_ids(self, settings):
        assert map_plan_id_to_tier(PLAN_PRO) == TierType.PRO
        assert map_plan_id_to_tier(f"  {PLAN_PRO_PLUS} ") == TierType.PRO_PLUS

    def test_unmapped_or_blank(self, settings):
        assert map_plan_id_to_tier("P-OTHER") is None
        assert map_plan_id_to_tier(None) is None
        assert map_plan_id_to_tier("") is None

    def test_explicit_config(self):
        config = PayPalConfig()
        config.plan_id_pro = "P-A"
        config.plan_id_pro_plus = ""
        assert map_plan_id_to_tier("P-A", config) == TierType.PRO
        assert map_plan_id_to_tier("", config) is None


class TestBillingPeriod:
    def record(self, **kwargs):
        defaults = dict(
            processor_subscription_id="I-1",
            status="active",
            created_at=datetime(2025, 11, 20, 8, 30),
        )
        defaults.update(kwargs)
        return Subscription(**defaults)

    def test_free_user_gets_calendar_month(self):
        assert billing_period_for(None, datetime(2026, 12, 31, 23, 0)) == (
            datetime(2026, 12, 1), datetime(2027, 1, 1)
        )

    def test_active_with_next_billing_time(self):
        record = self.record(next_billing_time=datetime(2026, 3, 31, 10, 0))
        assert billing_period_for(record, datetime(2026, 3, 10)) == (
            datetime(2026, 2, 28), datetime(2026, 3, 31)
        )

    def test_active_without_next_billing_uses_creation_anchor(self):
        record = self.record()
        assert billing_period_for(record, datetime(2026, 1, 25)) == (
            datetime(2026, 1, 20), datetime(2026, 2, 20)
        )
        assert billing_period_for(record, datetime(2026, 1, 5)) == (
            datetime(2025, 12, 20), datetime(2026, 1, 20)
        )

    def test_past_next_billing_time_falls_back_to_anchor(self):
        record = self.record(next_billing_time=datetime(2026, 1, 1))
        start, end = billing_period_for(record, datetime(2026, 1, 25))
        assert (start, end) == (datetime(2026, 1, 20), datetime(2026, 2, 20))

    def test_cancelled_user_gets_calendar_month(self):
        record = self.record(status="cancelled")
        assert billing_period_for(record, datetime(2026, 2, 14)) == (
            datetime(2026, 2, 1), datetime(2026, 3, 1)
        )

    def test_add_months_clamps_day(self):
        assert add_months(datetime(2026, 1, 31), 1) == datetime(2026, 2, 28)
        assert add_months(datetime(2024, 3, 31), -1) == datetime(2024, 2, 29)
