# tests/test_pricing.py
"""Tests for urgent price estimation and pricing rule administration"""
import pytest

from urgent_dispatch.core.domain import PricingRule
from urgent_dispatch.core.errors import ValidationError
from urgent_dispatch.core.pricing import UrgentPricing


class TestGetPricing:
    @pytest.mark.asyncio
    async def test_defaults_when_no_rule(self, harness):
        rule = await harness.pricing.get_pricing(None)

        assert rule.service_category == "general"
        assert rule.base_multiplier == 1.5
        assert rule.min_price == 0

    @pytest.mark.asyncio
    async def test_lookup_failure_degrades_to_defaults(self, harness):
        harness.pricing_rules.fail = True

        rule = await harness.pricing.get_pricing("plumber")

        assert rule.service_category == "plumber"
        assert rule.base_multiplier == 1.5


class TestEstimatePrice:
    @pytest.mark.asyncio
    async def test_radius_below_step_uses_factor_one(self, harness):
        await harness.pricing.upsert_rules([PricingRule("plumber", 1.5, 100)])
        assert await harness.pricing.estimate_price("plumber", 3) == 150

    @pytest.mark.asyncio
    async def test_radius_scales_price(self, harness):
        await harness.pricing.upsert_rules([PricingRule("plumber", 1.5, 100)])
        assert await harness.pricing.estimate_price("plumber", 10) == 300

    @pytest.mark.asyncio
    async def test_rounds_half_up(self, harness):
        await harness.pricing.upsert_rules([PricingRule("locksmith", 1.0, 5)])
        # 5 * (7.5 / 5) * 1.0 = 7.5
        assert await harness.pricing.estimate_price("locksmith", 7.5) == 8

    @pytest.mark.asyncio
    async def test_no_rule_means_zero(self, harness):
        assert await harness.pricing.estimate_price("unknown", 20) == 0


class TestUpsertRules:
    @pytest.mark.asyncio
    async def test_upsert_and_list(self, harness):
        await harness.pricing.upsert_rules([PricingRule("plumber", 2.0, 50), PricingRule("electrician", 1.2, 80)])

        rules = await harness.pricing.list_rules()

        assert [r.service_category for r in rules] == ["electrician", "plumber"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("rule", [
        PricingRule("", 1.5, 10),
        PricingRule("  ", 1.5, 10),
        PricingRule("plumber", 0, 10),
        PricingRule("plumber", -1, 10),
        PricingRule("plumber", 1.5, -0.01),
    ])
    async def test_invalid_rules_rejected(self, harness, rule):
        with pytest.raises(ValidationError):
            await harness.pricing.upsert_rules([rule])

        assert await harness.pricing.list_rules() == []

    @pytest.mark.asyncio
    async def test_policy_overrides_defaults(self, harness):
        from urgent_dispatch.core.pricing import PricingPolicy

        pricing = UrgentPricing(
            rules=harness.pricing_rules,
            policy=PricingPolicy(default_multiplier=2.0, default_min_price=40, radius_step_km=10),
        )

        assert await pricing.estimate_price(None, 20) == 160
