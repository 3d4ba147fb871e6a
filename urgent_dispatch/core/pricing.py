from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Sequence

from urgent_dispatch.core.domain import PricingRule
from urgent_dispatch.core.errors import ValidationError
from urgent_dispatch.core.ports import AsyncPricingRuleStore
from urgent_dispatch.infra.logging_config import get_logger
from urgent_dispatch.infra.metrics import AppMetrics

logger = get_logger(__name__)

DEFAULT_CATEGORY = "general"


@dataclass(frozen=True)
class PricingPolicy:
    default_multiplier: float = 1.5
    default_min_price: float = 0.0
    radius_step_km: float = 5.0

    @classmethod
    def from_settings(cls, s) -> "PricingPolicy":
        return cls(
            default_multiplier=s.urgent_default_multiplier,
            radius_step_km=s.urgent_radius_price_step_km,
        )


class UrgentPricing:
    """Price estimates from per-category rules, with safe defaults."""

    def __init__(self, *, rules: AsyncPricingRuleStore, policy: PricingPolicy | None = None) -> None:
        self.rules = rules
        self.policy = policy or PricingPolicy()

    def _default_rule(self, category: Optional[str]) -> PricingRule:
        return PricingRule(
            service_category=category or DEFAULT_CATEGORY,
            base_multiplier=self.policy.default_multiplier,
            min_price=self.policy.default_min_price,
        )

    async def get_pricing(self, service_category: Optional[str]) -> PricingRule:
        """Rule for the category; defaults when missing or when the lookup fails."""
        category = service_category or DEFAULT_CATEGORY
        try:
            rule = await self.rules.get_rule(category)
        except Exception as e:
            logger.warning(f"Pricing rule lookup failed for {category}: {e}")
            AppMetrics.lookup_failed("pricing")
            return self._default_rule(category)
        return rule or self._default_rule(category)

    async def estimate_price(self, service_category: Optional[str], radius_km: float) -> int:
        rule = await self.get_pricing(service_category)
        radius_factor = max(1.0, radius_km / self.policy.radius_step_km)
        return int(math.floor(rule.min_price * radius_factor * rule.base_multiplier + 0.5))

    async def list_rules(self) -> list[PricingRule]:
        return await self.rules.list_rules()

    async def upsert_rules(self, rules: Sequence[PricingRule]) -> list[PricingRule]:
        for rule in rules:
            if not rule.service_category or not rule.service_category.strip():
                raise ValidationError("Pricing rule needs a service category")
            if rule.base_multiplier <= 0:
                raise ValidationError(f"Multiplier for {rule.service_category} must be positive")
            if rule.min_price < 0:
                raise ValidationError(f"Minimum price for {rule.service_category} cannot be negative")

        saved = await self.rules.upsert_rules(rules)
        logger.info(f"Pricing rules updated: {', '.join(r.service_category for r in saved)}")
        return saved
