# urgent_dispatch/infra/pg_pricing_repo_async.py
from __future__ import annotations

from typing import Optional, Sequence

from urgent_dispatch.core.domain import PricingRule
from urgent_dispatch.infra.db_resilience_async import safe_db_conn
from urgent_dispatch.infra.logging_config import get_logger

logger = get_logger(__name__)


def _row_to_rule(row) -> PricingRule:
    return PricingRule(
        service_category=row["service_category"],
        base_multiplier=float(row["base_multiplier"]),
        min_price=float(row["min_price"]),
    )


class AsyncPostgresPricingRuleStore:
    """Per-category urgent pricing rules (urgent_pricing_rules table)."""

    async def get_rule(self, service_category: str) -> Optional[PricingRule]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM urgent_pricing_rules WHERE lower(service_category) = lower($1)",
                service_category,
            )
            return _row_to_rule(row) if row else None

    async def list_rules(self) -> list[PricingRule]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch("SELECT * FROM urgent_pricing_rules ORDER BY service_category")
            return [_row_to_rule(row) for row in rows]

    async def upsert_rules(self, rules: Sequence[PricingRule]) -> list[PricingRule]:
        saved: list[PricingRule] = []
        async with safe_db_conn(autocommit=False) as conn:
            for rule in rules:
                row = await conn.fetchrow(
                    """
                    INSERT INTO urgent_pricing_rules (service_category, base_multiplier, min_price)
                    VALUES ($1, $2, $3)
                    ON CONFLICT (service_category) DO UPDATE
                    SET base_multiplier = EXCLUDED.base_multiplier,
                        min_price = EXCLUDED.min_price,
                        updated_at = now()
                    RETURNING *
                    """,
                    rule.service_category.strip(),
                    rule.base_multiplier,
                    rule.min_price,
                )
                saved.append(_row_to_rule(row))
        return saved
