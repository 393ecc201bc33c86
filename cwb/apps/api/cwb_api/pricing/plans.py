"""
Runtime plan table: price reference → quota resolution.

Unknown prices are not rejected. They resolve through the named fallback rule
UNKNOWN_PRICE_LOWEST_TIER to the cheapest tier's quota so that a newly created
processor price never locks a paying tenant out.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .models import PlanModel, PlanTableModel
from .ssot_loader import get_plan_loader

logger = logging.getLogger(__name__)

UNKNOWN_PRICE_FALLBACK_RULE = "UNKNOWN_PRICE_LOWEST_TIER"


@dataclass(frozen=True)
class ResolvedPlan:
    """Outcome of resolving a processor price reference"""
    price_ref: str
    quota: int
    display_name: str
    fallback_rule: Optional[str] = None  # set when the price was not in the table

    @property
    def is_fallback(self) -> bool:
        return self.fallback_rule is not None


class PlanTable:
    """Static price → {quota, display_name} mapping"""

    def __init__(self, model: PlanTableModel):
        self.model = model
        self._by_ref: dict[str, PlanModel] = {plan.price_ref: plan for plan in model.plans}
        self._lowest = min(model.plans, key=lambda plan: plan.quota)

    @property
    def trial_price_ref(self) -> str:
        return self.model.trial.price_ref

    @property
    def trial_duration_days(self) -> int:
        return self.model.trial.duration_days

    @property
    def trial_reminder_days(self) -> list[int]:
        return sorted(self.model.trial.reminder_days)

    @property
    def lowest_tier(self) -> PlanModel:
        return self._lowest

    def get(self, price_ref: str) -> Optional[PlanModel]:
        """Exact lookup; None for prices outside the table (admin tooling uses this)."""
        return self._by_ref.get(price_ref)

    def resolve(self, price_ref: Optional[str]) -> ResolvedPlan:
        """Resolve a processor price to a quota, applying the fallback rule."""
        plan = self._by_ref.get(price_ref) if price_ref else None
        if plan is not None:
            return ResolvedPlan(
                price_ref=plan.price_ref,
                quota=plan.quota,
                display_name=plan.display_name,
            )

        logger.warning(
            "PLAN_UNKNOWN_PRICE_FALLBACK",
            extra={
                "price_ref": price_ref,
                "fallback_rule": UNKNOWN_PRICE_FALLBACK_RULE,
                "fallback_quota": self._lowest.quota,
            },
        )
        return ResolvedPlan(
            price_ref=price_ref or "unknown",
            quota=self._lowest.quota,
            display_name=self._lowest.display_name,
            fallback_rule=UNKNOWN_PRICE_FALLBACK_RULE,
        )


_plan_table: Optional[PlanTable] = None


def get_plan_table() -> PlanTable:
    """Get singleton plan table built from the validated fixture"""
    global _plan_table
    if _plan_table is None:
        _plan_table = PlanTable(get_plan_loader().get())
    return _plan_table
