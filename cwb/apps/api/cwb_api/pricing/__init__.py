"""
CWB Pricing Module
Plan table + entitlement checks
"""

from .enforcement import (
    EntitlementChecker,
    EntitlementDecision,
    EntitlementDeniedError,
    EntitlementReason,
    FixedCount,
    ResourceCounter,
    SubscriptionSummary,
    require_entitlement,
)
from .models import PlanModel, PlanTableModel, TrialModel, UnknownPriceFallbackModel
from .plans import UNKNOWN_PRICE_FALLBACK_RULE, PlanTable, ResolvedPlan, get_plan_table
from .ssot_loader import PlanTableLoader, get_plan_loader, validate_plans_against_schema

__all__ = [
    "EntitlementChecker",
    "EntitlementDecision",
    "EntitlementDeniedError",
    "EntitlementReason",
    "FixedCount",
    "ResourceCounter",
    "SubscriptionSummary",
    "require_entitlement",
    "PlanModel",
    "PlanTableModel",
    "TrialModel",
    "UnknownPriceFallbackModel",
    "UNKNOWN_PRICE_FALLBACK_RULE",
    "PlanTable",
    "ResolvedPlan",
    "get_plan_table",
    "PlanTableLoader",
    "get_plan_loader",
    "validate_plans_against_schema",
]
