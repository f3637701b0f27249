"""
Billing Services for Ledgerline Platform
Usage rating, allocation and threshold monitoring.

This file serves as a re-export hub following the feature-based organization.
"""

from __future__ import annotations

from .allocation_service import AllocationEngine, AllocationOutcome, AllocationRequest, split_among_members
from .pricing_service import PricingRuleSelector, PricingRuleService
from .rate_calculator import CostBreakdown, RatingContext, calculate_cost, calculate_overage_cost
from .threshold_service import ThresholdMonitor, archive_alerts_for
from .usage_engine import UsageBillingEngine, UsageEvent, UsageRatingResult

__all__ = [
    "AllocationEngine",
    "AllocationOutcome",
    "AllocationRequest",
    "CostBreakdown",
    "PricingRuleSelector",
    "PricingRuleService",
    "RatingContext",
    "ThresholdMonitor",
    "UsageBillingEngine",
    "UsageEvent",
    "UsageRatingResult",
    "archive_alerts_for",
    "calculate_cost",
    "calculate_overage_cost",
    "split_among_members",
]
