"""
Billing models for Ledgerline Platform
Usage pricing rules, pools, buckets, alerts and the rated usage ledger.

This file serves as a re-export hub following the feature-based organization.
"""

from __future__ import annotations

from .alert_models import UsageAlert
from .bucket_models import UsageBucket
from .pool_models import UsagePool, UsagePoolMember
from .pricing_models import PricingRule, PricingRuleApplication, UsageTier
from .usage_models import RatedUsage, UsageBillingException

# ===============================================================================
# MODEL RE-EXPORTS
# ===============================================================================

__all__ = [
    "PricingRule",
    "PricingRuleApplication",
    "RatedUsage",
    "UsageAlert",
    "UsageBillingException",
    "UsageBucket",
    "UsagePool",
    "UsagePoolMember",
    "UsageTier",
]
