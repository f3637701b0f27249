"""
Rate calculator for usage billing.

Pure cost computation: given a pricing rule, its tiers, a quantity and the
rating context, produce a cost breakdown. No database writes and no I/O.
All arithmetic is Decimal; money is quantized once, at the end.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Any

from . import config

if TYPE_CHECKING:
    from .pricing_models import PricingRule, UsageTier

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
ONE = Decimal("1")
HUNDRED = Decimal("100")


def quantize_money(amount: Decimal) -> Decimal:
    return amount.quantize(config.MONEY_QUANTUM, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class RatingContext:
    """Where and when the usage happened"""

    timestamp: datetime
    destination_country: str = ""
    origin_country: str = ""
    is_roaming: bool = False


@dataclass(frozen=True)
class TierCharge:
    """Units consumed from one tier and what they cost"""

    min_usage: Decimal
    max_usage: Decimal | None
    rate: Decimal
    quantity: Decimal
    cost: Decimal

    def to_json(self) -> dict[str, Any]:
        return {
            "min_usage": str(self.min_usage),
            "max_usage": None if self.max_usage is None else str(self.max_usage),
            "rate": str(self.rate),
            "quantity": str(self.quantity),
            "cost": str(self.cost),
        }


@dataclass(frozen=True)
class CostBreakdown:
    """Result of pricing one quantity against one rule"""

    base: Decimal = ZERO
    setup: Decimal = ZERO
    monthly: Decimal = ZERO
    total: Decimal = ZERO
    quantity: Decimal = ZERO
    discounts: tuple[dict[str, Any], ...] = ()
    multipliers: tuple[dict[str, Any], ...] = ()
    tier_breakdown: tuple[TierCharge, ...] = ()
    rule_applied: bool = False
    rule_id: str | None = None
    rule_code: str = ""
    rule_version: int | None = None
    pricing_model: str = ""
    minimum_charge_applied: bool = False
    unpriced_quantity: Decimal = ZERO
    notes: tuple[str, ...] = field(default=())
    layers: tuple[dict[str, Any], ...] = ()

    @classmethod
    def empty(cls, quantity: Decimal = ZERO, note: str = "") -> CostBreakdown:
        return cls(quantity=quantity, notes=(note,) if note else ())

    def to_json(self) -> dict[str, Any]:
        return {
            "base": str(self.base),
            "setup": str(self.setup),
            "monthly": str(self.monthly),
            "total": str(self.total),
            "quantity": str(self.quantity),
            "discounts": list(self.discounts),
            "multipliers": list(self.multipliers),
            "tier_breakdown": [charge.to_json() for charge in self.tier_breakdown],
            "rule_applied": self.rule_applied,
            "rule_id": self.rule_id,
            "rule_code": self.rule_code,
            "rule_version": self.rule_version,
            "pricing_model": self.pricing_model,
            "minimum_charge_applied": self.minimum_charge_applied,
            "unpriced_quantity": str(self.unpriced_quantity),
            "notes": list(self.notes),
            "layers": list(self.layers),
        }


# ===============================================================================
# BASE COST BY PRICING MODEL
# ===============================================================================


def tiered_cost(tiers: Iterable[UsageTier], quantity: Decimal) -> tuple[Decimal, list[TierCharge], Decimal]:
    """
    Walk active tiers lowest first. Each bounded tier consumes up to its width;
    an unbounded tier absorbs whatever is left. Returns (cost, charges, unpriced).
    """
    remaining = quantity
    cost = ZERO
    charges: list[TierCharge] = []
    for tier in sorted((t for t in tiers if t.is_active), key=lambda t: t.min_usage):
        if remaining <= 0:
            break
        consumed = remaining if tier.max_usage is None else min(remaining, tier.max_usage - tier.min_usage)
        if consumed <= 0:
            continue
        tier_cost = consumed * tier.rate
        charges.append(
            TierCharge(
                min_usage=tier.min_usage, max_usage=tier.max_usage, rate=tier.rate, quantity=consumed, cost=tier_cost
            )
        )
        cost += tier_cost
        remaining -= consumed
    return cost, charges, max(ZERO, remaining)


def block_cost(block_size: Decimal | None, block_rate: Decimal | None, quantity: Decimal) -> Decimal:
    if not block_size or block_size <= 0 or block_rate is None:
        return ZERO
    blocks = (quantity / block_size).to_integral_value(rounding=ROUND_CEILING)
    return blocks * block_rate


def _base_cost(
    rule: PricingRule, tiers: list[UsageTier], quantity: Decimal
) -> tuple[Decimal, list[TierCharge], Decimal]:
    model = rule.pricing_model
    if model == "flat_rate":
        return rule.base_rate, [], ZERO
    if model == "usage_based":
        return quantity * rule.base_rate, [], ZERO
    if model == "tiered":
        return tiered_cost(tiers, quantity)
    if model == "block":
        return block_cost(rule.block_size, rule.block_rate, quantity), [], ZERO
    if model == "hybrid":
        if any(tier.is_active for tier in tiers):
            usage_cost, charges, unpriced = tiered_cost(tiers, quantity)
            return rule.base_rate + usage_cost, charges, unpriced
        return quantity * rule.base_rate, [], ZERO
    raise ValueError(f"Unknown pricing model: {model}")


# ===============================================================================
# PUBLIC API
# ===============================================================================


def calculate_cost(
    rule: PricingRule,
    tiers: Iterable[UsageTier] | None,
    quantity: Decimal | int | str,
    context: RatingContext,
) -> CostBreakdown:
    """
    💰 Price ``quantity`` against ``rule``.

    A rule that is not effective at ``context.timestamp`` yields a zero-cost
    breakdown with ``rule_applied=False``; the caller decides what an unpriced
    event means.
    """
    quantity = Decimal(str(quantity))
    if quantity < 0:
        raise ValueError(f"Quantity cannot be negative: {quantity}")

    if not rule.is_effective(context.timestamp):
        logger.debug(f"💰 [Pricing] Rule {rule.code} v{rule.version} not effective at {context.timestamp}")
        return CostBreakdown(
            quantity=quantity,
            rule_id=str(rule.pk),
            rule_code=rule.code,
            rule_version=rule.version,
            pricing_model=rule.pricing_model,
            notes=("rule not effective",),
        )

    tier_list = list(tiers or ())
    base, charges, unpriced = _base_cost(rule, tier_list, quantity)

    multipliers: list[dict[str, Any]] = []
    time_rates = rule.time_rates
    if time_rates is not None:
        label, multiplier = time_rates.multiplier_for(context.timestamp)
        base *= multiplier
        multipliers.append({"type": "time", "period": label, "multiplier": str(multiplier)})

    geo_multiplier = rule.geo_rates.multiplier_for(context.destination_country)
    if geo_multiplier is not None:
        base *= geo_multiplier
        multipliers.append(
            {"type": "geographic", "country": context.destination_country.upper(), "multiplier": str(geo_multiplier)}
        )

    discounts: list[dict[str, Any]] = []
    for discount in rule.discounts:
        if discount.min_usage <= quantity:
            amount = base * discount.discount_percentage / HUNDRED
            base -= amount
            discounts.append(
                {
                    "name": discount.name,
                    "min_usage": str(discount.min_usage),
                    "percentage": str(discount.discount_percentage),
                    "amount": str(quantize_money(amount)),
                }
            )
            break

    minimum_applied = False
    if base < rule.minimum_charge:
        base = rule.minimum_charge
        minimum_applied = True

    total = base + rule.setup_fee + rule.monthly_fee
    if unpriced > 0:
        logger.warning(f"⚠️ [Pricing] Rule {rule.code} tiers end before {quantity}; {unpriced} left unpriced")

    return CostBreakdown(
        base=quantize_money(base),
        setup=quantize_money(rule.setup_fee),
        monthly=quantize_money(rule.monthly_fee),
        total=quantize_money(total),
        quantity=quantity,
        discounts=tuple(discounts),
        multipliers=tuple(multipliers),
        tier_breakdown=tuple(charges),
        rule_applied=True,
        rule_id=str(rule.pk),
        rule_code=rule.code,
        rule_version=rule.version,
        pricing_model=rule.pricing_model,
        minimum_charge_applied=minimum_applied,
        unpriced_quantity=unpriced,
    )


def calculate_overage_cost(
    rule: PricingRule,
    tiers: Iterable[UsageTier] | None,
    quantity: Decimal | int | str,
    context: RatingContext,
) -> CostBreakdown:
    """
    💰 Price usage that no pool or bucket absorbed.

    With the ``charge_overage`` policy and an overage rate, the quantity is
    charged at that rate with the rule's time and geographic multipliers;
    otherwise the full calculator applies.
    """
    quantity = Decimal(str(quantity))
    if rule.overage_policy != "charge_overage" or rule.overage_rate is None:
        return calculate_cost(rule, tiers, quantity, context)

    if not rule.is_effective(context.timestamp):
        return calculate_cost(rule, tiers, quantity, context)

    base = quantity * rule.overage_rate
    multipliers: list[dict[str, Any]] = []
    time_rates = rule.time_rates
    if time_rates is not None:
        label, multiplier = time_rates.multiplier_for(context.timestamp)
        base *= multiplier
        multipliers.append({"type": "time", "period": label, "multiplier": str(multiplier)})
    geo_multiplier = rule.geo_rates.multiplier_for(context.destination_country)
    if geo_multiplier is not None:
        base *= geo_multiplier
        multipliers.append(
            {"type": "geographic", "country": context.destination_country.upper(), "multiplier": str(geo_multiplier)}
        )

    return CostBreakdown(
        base=quantize_money(base),
        total=quantize_money(base),
        quantity=quantity,
        multipliers=tuple(multipliers),
        rule_applied=True,
        rule_id=str(rule.pk),
        rule_code=rule.code,
        rule_version=rule.version,
        pricing_model="overage",
        notes=("overage rate",),
    )


def calculate_layered_cost(
    rules: Sequence[PricingRule],
    tiers: Iterable[UsageTier] | None,
    quantity: Decimal | int | str,
    context: RatingContext,
) -> CostBreakdown:
    """
    💰 Price ``quantity`` against rules composed in layer order.

    ``rules`` holds one rule per layer, governing layer first. The governing
    rule prices the quantity (``tiers`` belong to it). A later promotional
    rule stacks its first matching volume discount onto the running base;
    later non-promotional rules are superseded. The governing minimum charge
    floors the composed base.
    """
    if not rules:
        raise ValueError("Layered pricing needs at least one rule")

    quantity = Decimal(str(quantity))
    governing, *adjusting = rules
    breakdown = calculate_overage_cost(governing, tiers, quantity, context)
    layers: list[dict[str, Any]] = [
        {"layer": governing.layer, "rule_code": governing.code, "rule_id": str(governing.pk), "role": "base"}
    ]
    if not breakdown.rule_applied:
        return replace(breakdown, layers=tuple(layers))

    base = breakdown.base
    discounts = list(breakdown.discounts)
    for rule in adjusting:
        entry = {"layer": rule.layer, "rule_code": rule.code, "rule_id": str(rule.pk), "role": "superseded"}
        layers.append(entry)
        if not rule.is_promotional or not rule.is_effective(context.timestamp):
            continue
        entry["role"] = "adjustment"
        for discount in rule.discounts:
            if discount.min_usage <= quantity:
                amount = base * discount.discount_percentage / HUNDRED
                base -= amount
                discounts.append(
                    {
                        "name": discount.name,
                        "rule_code": rule.code,
                        "min_usage": str(discount.min_usage),
                        "percentage": str(discount.discount_percentage),
                        "amount": str(quantize_money(amount)),
                    }
                )
                break

    minimum_applied = breakdown.minimum_charge_applied
    if base < governing.minimum_charge:
        base = governing.minimum_charge
        minimum_applied = True

    logger.debug(f"💰 [Pricing] Layered {quantity} over {', '.join(layer['rule_code'] for layer in layers)}")
    return replace(
        breakdown,
        base=quantize_money(base),
        total=quantize_money(base + breakdown.setup + breakdown.monthly),
        discounts=tuple(discounts),
        minimum_charge_applied=minimum_applied,
        layers=tuple(layers),
    )
