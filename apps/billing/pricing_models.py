"""
Pricing rule models for Ledgerline Platform
Versioned, scoped pricing policies and their usage tiers.

A rule is applicable only while it is active, approved and inside its
effective window. Rules are never edited in a way that changes how an
already-rated event was priced: each rated record keeps a snapshot of the
rule version it was rated with, and every mutation is appended to the
rule's change history.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, ClassVar

from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator
from django.db import models
from django.utils import timezone
from django.utils.translation import gettext_lazy as _

from .usage_config import (
    ClientCriteria,
    GeographicRates,
    TimeBasedRates,
    VolumeDiscount,
    parse_volume_discounts,
)

logger = logging.getLogger(__name__)

LAYER_CONTRACT = "contract"
LAYER_PROMOTIONAL = "promotional"
LAYER_STANDARD = "standard"


def _actor_label(actor: Any | None) -> str:
    if actor is None:
        return "system"
    return str(getattr(actor, "pk", actor))


# ===============================================================================
# PRICING RULES
# ===============================================================================


class PricingRule(models.Model):
    """
    A versioned, scoped pricing policy.

    Scopes:
    - global: applies to every client
    - client: applies only to ``customer``
    - contract: applies to clients belonging to ``contract_reference``
    - group: applies to clients matching ``client_criteria``

    Pricing models:
    - flat_rate: base_rate regardless of quantity
    - usage_based: quantity x base_rate
    - tiered: progressive walk over the attached UsageTier bands
    - block: ceil(quantity / block_size) x block_rate
    - hybrid: base_rate as an included fee plus the tiered cost of quantity
    """

    SCOPE_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("global", _("Global")),
        ("client", _("Client")),
        ("group", _("Client Group")),
        ("contract", _("Contract")),
    )

    PRICING_MODEL_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("flat_rate", _("Flat Rate")),
        ("usage_based", _("Usage Based")),
        ("tiered", _("Tiered")),
        ("block", _("Block")),
        ("hybrid", _("Hybrid")),
    )

    OVERAGE_POLICY_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("charge_overage", _("Charge Overage Rate")),
        ("block", _("Block Usage")),
        ("bill_at_base", _("Bill at Base Rate")),
    )

    APPROVAL_STATUS_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("draft", _("Draft")),
        ("pending_approval", _("Pending Approval")),
        ("approved", _("Approved")),
        ("rejected", _("Rejected")),
    )

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    # Identification
    code = models.CharField(max_length=50, help_text=_("Rule code, unique per version"))
    name = models.CharField(max_length=200)
    version = models.PositiveIntegerField(default=1)

    # Scope
    scope = models.CharField(max_length=20, choices=SCOPE_CHOICES, default="global")
    customer = models.ForeignKey(
        "customers.Customer",
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name="pricing_rules",
        help_text=_("Client this rule applies to (client scope)"),
    )
    contract_reference = models.CharField(
        max_length=100, blank=True, help_text=_("Contract this rule applies to (contract scope)")
    )
    client_criteria = models.JSONField(
        default=dict, blank=True, help_text=_("Client predicate for group scope")
    )

    # Applicability
    usage_type = models.CharField(max_length=50, help_text=_("Usage type (e.g., 'voice_minutes', 'bandwidth_gb')"))
    service_types = models.JSONField(default=list, blank=True, help_text=_("Service types; empty applies to all"))

    # Cost shape
    pricing_model = models.CharField(max_length=20, choices=PRICING_MODEL_CHOICES, default="usage_based")
    base_rate = models.DecimalField(
        max_digits=18, decimal_places=6, default=Decimal("0"), validators=[MinValueValidator(Decimal("0"))]
    )
    setup_fee = models.DecimalField(
        max_digits=18, decimal_places=4, default=Decimal("0"), validators=[MinValueValidator(Decimal("0"))]
    )
    monthly_fee = models.DecimalField(
        max_digits=18, decimal_places=4, default=Decimal("0"), validators=[MinValueValidator(Decimal("0"))]
    )
    minimum_charge = models.DecimalField(
        max_digits=18, decimal_places=4, default=Decimal("0"), validators=[MinValueValidator(Decimal("0"))]
    )
    block_size = models.DecimalField(max_digits=18, decimal_places=6, null=True, blank=True)
    block_rate = models.DecimalField(max_digits=18, decimal_places=6, null=True, blank=True)

    # Adjustments
    time_based_rates = models.JSONField(default=dict, blank=True)
    geographic_rates = models.JSONField(default=dict, blank=True)
    volume_discounts = models.JSONField(default=list, blank=True, help_text=_("Ordered; first match wins"))

    # Overage
    overage_rate = models.DecimalField(max_digits=18, decimal_places=6, null=True, blank=True)
    overage_policy = models.CharField(max_length=20, choices=OVERAGE_POLICY_CHOICES, default="charge_overage")

    # Promotions and overrides
    is_promotional = models.BooleanField(default=False)
    promotion_starts_at = models.DateTimeField(null=True, blank=True)
    promotion_ends_at = models.DateTimeField(null=True, blank=True)
    is_contract_override = models.BooleanField(default=False)

    # Precedence and validity
    rule_priority = models.PositiveIntegerField(default=100, help_text=_("Lower numbers are evaluated first"))
    effective_date = models.DateTimeField(default=timezone.now)
    expiry_date = models.DateTimeField(null=True, blank=True, help_text=_("Empty means open-ended"))

    # Lifecycle
    approval_status = models.CharField(max_length=20, choices=APPROVAL_STATUS_CHOICES, default="draft")
    is_active = models.BooleanField(default=False)
    superseded_by = models.ForeignKey(
        "self", on_delete=models.SET_NULL, null=True, blank=True, related_name="supersedes"
    )

    # Application bookkeeping
    total_applications = models.PositiveBigIntegerField(default=0)
    total_revenue_generated = models.DecimalField(max_digits=20, decimal_places=4, default=Decimal("0"))
    last_applied_at = models.DateTimeField(null=True, blank=True)

    change_history = models.JSONField(default=list, blank=True)

    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="created_pricing_rules"
    )
    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "pricing_rules"
        verbose_name = _("Pricing Rule")
        verbose_name_plural = _("Pricing Rules")
        ordering = ("rule_priority", "-created_at")
        constraints = (
            models.UniqueConstraint(fields=["code", "version"], name="unique_pricing_rule_version"),
        )
        indexes = (
            models.Index(fields=["scope", "is_active", "approval_status"], name="idx_rule_scope_active"),
            models.Index(fields=["customer", "is_active"], name="idx_rule_customer_active"),
            models.Index(fields=["contract_reference"], name="idx_rule_contract"),
            models.Index(fields=["rule_priority", "-created_at"], name="idx_rule_priority"),
        )

    def __str__(self) -> str:
        return f"{self.code} v{self.version} ({self.pricing_model})"

    # ---------------------------------------------------------------------------
    # Parsed configuration
    # ---------------------------------------------------------------------------

    @property
    def time_rates(self) -> TimeBasedRates | None:
        return TimeBasedRates.from_json(self.time_based_rates)

    @property
    def geo_rates(self) -> GeographicRates:
        return GeographicRates.from_json(self.geographic_rates)

    @property
    def discounts(self) -> tuple[VolumeDiscount, ...]:
        return parse_volume_discounts(self.volume_discounts)

    @property
    def criteria(self) -> ClientCriteria:
        return ClientCriteria.from_json(self.client_criteria)

    @property
    def layer(self) -> str:
        """Which layer this rule belongs to when rules are composed"""
        if self.scope == "contract" or self.is_contract_override:
            return LAYER_CONTRACT
        if self.is_promotional:
            return LAYER_PROMOTIONAL
        return LAYER_STANDARD

    # ---------------------------------------------------------------------------
    # Validation
    # ---------------------------------------------------------------------------

    def clean(self) -> None:
        errors: dict[str, list[str]] = {}

        def add(field: str, message: str) -> None:
            errors.setdefault(field, []).append(message)

        for field_name, parser in (
            ("time_based_rates", TimeBasedRates.from_json),
            ("geographic_rates", GeographicRates.from_json),
            ("volume_discounts", parse_volume_discounts),
            ("client_criteria", ClientCriteria.from_json),
        ):
            try:
                parser(getattr(self, field_name))
            except ValidationError as e:
                add(field_name, "; ".join(e.messages))

        if not isinstance(self.service_types, list):
            add("service_types", "Service types must be a list")

        if self.is_active and self.approval_status != "approved":
            add("is_active", "Only approved rules can be active")

        if self.scope == "client" and self.customer_id is None:
            add("customer", "Client-scoped rules need a customer")
        if self.scope == "contract" and not self.contract_reference:
            add("contract_reference", "Contract-scoped rules need a contract reference")
        if self.scope == "group" and not errors.get("client_criteria"):
            if ClientCriteria.from_json(self.client_criteria).is_empty:
                add("client_criteria", "Group-scoped rules need client criteria")

        if self.pricing_model == "block":
            if not self.block_size or self.block_size <= 0:
                add("block_size", "Block pricing needs a positive block size")
            if self.block_rate is None:
                add("block_rate", "Block pricing needs a block rate")

        if self.overage_policy == "charge_overage" and self.overage_rate is not None and self.overage_rate < 0:
            add("overage_rate", "Overage rate cannot be negative")

        if self.expiry_date and self.effective_date and self.expiry_date < self.effective_date:
            add("expiry_date", "Expiry date must be after the effective date")

        if self.is_promotional and self.promotion_starts_at and self.promotion_ends_at:
            if self.promotion_ends_at < self.promotion_starts_at:
                add("promotion_ends_at", "Promotion must end after it starts")

        if self.superseded_by_id is not None and self.superseded_by_id == self.pk:
            add("superseded_by", "A rule cannot supersede itself")

        if errors:
            raise ValidationError(errors)

    def save(self, *args: Any, **kwargs: Any) -> None:
        self.full_clean()
        super().save(*args, **kwargs)

    # ---------------------------------------------------------------------------
    # Applicability
    # ---------------------------------------------------------------------------

    def is_effective(self, at: datetime) -> bool:
        """Active, approved and inside the effective window (and promotion window)"""
        if not self.is_active or self.approval_status != "approved":
            return False
        if self.effective_date and at < self.effective_date:
            return False
        if self.expiry_date and at > self.expiry_date:
            return False
        if self.is_promotional:
            if self.promotion_starts_at and at < self.promotion_starts_at:
                return False
            if self.promotion_ends_at and at > self.promotion_ends_at:
                return False
        return True

    def applies_to_service_type(self, service_type: str | None) -> bool:
        if not self.service_types:
            return True
        return bool(service_type) and service_type in self.service_types

    def active_tiers(self) -> list[UsageTier]:
        return list(self.tiers.filter(is_active=True).order_by("min_usage"))

    # ---------------------------------------------------------------------------
    # History
    # ---------------------------------------------------------------------------

    def append_change(self, action: str, actor: Any | None, changes: dict[str, Any] | None = None) -> dict[str, Any]:
        """Append an entry to the change history (not saved)"""
        entry = {
            "at": timezone.now().isoformat(),
            "action": action,
            "actor": _actor_label(actor),
            "version": self.version,
            "changes": changes or {},
        }
        self.change_history = [*(self.change_history or []), entry]
        return entry

    def snapshot(self) -> dict[str, Any]:
        """Serializable copy of everything that shaped a rated cost"""
        return {
            "id": str(self.pk),
            "code": self.code,
            "version": self.version,
            "scope": self.scope,
            "pricing_model": self.pricing_model,
            "base_rate": str(self.base_rate),
            "setup_fee": str(self.setup_fee),
            "monthly_fee": str(self.monthly_fee),
            "minimum_charge": str(self.minimum_charge),
            "block_size": None if self.block_size is None else str(self.block_size),
            "block_rate": None if self.block_rate is None else str(self.block_rate),
            "overage_rate": None if self.overage_rate is None else str(self.overage_rate),
            "overage_policy": self.overage_policy,
            "time_based_rates": self.time_based_rates,
            "geographic_rates": self.geographic_rates,
            "volume_discounts": self.volume_discounts,
            "tiers": [
                {"min_usage": str(tier.min_usage), "max_usage": None if tier.max_usage is None else str(tier.max_usage),
                 "rate": str(tier.rate)}
                for tier in self.active_tiers()
            ] if self.pk else [],
        }


# ===============================================================================
# USAGE TIERS
# ===============================================================================


class UsageTier(models.Model):
    """
    Band ``[min_usage, max_usage)`` of a tiered rule with its own rate.

    Example:
    - 0-100 minutes: 0.10/minute
    - 100+ minutes: 0.05/minute
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    rule = models.ForeignKey(PricingRule, on_delete=models.CASCADE, related_name="tiers")
    name = models.CharField(max_length=100, blank=True)

    min_usage = models.DecimalField(
        max_digits=18, decimal_places=6, validators=[MinValueValidator(Decimal("0"))],
        help_text=_("Start of band (inclusive)"),
    )
    max_usage = models.DecimalField(
        max_digits=18, decimal_places=6, null=True, blank=True, help_text=_("End of band (exclusive, null = unlimited)")
    )
    rate = models.DecimalField(
        max_digits=18, decimal_places=6, validators=[MinValueValidator(Decimal("0"))], help_text=_("Price per unit")
    )
    is_active = models.BooleanField(default=True)

    class Meta:
        db_table = "pricing_rule_tiers"
        verbose_name = _("Usage Tier")
        verbose_name_plural = _("Usage Tiers")
        ordering = ("rule", "min_usage")
        constraints = (
            models.UniqueConstraint(fields=["rule", "min_usage"], name="unique_usage_tier_start"),
        )

    def __str__(self) -> str:
        if self.max_usage is not None:
            return f"{self.min_usage} - {self.max_usage}: {self.rate}/unit"
        return f"{self.min_usage}+: {self.rate}/unit"

    @property
    def width(self) -> Decimal | None:
        if self.max_usage is None:
            return None
        return self.max_usage - self.min_usage

    def overlaps(self, other: UsageTier) -> bool:
        self_end = self.max_usage
        other_end = other.max_usage
        starts_before_other_ends = other_end is None or self.min_usage < other_end
        other_starts_before_self_ends = self_end is None or other.min_usage < self_end
        return starts_before_other_ends and other_starts_before_self_ends

    def clean(self) -> None:
        if self.max_usage is not None and self.min_usage is not None and self.max_usage <= self.min_usage:
            raise ValidationError({"max_usage": "Tier must end after it starts"})

        if self.rule_id is None:
            return
        if self.rule.pricing_model not in ("tiered", "hybrid"):
            raise ValidationError({"rule": "Tiers can only be attached to tiered or hybrid rules"})

        if not self.is_active:
            return
        siblings = UsageTier.objects.filter(rule_id=self.rule_id, is_active=True).exclude(pk=self.pk)
        for sibling in siblings:
            if self.overlaps(sibling):
                raise ValidationError(f"Tier {self} overlaps existing tier {sibling}")

    def save(self, *args: Any, **kwargs: Any) -> None:
        self.full_clean()
        super().save(*args, **kwargs)


# ===============================================================================
# RULE APPLICATIONS
# ===============================================================================


class PricingRuleApplication(models.Model):
    """
    One recorded application of a rule to a rated record.

    The unique application key makes bookkeeping idempotent: applying the
    same rated record twice never double counts revenue.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    rule = models.ForeignKey(PricingRule, on_delete=models.CASCADE, related_name="applications")
    application_key = models.CharField(max_length=255, unique=True)
    amount = models.DecimalField(max_digits=18, decimal_places=4)
    applied_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = "pricing_rule_applications"
        verbose_name = _("Pricing Rule Application")
        verbose_name_plural = _("Pricing Rule Applications")
        indexes = (models.Index(fields=["rule", "-applied_at"], name="idx_rule_application_time"),)

    def __str__(self) -> str:
        return f"{self.rule.code} @ {self.application_key}: {self.amount}"
