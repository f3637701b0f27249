"""
Usage bucket models for Ledgerline Platform
Categorized allowances (included, bonus, promotional, overage, rollover),
standalone or nested under a pool, with overflow chains and period resets.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, ClassVar

from django.core.exceptions import ValidationError
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.utils import timezone
from django.utils.translation import gettext_lazy as _

from apps.common.models import SoftDeleteModel

from . import capacity, config
from .usage_config import LocationRestrictions, TimeRestrictions
from .usage_exceptions import OverflowCycle

logger = logging.getLogger(__name__)

PERCENT_VALIDATORS = (MinValueValidator(Decimal("0")), MaxValueValidator(Decimal("100")))
ZERO = Decimal("0")

# Which counters each reset frequency clears, besides period usage
RESET_COUNTERS: dict[str, tuple[str, ...]] = {
    "daily": ("daily_usage",),
    "weekly": ("daily_usage", "weekly_usage"),
    "monthly": ("daily_usage", "weekly_usage", "monthly_usage"),
    "billing_cycle": ("daily_usage", "weekly_usage", "monthly_usage"),
}


def find_overflow_cycle(bucket_id: Any, overflow_id: Any) -> list[Any] | None:
    """
    Follow overflow references by id from ``overflow_id``; return the chain
    if it leads back to a bucket already visited, else None.
    """
    chain = [bucket_id]
    seen = {bucket_id}
    current = overflow_id
    while current is not None:
        chain.append(current)
        if current in seen:
            return chain
        seen.add(current)
        current = (
            UsageBucket.all_objects.filter(pk=current).values_list("overflow_bucket_id", flat=True).first()
        )
    return None


class UsageBucket(SoftDeleteModel):
    """
    Smallest allocation unit: a capacity ledger with restrictions, an
    overflow target and a rollover policy.

    Overflow behaviors for usage beyond capacity:
    - spillover: remainder goes to ``overflow_bucket`` (when overflow is allowed)
    - block: remainder is refused and reported uncovered without pricing
    - charge_overage: remainder is reported for overage pricing
    """

    BUCKET_TYPE_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("included", _("Included")),
        ("bonus", _("Bonus")),
        ("promotional", _("Promotional")),
        ("overage", _("Overage")),
        ("rollover", _("Rollover")),
    )

    OVERFLOW_BEHAVIOR_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("spillover", _("Spill Over")),
        ("block", _("Block")),
        ("charge_overage", _("Charge Overage")),
    )

    RESET_FREQUENCY_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("daily", _("Daily")),
        ("weekly", _("Weekly")),
        ("monthly", _("Monthly")),
        ("billing_cycle", _("Billing Cycle")),
    )

    STATUS_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        (capacity.STATUS_ACTIVE, _("Active")),
        (capacity.STATUS_DEPLETED, _("Depleted")),
        (capacity.STATUS_SUSPENDED, _("Suspended")),
        (capacity.STATUS_EXPIRED, _("Expired")),
    )

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    # Identification
    code = models.CharField(max_length=50, unique=True)
    name = models.CharField(max_length=200)
    customer = models.ForeignKey("customers.Customer", on_delete=models.CASCADE, related_name="usage_buckets")
    pool = models.ForeignKey(
        "billing.UsagePool", on_delete=models.SET_NULL, null=True, blank=True, related_name="buckets"
    )
    bucket_type = models.CharField(max_length=20, choices=BUCKET_TYPE_CHOICES, default="included")
    usage_type = models.CharField(max_length=50)
    service_types = models.JSONField(default=list, blank=True, help_text=_("Service types; empty applies to all"))

    # Capacity
    bucket_capacity = models.DecimalField(
        max_digits=18, decimal_places=6, validators=[MinValueValidator(Decimal("0"))]
    )
    used_amount = models.DecimalField(max_digits=18, decimal_places=6, default=ZERO)
    reserved_amount = models.DecimalField(max_digits=18, decimal_places=6, default=ZERO)

    # Priorities
    usage_priority = models.IntegerField(default=100, help_text=_("Lower numbers are drawn first"))
    billing_priority = models.IntegerField(default=100)

    # Overflow
    allows_overflow = models.BooleanField(default=False)
    overflow_bucket = models.ForeignKey(
        "self", on_delete=models.SET_NULL, null=True, blank=True, related_name="overflow_sources"
    )
    overflow_behavior = models.CharField(max_length=20, choices=OVERFLOW_BEHAVIOR_CHOICES, default="spillover")
    overflow_rate = models.DecimalField(max_digits=18, decimal_places=6, null=True, blank=True)

    # Restrictions
    time_restrictions = models.JSONField(default=dict, blank=True)
    location_restrictions = models.JSONField(default=dict, blank=True)
    daily_limit = models.DecimalField(max_digits=18, decimal_places=6, null=True, blank=True)
    weekly_limit = models.DecimalField(max_digits=18, decimal_places=6, null=True, blank=True)
    monthly_limit = models.DecimalField(max_digits=18, decimal_places=6, null=True, blank=True)

    # Usage tracking
    current_period_usage = models.DecimalField(max_digits=18, decimal_places=6, default=ZERO)
    daily_usage = models.DecimalField(max_digits=18, decimal_places=6, default=ZERO)
    weekly_usage = models.DecimalField(max_digits=18, decimal_places=6, default=ZERO)
    monthly_usage = models.DecimalField(max_digits=18, decimal_places=6, default=ZERO)
    lifetime_usage = models.DecimalField(max_digits=20, decimal_places=6, default=ZERO)
    first_usage_at = models.DateTimeField(null=True, blank=True)
    last_usage_at = models.DateTimeField(null=True, blank=True)

    # Thresholds (percent)
    warning_threshold = models.DecimalField(
        max_digits=5, decimal_places=2, default=config.DEFAULT_WARNING_THRESHOLD, validators=PERCENT_VALIDATORS
    )
    critical_threshold = models.DecimalField(
        max_digits=5, decimal_places=2, default=config.DEFAULT_CRITICAL_THRESHOLD, validators=PERCENT_VALIDATORS
    )

    # Rollover
    allows_rollover = models.BooleanField(default=False)
    rollover_percentage = models.DecimalField(
        max_digits=5, decimal_places=2, default=ZERO, validators=PERCENT_VALIDATORS
    )
    rollover_balance = models.DecimalField(max_digits=18, decimal_places=6, default=ZERO)
    rollover_expires_at = models.DateTimeField(null=True, blank=True)

    # Reset schedule
    reset_frequency = models.CharField(max_length=20, choices=RESET_FREQUENCY_CHOICES, default="monthly")
    last_reset_date = models.DateTimeField(null=True, blank=True)
    next_reset_date = models.DateTimeField(null=True, blank=True)
    expires_at = models.DateTimeField(null=True, blank=True)

    # Status
    bucket_status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=capacity.STATUS_ACTIVE)
    status_reason = models.CharField(max_length=255, blank=True)
    depleted_at = models.DateTimeField(null=True, blank=True)
    suspended_at = models.DateTimeField(null=True, blank=True)
    is_active = models.BooleanField(default=True)

    # Compare-and-update guard
    revision = models.PositiveBigIntegerField(default=0)

    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "usage_buckets"
        verbose_name = _("Usage Bucket")
        verbose_name_plural = _("Usage Buckets")
        ordering = ("usage_priority", "created_at")
        indexes = (
            models.Index(fields=["customer", "usage_type", "is_active"], name="idx_bucket_customer_usage"),
            models.Index(fields=["pool", "usage_priority"], name="idx_bucket_pool_priority"),
            models.Index(fields=["bucket_status"], name="idx_bucket_status"),
            models.Index(fields=["next_reset_date"], name="idx_bucket_next_reset"),
            models.Index(fields=["deleted_at"], name="idx_bucket_deleted"),
        )

    def __str__(self) -> str:
        return f"{self.code} ({self.used_amount}/{self.bucket_capacity})"

    # ---------------------------------------------------------------------------
    # Parsed configuration
    # ---------------------------------------------------------------------------

    @property
    def time_policy(self) -> TimeRestrictions:
        return TimeRestrictions.from_json(self.time_restrictions)

    @property
    def location_policy(self) -> LocationRestrictions:
        return LocationRestrictions.from_json(self.location_restrictions)

    # ---------------------------------------------------------------------------
    # Capacity
    # ---------------------------------------------------------------------------

    @property
    def effective_capacity(self) -> Decimal:
        """Bucket capacity plus banked rollover balance"""
        return self.bucket_capacity + self.rollover_balance

    @property
    def allocation_limit(self) -> Decimal:
        """Most the bucket may hold in use, with reserved capacity held back"""
        return max(ZERO, self.effective_capacity - self.reserved_amount)

    @property
    def remaining_capacity(self) -> Decimal:
        return capacity.remaining(self.allocation_limit, self.used_amount)

    @property
    def utilization_percentage(self) -> Decimal:
        return capacity.utilization_percentage(self.effective_capacity, self.used_amount)

    def is_at_warning_threshold(self) -> bool:
        return capacity.is_at_threshold(self.effective_capacity, self.used_amount, self.warning_threshold)

    def is_at_critical_threshold(self) -> bool:
        return capacity.is_at_threshold(self.effective_capacity, self.used_amount, self.critical_threshold)

    def capacity_state(self) -> capacity.CapacityState:
        return capacity.CapacityState(
            limit=self.allocation_limit, used=self.used_amount, status=self.bucket_status, expires_at=self.expires_at
        )

    def refresh_status(self, now: datetime) -> str:
        """Re-derive ``bucket_status`` from capacity; returns the new status"""
        previous = self.bucket_status
        self.bucket_status = capacity.derive_status(self.capacity_state(), now)
        if self.bucket_status != previous:
            if self.bucket_status == capacity.STATUS_DEPLETED:
                self.depleted_at = now
                self.status_reason = "Capacity exhausted"
            elif self.bucket_status == capacity.STATUS_EXPIRED:
                self.status_reason = self.status_reason or "Bucket expired"
            elif self.bucket_status == capacity.STATUS_ACTIVE:
                self.depleted_at = None
                self.status_reason = ""
            logger.info(f"🪣 [Bucket] {self.code} status {previous} → {self.bucket_status}")
        return self.bucket_status

    def applies_to_service_type(self, service_type: str | None) -> bool:
        if not self.service_types:
            return True
        return bool(service_type) and service_type in self.service_types

    def restriction_violation(
        self, moment: datetime, origin_country: str = "", destination_country: str = "", is_roaming: bool = False
    ) -> str | None:
        """Reason the bucket refuses usage at this time/place, or None"""
        reason = self.time_policy.violation(moment)
        if reason:
            return reason
        return self.location_policy.violation(origin_country, destination_country, is_roaming)

    def limit_headroom(self, moment: datetime) -> Decimal | None:
        """Room left under the daily/weekly/monthly limits at ``moment``; None when unlimited"""
        headroom: Decimal | None = None
        for limit, counter, granularity in (
            (self.daily_limit, self.daily_usage, capacity.GRANULARITY_DAY),
            (self.weekly_limit, self.weekly_usage, capacity.GRANULARITY_WEEK),
            (self.monthly_limit, self.monthly_usage, capacity.GRANULARITY_MONTH),
        ):
            if limit is None:
                continue
            used = capacity.rolled_counter(counter, self.last_usage_at, moment, granularity)
            room = capacity.remaining(limit, used)
            headroom = room if headroom is None else min(headroom, room)
        return headroom

    def absorbable(self, moment: datetime) -> Decimal:
        """Most this bucket can take right now, counting period limits"""
        room = self.remaining_capacity
        headroom = self.limit_headroom(moment)
        return room if headroom is None else min(room, headroom)

    # ---------------------------------------------------------------------------
    # Mutations (in memory; persisted by the allocation engine)
    # ---------------------------------------------------------------------------

    def _bump_counter(self, field_name: str, amount: Decimal, moment: datetime, granularity: str) -> None:
        current = getattr(self, field_name)
        last = self.last_usage_at
        if last is not None and moment < last:
            # Late event: counts only when it still belongs to the current period
            if capacity.same_period(last, moment, granularity):
                setattr(self, field_name, current + amount)
            return
        setattr(self, field_name, capacity.rolled_counter(current, last, moment, granularity) + amount)

    def apply_usage(self, amount: Decimal, moment: datetime) -> None:
        self._bump_counter("daily_usage", amount, moment, capacity.GRANULARITY_DAY)
        self._bump_counter("weekly_usage", amount, moment, capacity.GRANULARITY_WEEK)
        self._bump_counter("monthly_usage", amount, moment, capacity.GRANULARITY_MONTH)
        self.used_amount += amount
        self.current_period_usage += amount
        self.lifetime_usage += amount
        if self.first_usage_at is None or moment < self.first_usage_at:
            self.first_usage_at = moment
        if self.last_usage_at is None or moment > self.last_usage_at:
            self.last_usage_at = moment

    def release_usage(self, amount: Decimal) -> Decimal:
        """Give back up to ``amount``; returns what was actually released"""
        released = min(amount, self.used_amount)
        self.used_amount -= released
        self.current_period_usage = max(ZERO, self.current_period_usage - released)
        self.lifetime_usage = max(ZERO, self.lifetime_usage - released)
        for field_name in ("daily_usage", "weekly_usage", "monthly_usage"):
            setattr(self, field_name, max(ZERO, getattr(self, field_name) - released))
        return released

    def reset_for_new_period(self, now: datetime) -> dict[str, Any]:
        """
        Bank rollover, zero usage counters and advance ``next_reset_date``.

        A reset with no usage since the previous one keeps the banked
        rollover as it is, so repeated resets leave identical counters.
        """
        used_since_reset = self.current_period_usage > 0
        self.next_reset_date = capacity.next_reset_after(self.reset_frequency, self.next_reset_date, now)

        if self.allows_rollover and used_since_reset:
            unused = capacity.remaining(self.bucket_capacity, self.used_amount)
            self.rollover_balance = capacity.rollover_amount(unused, self.rollover_percentage)
            self.rollover_expires_at = self.next_reset_date
        elif not self.allows_rollover:
            self.rollover_balance = ZERO
            self.rollover_expires_at = None

        self.used_amount = ZERO
        self.current_period_usage = ZERO
        for field_name in RESET_COUNTERS[self.reset_frequency]:
            setattr(self, field_name, ZERO)
        self.last_reset_date = now
        self.refresh_status(now)
        return {
            "rollover_balance": str(self.rollover_balance),
            "next_reset_date": self.next_reset_date.isoformat(),
        }

    # ---------------------------------------------------------------------------
    # Validation
    # ---------------------------------------------------------------------------

    def clean(self) -> None:
        errors: dict[str, list[str]] = {}
        for field_name, parser in (
            ("time_restrictions", TimeRestrictions.from_json),
            ("location_restrictions", LocationRestrictions.from_json),
        ):
            try:
                parser(getattr(self, field_name))
            except ValidationError as e:
                errors.setdefault(field_name, []).extend(e.messages)

        if not isinstance(self.service_types, list):
            errors.setdefault("service_types", []).append("Service types must be a list")
        if self.warning_threshold is not None and self.critical_threshold is not None:
            if self.warning_threshold > self.critical_threshold:
                errors.setdefault("warning_threshold", []).append("Warning threshold cannot exceed critical threshold")
        if self.allows_rollover and not self.rollover_percentage:
            errors.setdefault("rollover_percentage", []).append("Rollover needs a percentage above zero")

        if self.allows_overflow:
            self._validate_overflow_target(errors)
        elif self.overflow_bucket_id is not None and self.overflow_bucket_id == self.pk:
            errors.setdefault("overflow_bucket", []).append("A bucket cannot overflow into itself")

        if errors:
            raise ValidationError(errors)

    def _validate_overflow_target(self, errors: dict[str, list[str]]) -> None:
        if self.overflow_bucket_id is None:
            errors.setdefault("overflow_bucket", []).append("Overflow is enabled but no overflow bucket is set")
            return

        target = UsageBucket.all_objects.filter(pk=self.overflow_bucket_id).first()
        if target is None or target.is_deleted or not target.is_active:
            errors.setdefault("overflow_bucket", []).append("Overflow bucket must be a live bucket")
            return
        if target.bucket_status == capacity.STATUS_EXPIRED:
            errors.setdefault("overflow_bucket", []).append("Overflow bucket has expired")
            return

        cycle = find_overflow_cycle(self.pk, self.overflow_bucket_id)
        if cycle is not None:
            errors.setdefault("overflow_bucket", []).append(str(OverflowCycle(cycle)))

    def save(self, *args: Any, **kwargs: Any) -> None:
        # Partial saves come from bookkeeping paths; configuration writes validate in full
        if kwargs.get("update_fields") is None:
            self.full_clean()
        super().save(*args, **kwargs)

    def _cascade_soft_delete(self, user: Any | None = None) -> None:
        from .threshold_service import archive_alerts_for  # noqa: PLC0415

        self.is_active = False
        self.save(update_fields=["is_active", "updated_at"])
        archive_alerts_for(self, actor=user)
