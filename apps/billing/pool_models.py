"""
Usage pool models for Ledgerline Platform
Shared capacity ledgers spanning one or more member clients.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, ClassVar

from dateutil.relativedelta import relativedelta
from django.core.exceptions import ValidationError
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.utils import timezone
from django.utils.translation import gettext_lazy as _

from apps.common.models import SoftDeleteModel

from . import capacity, config
from .usage_config import LocationRestrictions, TimeRestrictions

logger = logging.getLogger(__name__)

PERCENT_VALIDATORS = (MinValueValidator(Decimal("0")), MaxValueValidator(Decimal("100")))


class UsagePool(SoftDeleteModel):
    """
    Shared capacity ledger.

    Invariant: ``used_capacity <= total_capacity`` unless overallocation is
    enabled, in which case ``used_capacity <= total_capacity × (1 + limit/100)``.
    Banked rollover capacity extends the total until it expires.

    Allocation methods decide how absorbed usage is attributed to members:
    - equal_share: every member owns an equal slice of the pool
    - weighted: slices proportional to member weight
    - priority_based: members filled in descending priority
    - first_come_first_served: members filled in stored order
    """

    POOL_TYPE_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("shared", _("Shared")),
        ("client_specific", _("Client Specific")),
        ("location_based", _("Location Based")),
        ("service_based", _("Service Based")),
    )

    ALLOCATION_METHOD_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("equal_share", _("Equal Share")),
        ("weighted", _("Weighted")),
        ("priority_based", _("Priority Based")),
        ("first_come_first_served", _("First Come First Served")),
    )

    BILLING_CYCLE_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("monthly", _("Monthly")),
        ("quarterly", _("Quarterly")),
        ("yearly", _("Yearly")),
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
    customer = models.ForeignKey(
        "customers.Customer", on_delete=models.CASCADE, related_name="usage_pools", help_text=_("Pool owner")
    )
    pool_type = models.CharField(max_length=20, choices=POOL_TYPE_CHOICES, default="client_specific")
    usage_type = models.CharField(max_length=50)
    service_types = models.JSONField(default=list, blank=True, help_text=_("Service types; empty applies to all"))

    # Capacity
    total_capacity = models.DecimalField(
        max_digits=18, decimal_places=6, validators=[MinValueValidator(Decimal("0"))]
    )
    allocated_capacity = models.DecimalField(max_digits=18, decimal_places=6, default=Decimal("0"))
    used_capacity = models.DecimalField(max_digits=18, decimal_places=6, default=Decimal("0"))
    capacity_unit = models.CharField(max_length=20, default="units")
    allocation_method = models.CharField(
        max_length=30, choices=ALLOCATION_METHOD_CHOICES, default="first_come_first_served"
    )

    # Thresholds (percent)
    warning_threshold = models.DecimalField(
        max_digits=5, decimal_places=2, default=config.DEFAULT_WARNING_THRESHOLD, validators=PERCENT_VALIDATORS
    )
    critical_threshold = models.DecimalField(
        max_digits=5, decimal_places=2, default=config.DEFAULT_CRITICAL_THRESHOLD, validators=PERCENT_VALIDATORS
    )

    # Overallocation
    allow_overallocation = models.BooleanField(default=False)
    overallocation_limit = models.DecimalField(
        max_digits=6, decimal_places=2, default=Decimal("0"), validators=[MinValueValidator(Decimal("0"))],
        help_text=_("Percent beyond total capacity"),
    )

    # Restrictions
    time_restrictions = models.JSONField(default=dict, blank=True)
    geographic_restrictions = models.JSONField(default=dict, blank=True)

    # Rollover
    allows_rollover = models.BooleanField(default=False)
    rollover_percentage = models.DecimalField(
        max_digits=5, decimal_places=2, default=Decimal("0"), validators=PERCENT_VALIDATORS
    )
    rollover_months = models.PositiveSmallIntegerField(default=1)
    rollover_capacity = models.DecimalField(max_digits=18, decimal_places=6, default=Decimal("0"))
    rollover_expires_at = models.DateTimeField(null=True, blank=True)

    # Billing cycle
    billing_cycle = models.CharField(max_length=20, choices=BILLING_CYCLE_CHOICES, default="monthly")
    cycle_start_date = models.DateTimeField(null=True, blank=True)
    cycle_end_date = models.DateTimeField(null=True, blank=True)
    next_reset_date = models.DateTimeField(null=True, blank=True)

    # Usage tracking
    current_period_usage = models.DecimalField(max_digits=18, decimal_places=6, default=Decimal("0"))
    previous_period_usage = models.DecimalField(max_digits=18, decimal_places=6, default=Decimal("0"))
    lifetime_usage = models.DecimalField(max_digits=20, decimal_places=6, default=Decimal("0"))
    last_usage_update = models.DateTimeField(null=True, blank=True)
    usage_history = models.JSONField(default=list, blank=True)

    # Status
    pool_status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=capacity.STATUS_ACTIVE)
    status_reason = models.CharField(max_length=255, blank=True)
    suspended_at = models.DateTimeField(null=True, blank=True)
    expires_at = models.DateTimeField(null=True, blank=True)
    is_active = models.BooleanField(default=True)

    # Compare-and-update guard
    revision = models.PositiveBigIntegerField(default=0)

    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "usage_pools"
        verbose_name = _("Usage Pool")
        verbose_name_plural = _("Usage Pools")
        ordering = ("code",)
        indexes = (
            models.Index(fields=["customer", "usage_type", "is_active"], name="idx_pool_customer_usage"),
            models.Index(fields=["pool_status"], name="idx_pool_status"),
            models.Index(fields=["next_reset_date"], name="idx_pool_next_reset"),
            models.Index(fields=["deleted_at"], name="idx_pool_deleted"),
        )

    def __str__(self) -> str:
        return f"{self.code} ({self.used_capacity}/{self.total_capacity} {self.capacity_unit})"

    # ---------------------------------------------------------------------------
    # Parsed configuration
    # ---------------------------------------------------------------------------

    @property
    def time_policy(self) -> TimeRestrictions:
        return TimeRestrictions.from_json(self.time_restrictions)

    @property
    def location_policy(self) -> LocationRestrictions:
        return LocationRestrictions.from_json(self.geographic_restrictions)

    # ---------------------------------------------------------------------------
    # Capacity
    # ---------------------------------------------------------------------------

    @property
    def effective_capacity(self) -> Decimal:
        """Total capacity plus banked rollover"""
        return self.total_capacity + self.rollover_capacity

    @property
    def allocation_ceiling(self) -> Decimal:
        return capacity.overallocation_ceiling(
            self.effective_capacity, self.allow_overallocation, self.overallocation_limit
        )

    @property
    def remaining_capacity(self) -> Decimal:
        return capacity.remaining(self.effective_capacity, self.used_capacity)

    @property
    def utilization_percentage(self) -> Decimal:
        return capacity.utilization_percentage(self.effective_capacity, self.used_capacity)

    def is_at_warning_threshold(self) -> bool:
        return capacity.is_at_threshold(self.effective_capacity, self.used_capacity, self.warning_threshold)

    def is_at_critical_threshold(self) -> bool:
        return capacity.is_at_threshold(self.effective_capacity, self.used_capacity, self.critical_threshold)

    def capacity_state(self) -> capacity.CapacityState:
        return capacity.CapacityState(
            limit=self.allocation_ceiling, used=self.used_capacity, status=self.pool_status, expires_at=self.expires_at
        )

    def refresh_status(self, now: datetime) -> str:
        """Re-derive ``pool_status`` from capacity; returns the new status"""
        previous = self.pool_status
        self.pool_status = capacity.derive_status(self.capacity_state(), now)
        if self.pool_status != previous:
            if self.pool_status == capacity.STATUS_DEPLETED:
                self.status_reason = "Capacity exhausted"
            elif self.pool_status == capacity.STATUS_EXPIRED:
                self.status_reason = self.status_reason or "Pool expired"
            elif self.pool_status == capacity.STATUS_ACTIVE:
                self.status_reason = ""
            logger.info(f"📦 [Pool] {self.code} status {previous} → {self.pool_status}")
        return self.pool_status

    def applies_to_service_type(self, service_type: str | None) -> bool:
        if not self.service_types:
            return True
        return bool(service_type) and service_type in self.service_types

    def restriction_violation(
        self, moment: datetime, origin_country: str = "", destination_country: str = "", is_roaming: bool = False
    ) -> str | None:
        """Reason the pool refuses usage at this time/place, or None"""
        reason = self.time_policy.violation(moment)
        if reason:
            return reason
        return self.location_policy.violation(origin_country, destination_country, is_roaming)

    # ---------------------------------------------------------------------------
    # Mutations (in memory; persisted by the allocation engine)
    # ---------------------------------------------------------------------------

    def apply_usage(self, amount: Decimal, moment: datetime, reference: str = "") -> None:
        self.used_capacity += amount
        self.current_period_usage += amount
        self.lifetime_usage += amount
        self.last_usage_update = moment
        self._record_history({"at": moment.isoformat(), "amount": str(amount), "reference": reference})

    def release_usage(self, amount: Decimal, moment: datetime, reference: str = "") -> Decimal:
        """Give back up to ``amount``; returns what was actually released"""
        released = min(amount, self.used_capacity)
        self.used_capacity -= released
        self.current_period_usage = max(Decimal("0"), self.current_period_usage - released)
        self.lifetime_usage = max(Decimal("0"), self.lifetime_usage - released)
        self.last_usage_update = moment
        self._record_history({"at": moment.isoformat(), "amount": str(-released), "reference": reference})
        return released

    def reset_for_new_period(self, now: datetime) -> dict[str, Any]:
        """
        Bank rollover, zero usage and advance the billing cycle.

        A reset with no usage since the previous one keeps the banked
        rollover as it is, so repeated resets leave identical counters.
        """
        used_since_reset = self.current_period_usage > 0
        if self.allows_rollover and used_since_reset:
            unused = capacity.remaining(self.total_capacity, self.used_capacity)
            self.rollover_capacity = capacity.rollover_amount(unused, self.rollover_percentage)
            self.rollover_expires_at = now + relativedelta(months=self.rollover_months)
        elif not self.allows_rollover:
            self.rollover_capacity = Decimal("0")
            self.rollover_expires_at = None

        if used_since_reset:
            self.previous_period_usage = self.current_period_usage
        self.used_capacity = Decimal("0")
        self.current_period_usage = Decimal("0")

        self.cycle_start_date, self.cycle_end_date = capacity.advance_cycle(
            self.billing_cycle, self.cycle_start_date, self.cycle_end_date, now
        )
        self.next_reset_date = self.cycle_end_date
        self.refresh_status(now)
        return {
            "rollover_capacity": str(self.rollover_capacity),
            "previous_period_usage": str(self.previous_period_usage),
            "cycle_start_date": self.cycle_start_date.isoformat(),
            "cycle_end_date": self.cycle_end_date.isoformat(),
        }

    def _record_history(self, entry: dict[str, Any]) -> None:
        entry["used_after"] = str(self.used_capacity)
        history = [*(self.usage_history or []), entry]
        self.usage_history = history[-config.POOL_USAGE_HISTORY_SIZE :]

    # ---------------------------------------------------------------------------
    # Validation
    # ---------------------------------------------------------------------------

    def clean(self) -> None:
        errors: dict[str, list[str]] = {}
        for field_name, parser in (
            ("time_restrictions", TimeRestrictions.from_json),
            ("geographic_restrictions", LocationRestrictions.from_json),
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

        if errors:
            raise ValidationError(errors)

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


class UsagePoolMember(models.Model):
    """A client drawing on a pool, with its weight, priority and running usage"""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    pool = models.ForeignKey(UsagePool, on_delete=models.CASCADE, related_name="members")
    customer = models.ForeignKey("customers.Customer", on_delete=models.CASCADE, related_name="pool_memberships")
    weight = models.DecimalField(
        max_digits=8, decimal_places=4, default=Decimal("1"), validators=[MinValueValidator(Decimal("0"))]
    )
    priority = models.IntegerField(default=0, help_text=_("Higher priorities draw first"))
    allocated_capacity = models.DecimalField(
        max_digits=18, decimal_places=6, default=Decimal("0"), help_text=_("Explicit quota; zero means unbounded")
    )
    used_capacity = models.DecimalField(max_digits=18, decimal_places=6, default=Decimal("0"))
    position = models.PositiveIntegerField(default=0, help_text=_("Stored order for first come first served"))
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "usage_pool_members"
        verbose_name = _("Usage Pool Member")
        verbose_name_plural = _("Usage Pool Members")
        ordering = ("pool", "position")
        constraints = (
            models.UniqueConstraint(fields=["pool", "customer"], name="unique_usage_pool_member"),
        )

    def __str__(self) -> str:
        return f"{self.customer} in {self.pool.code}"
