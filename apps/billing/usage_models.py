"""
Rated usage ledger for Ledgerline Platform
One row per rated metering event, plus billing exceptions for events that
could not be rated and need manual review.
"""

from __future__ import annotations

import logging
import uuid
from decimal import Decimal
from typing import Any, ClassVar

from django.conf import settings
from django.db import models
from django.utils import timezone
from django.utils.translation import gettext_lazy as _

logger = logging.getLogger(__name__)


class RatedUsage(models.Model):
    """
    Result of rating one usage event.

    The idempotency key is unique: replaying an event returns this row
    instead of allocating again. ``rule_snapshot`` freezes the rule version
    the event was priced with so later rule changes never alter it.
    """

    STATUS_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("rated", _("Rated")),
        ("allocated", _("Fully Allocated")),
        ("exception", _("Billing Exception")),
    )

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    idempotency_key = models.CharField(max_length=255, unique=True)

    # Event
    customer = models.ForeignKey("customers.Customer", on_delete=models.PROTECT, related_name="rated_usage")
    usage_type = models.CharField(max_length=50)
    service_type = models.CharField(max_length=50, blank=True)
    quantity = models.DecimalField(max_digits=18, decimal_places=6)
    event_timestamp = models.DateTimeField()
    origin_country = models.CharField(max_length=2, blank=True)
    destination_country = models.CharField(max_length=2, blank=True)
    is_roaming = models.BooleanField(default=False)
    properties = models.JSONField(default=dict, blank=True)

    # Pricing
    rule = models.ForeignKey(
        "billing.PricingRule", on_delete=models.SET_NULL, null=True, blank=True, related_name="rated_usage"
    )
    rule_snapshot = models.JSONField(default=dict, blank=True)

    # Allocation outcome
    covered_quantity = models.DecimalField(max_digits=18, decimal_places=6, default=Decimal("0"))
    uncovered_quantity = models.DecimalField(max_digits=18, decimal_places=6, default=Decimal("0"))
    blocked_quantity = models.DecimalField(max_digits=18, decimal_places=6, default=Decimal("0"))
    allocation_breakdown = models.JSONField(default=dict, blank=True)
    cost_breakdown = models.JSONField(default=dict, blank=True)
    total_cost = models.DecimalField(max_digits=18, decimal_places=4, default=Decimal("0"))
    alerts_triggered = models.JSONField(default=list, blank=True)

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="rated")
    rated_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="rated_usage"
    )
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = "rated_usage"
        verbose_name = _("Rated Usage")
        verbose_name_plural = _("Rated Usage")
        ordering = ("-event_timestamp",)
        indexes = (
            models.Index(fields=["customer", "-event_timestamp"], name="idx_rated_customer_time"),
            models.Index(fields=["usage_type", "-event_timestamp"], name="idx_rated_usage_type_time"),
            models.Index(fields=["status"], name="idx_rated_status"),
        )

    def __str__(self) -> str:
        return f"{self.idempotency_key}: {self.quantity} {self.usage_type} → {self.total_cost}"


class UsageBillingException(models.Model):
    """
    Usage that could not be rated at all (no rule and no pool).

    Never dropped: it waits here for manual review.
    """

    REASON_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("no_applicable_rule", _("No Applicable Rule")),
        ("rule_not_effective", _("Rule Not Effective")),
        ("unknown_client", _("Unknown Client")),
        ("allocation_failed", _("Allocation Failed")),
    )

    STATUS_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("open", _("Open")),
        ("resolved", _("Resolved")),
        ("dismissed", _("Dismissed")),
    )

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    idempotency_key = models.CharField(max_length=255, db_index=True)
    customer = models.ForeignKey(
        "customers.Customer", on_delete=models.SET_NULL, null=True, blank=True, related_name="usage_exceptions"
    )
    rated_usage = models.ForeignKey(
        RatedUsage, on_delete=models.SET_NULL, null=True, blank=True, related_name="exceptions"
    )
    reason = models.CharField(max_length=30, choices=REASON_CHOICES)
    description = models.TextField(blank=True)
    event_payload = models.JSONField(default=dict, blank=True)
    uncovered_quantity = models.DecimalField(max_digits=18, decimal_places=6, default=Decimal("0"))

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="open")
    resolved_at = models.DateTimeField(null=True, blank=True)
    resolved_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="resolved_usage_exceptions",
    )
    resolution_notes = models.TextField(blank=True)
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = "usage_billing_exceptions"
        verbose_name = _("Usage Billing Exception")
        verbose_name_plural = _("Usage Billing Exceptions")
        ordering = ("-created_at",)
        indexes = (
            models.Index(
                fields=["status", "-created_at"],
                condition=models.Q(status="open"),
                name="usage_exception_open",
            ),
        )

    def __str__(self) -> str:
        return f"{self.idempotency_key}: {self.reason} ({self.status})"

    def resolve(self, user: Any = None, notes: str = "", dismiss: bool = False) -> None:
        """Close the exception after manual review"""
        self.status = "dismissed" if dismiss else "resolved"
        self.resolved_at = timezone.now()
        self.resolved_by = user
        self.resolution_notes = notes
        self.save(update_fields=["status", "resolved_at", "resolved_by", "resolution_notes"])
