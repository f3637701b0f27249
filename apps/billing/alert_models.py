"""
Usage alert models for Ledgerline Platform
Stateful threshold watchers bound to a client, a pool or a bucket.
"""

from __future__ import annotations

import logging
import uuid
from decimal import Decimal
from typing import Any, ClassVar
from zoneinfo import ZoneInfo

from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator
from django.db import models
from django.utils import timezone
from django.utils.translation import gettext_lazy as _

from . import config
from .usage_config import BusinessHours

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class UsageAlert(models.Model):
    """
    Threshold watcher re-evaluated after every allocation touching its target.

    Threshold types:
    - percentage: utilization of the target in percent
    - absolute: raw usage in the target's unit
    - rate_of_change: percent change against the previous evaluation
    - predictive: utilization projected ``prediction_horizon_hours`` ahead

    Suppression is a rate limiter, not a policy override: a suppressed trigger
    is still counted but sends no notification.
    """

    SCOPE_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("client", _("Client")),
        ("pool", _("Pool")),
        ("bucket", _("Bucket")),
    )

    THRESHOLD_TYPE_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("percentage", _("Percentage")),
        ("absolute", _("Absolute")),
        ("rate_of_change", _("Rate of Change")),
        ("predictive", _("Predictive")),
    )

    OPERATOR_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        (">=", _("Greater or equal")),
        (">", _("Greater than")),
        ("<=", _("Less or equal")),
        ("<", _("Less than")),
        ("=", _("Equal")),
        ("!=", _("Not equal")),
    )

    STATUS_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("normal", _("Normal")),
        ("warning", _("Warning")),
        ("critical", _("Critical")),
        ("triggered", _("Triggered")),
    )

    SEVERITY_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("low", _("Low")),
        ("medium", _("Medium")),
        ("high", _("High")),
        ("critical", _("Critical")),
    )

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    # Identification
    code = models.CharField(max_length=50, unique=True)
    name = models.CharField(max_length=200)

    # Target
    scope = models.CharField(max_length=10, choices=SCOPE_CHOICES, default="pool")
    customer = models.ForeignKey("customers.Customer", on_delete=models.CASCADE, related_name="usage_alerts")
    pool = models.ForeignKey(
        "billing.UsagePool", on_delete=models.CASCADE, null=True, blank=True, related_name="alerts"
    )
    bucket = models.ForeignKey(
        "billing.UsageBucket", on_delete=models.CASCADE, null=True, blank=True, related_name="alerts"
    )

    # Threshold definition
    threshold_type = models.CharField(max_length=20, choices=THRESHOLD_TYPE_CHOICES, default="percentage")
    comparison_operator = models.CharField(max_length=2, choices=OPERATOR_CHOICES, default=">=")
    threshold_value = models.DecimalField(max_digits=18, decimal_places=6)
    warning_threshold = models.DecimalField(max_digits=18, decimal_places=6, default=config.DEFAULT_WARNING_THRESHOLD)
    critical_threshold = models.DecimalField(
        max_digits=18, decimal_places=6, default=config.DEFAULT_CRITICAL_THRESHOLD
    )
    require_consecutive_periods = models.BooleanField(default=False)
    consecutive_period_count = models.PositiveSmallIntegerField(default=1, validators=[MinValueValidator(1)])
    prediction_horizon_hours = models.PositiveIntegerField(default=24)

    # Evaluation state
    current_usage = models.DecimalField(max_digits=18, decimal_places=6, default=ZERO)
    previous_usage = models.DecimalField(max_digits=18, decimal_places=6, default=ZERO)
    current_threshold_percentage = models.DecimalField(max_digits=10, decimal_places=2, default=ZERO)
    alert_status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="normal")
    severity_level = models.CharField(max_length=10, choices=SEVERITY_CHOICES, default="low")
    last_check_at = models.DateTimeField(null=True, blank=True)
    last_evaluated_revision = models.PositiveBigIntegerField(null=True, blank=True)
    breach_streak = models.PositiveIntegerField(default=0)
    breach_streak_started_at = models.DateTimeField(null=True, blank=True)
    last_triggered_at = models.DateTimeField(null=True, blank=True)
    trigger_count = models.PositiveIntegerField(default=0)
    recent_alerts = models.JSONField(default=list, blank=True)
    notification_log = models.JSONField(
        default=list, blank=True, help_text=_("Notification times from the last day, for the hourly and daily caps")
    )

    # Suppression
    enable_suppression = models.BooleanField(default=True)
    suppression_window_minutes = models.PositiveIntegerField(default=config.DEFAULT_SUPPRESSION_WINDOW_MINUTES)
    suppression_until = models.DateTimeField(null=True, blank=True)
    max_alerts_per_hour = models.PositiveIntegerField(null=True, blank=True)
    max_alerts_per_day = models.PositiveIntegerField(null=True, blank=True)
    suppressed_alert_count = models.PositiveIntegerField(default=0)
    notification_count = models.PositiveIntegerField(default=0)
    warning_alert_count = models.PositiveIntegerField(default=0)
    critical_alert_count = models.PositiveIntegerField(default=0)

    # Schedule
    respect_business_hours = models.BooleanField(default=False)
    business_hours = models.JSONField(default=dict, blank=True, help_text=_("Per-weekday hour windows"))
    time_zone = models.CharField(max_length=64, default="UTC")
    weekend_notifications = models.BooleanField(default=True)

    # Channels
    email_notifications = models.BooleanField(default=True)
    sms_notifications = models.BooleanField(default=False)
    webhook_notifications = models.BooleanField(default=False)
    dashboard_notifications = models.BooleanField(default=True)
    notification_recipients = models.JSONField(default=list, blank=True)

    # Escalation
    enable_escalation = models.BooleanField(default=False)
    escalation_delay_minutes = models.PositiveIntegerField(default=60)
    last_escalated_at = models.DateTimeField(null=True, blank=True)
    escalation_level = models.PositiveSmallIntegerField(default=0)

    # Automated actions
    enable_automated_actions = models.BooleanField(default=False)
    auto_suspend_services = models.BooleanField(default=False)
    auto_limit_usage = models.BooleanField(default=False)
    auto_purchase_additional_usage = models.BooleanField(default=False)
    auto_purchase_amount = models.DecimalField(
        max_digits=18, decimal_places=6, default=config.DEFAULT_AUTO_PURCHASE_AMOUNT
    )

    acknowledgment_log = models.JSONField(default=list, blank=True)
    acknowledged_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="acknowledged_usage_alerts",
    )

    is_active = models.BooleanField(default=True)
    archived_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "usage_threshold_alerts"
        verbose_name = _("Usage Alert")
        verbose_name_plural = _("Usage Alerts")
        ordering = ("code",)
        indexes = (
            models.Index(fields=["pool", "is_active"], name="idx_alert_pool_active"),
            models.Index(fields=["bucket", "is_active"], name="idx_alert_bucket_active"),
            models.Index(fields=["customer", "scope", "is_active"], name="idx_alert_customer_scope"),
            models.Index(fields=["alert_status"], name="idx_alert_status"),
        )

    def __str__(self) -> str:
        return f"{self.code} ({self.scope}, {self.alert_status})"

    @property
    def target(self) -> Any:
        if self.scope == "pool":
            return self.pool
        if self.scope == "bucket":
            return self.bucket
        return self.customer

    @property
    def schedule(self) -> BusinessHours:
        return BusinessHours.from_json(self.business_hours)

    @property
    def channels(self) -> list[str]:
        flags = (
            ("email", self.email_notifications),
            ("sms", self.sms_notifications),
            ("webhook", self.webhook_notifications),
            ("dashboard", self.dashboard_notifications),
        )
        return [channel for channel, enabled in flags if enabled]

    @property
    def is_archived(self) -> bool:
        return self.archived_at is not None

    def clean(self) -> None:
        errors: dict[str, list[str]] = {}
        if self.scope == "pool" and self.pool_id is None:
            errors.setdefault("pool", []).append("Pool-scoped alerts need a pool")
        if self.scope == "bucket" and self.bucket_id is None:
            errors.setdefault("bucket", []).append("Bucket-scoped alerts need a bucket")
        if self.warning_threshold is not None and self.critical_threshold is not None:
            if self.warning_threshold > self.critical_threshold:
                errors.setdefault("warning_threshold", []).append("Warning threshold cannot exceed critical threshold")
        try:
            BusinessHours.from_json(self.business_hours)
        except ValidationError as e:
            errors.setdefault("business_hours", []).extend(e.messages)
        if not isinstance(self.notification_recipients, list):
            errors.setdefault("notification_recipients", []).append("Recipients must be a list")
        try:
            ZoneInfo(self.time_zone)
        except (KeyError, ValueError):
            errors.setdefault("time_zone", []).append(f"Unknown time zone {self.time_zone!r}")
        if errors:
            raise ValidationError(errors)

    def save(self, *args: Any, **kwargs: Any) -> None:
        if kwargs.get("update_fields") is None:
            self.full_clean()
        super().save(*args, **kwargs)
