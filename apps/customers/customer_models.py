"""
Core customer models for Ledgerline Platform
Customer record and contract membership consumed by the usage billing engine.
"""

from __future__ import annotations

import logging
from typing import Any, ClassVar

from django.conf import settings
from django.db import models
from django.utils import timezone
from django.utils.translation import gettext_lazy as _

from apps.common.models import SoftDeleteModel

logger = logging.getLogger(__name__)


class Customer(SoftDeleteModel):
    """
    Core customer model - only the identifying attributes the billing engine
    needs for rule scoping and client criteria matching.

    🚨 CASCADE Behavior:
    - CustomerContract: CASCADE (memberships belong to customer)
    - UsagePool / UsageBucket: soft deleted with the customer
    """

    CUSTOMER_TYPE_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("individual", _("Individual")),
        ("company", _("Company")),
        ("reseller", _("Reseller")),
        ("ngo", _("NGO/Association")),
    )

    STATUS_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("active", _("Active")),
        ("inactive", _("Inactive")),
        ("suspended", _("Suspended")),
        ("prospect", _("Prospect")),
    )

    # Core Identity Fields
    name = models.CharField(max_length=255)
    customer_type = models.CharField(max_length=20, choices=CUSTOMER_TYPE_CHOICES, default="company")
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="active")
    company_name = models.CharField(max_length=255, blank=True)
    primary_email = models.EmailField(blank=True)

    # Business Context
    country_code = models.CharField(max_length=2, blank=True, help_text=_("ISO 3166-1 alpha-2"))
    industry = models.CharField(max_length=100, blank=True)
    tags = models.JSONField(default=list, blank=True)

    # Audit Fields
    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="created_customers"
    )

    class Meta:
        db_table = "customers"
        verbose_name = _("Customer")
        verbose_name_plural = _("Customers")
        indexes: ClassVar[tuple[models.Index, ...]] = (
            models.Index(fields=["status"], name="idx_customer_status"),
            models.Index(fields=["customer_type"], name="idx_customer_type"),
            models.Index(fields=["country_code"], name="idx_customer_country"),
            models.Index(fields=["deleted_at"], name="idx_customer_deleted"),
        )

    def __str__(self) -> str:
        return self.get_display_name()

    def get_display_name(self) -> str:
        """Get customer display name"""
        if self.customer_type == "company" and self.company_name:
            return self.company_name
        return self.name

    def account_age_days(self, now: Any | None = None) -> int:
        """Whole days since the customer record was created"""
        reference = now or timezone.now()
        return max(0, (reference - self.created_at).days)

    def _cascade_soft_delete(self, user: Any | None = None) -> None:
        """Soft delete the customer's usage pools and buckets together with the customer"""
        from apps.billing.models import UsageBucket, UsagePool  # noqa: PLC0415

        for pool in UsagePool.objects.filter(customer=self):
            pool.soft_delete(user)
        for bucket in UsageBucket.objects.filter(customer=self):
            bucket.soft_delete(user)


class CustomerContract(models.Model):
    """
    Thin contract membership record. Contract persistence itself lives outside
    this platform, only the reference and its validity window are kept here.
    """

    customer = models.ForeignKey(Customer, on_delete=models.CASCADE, related_name="contracts")
    contract_reference = models.CharField(max_length=100, db_index=True)
    starts_at = models.DateTimeField(default=timezone.now)
    ends_at = models.DateTimeField(null=True, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "customer_contracts"
        verbose_name = _("Customer Contract")
        verbose_name_plural = _("Customer Contracts")
        constraints: ClassVar[tuple[models.BaseConstraint, ...]] = (
            models.UniqueConstraint(fields=["customer", "contract_reference"], name="uniq_customer_contract"),
        )

    def __str__(self) -> str:
        return f"{self.customer} → {self.contract_reference}"

    def is_current(self, now: Any | None = None) -> bool:
        """Whether the membership is active at the given moment"""
        reference = now or timezone.now()
        if not self.is_active or self.starts_at > reference:
            return False
        return self.ends_at is None or self.ends_at >= reference
