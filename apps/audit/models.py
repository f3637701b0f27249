"""
Audit models for tracking usage billing changes.
Every mutating engine call records who did what to which record.
"""

from __future__ import annotations

import uuid
from typing import Any, ClassVar

from django.conf import settings
from django.contrib.contenttypes.fields import GenericForeignKey
from django.contrib.contenttypes.models import ContentType
from django.db import models


class AuditEvent(models.Model):
    """Immutable audit log for all usage billing changes."""

    # ======================================================================
    # AUDIT EVENT CATEGORIES
    # ======================================================================
    CATEGORY_CHOICES: ClassVar[tuple[tuple[str, str], ...]] = (
        ("business_operation", "Business Operation"),
        ("system_admin", "System Administration"),
        ("configuration", "Configuration"),
        ("billing_exception", "Billing Exception"),
    )

    SEVERITY_CHOICES: ClassVar[tuple[tuple[str, str], ...]] = (
        ("low", "Low"),
        ("medium", "Medium"),
        ("high", "High"),
        ("critical", "Critical"),
    )

    ACTOR_TYPE_CHOICES: ClassVar[tuple[tuple[str, str], ...]] = (
        ("user", "User"),
        ("system", "System"),
    )

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    timestamp = models.DateTimeField(auto_now_add=True, db_index=True)

    # Who
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True)
    actor_type = models.CharField(max_length=20, choices=ACTOR_TYPE_CHOICES, default="system")

    # What
    action = models.CharField(max_length=80, db_index=True)
    category = models.CharField(max_length=30, choices=CATEGORY_CHOICES, default="business_operation")
    severity = models.CharField(max_length=10, choices=SEVERITY_CHOICES, default="low")
    description = models.TextField(blank=True)

    # Which record
    content_type = models.ForeignKey(ContentType, on_delete=models.SET_NULL, null=True, blank=True)
    object_id = models.CharField(max_length=64, blank=True)
    content_object = GenericForeignKey("content_type", "object_id")

    old_values = models.JSONField(default=dict, blank=True)
    new_values = models.JSONField(default=dict, blank=True)
    metadata = models.JSONField(default=dict, blank=True)
    request_id = models.CharField(max_length=64, blank=True)

    class Meta:
        db_table = "audit_event"
        ordering: ClassVar[tuple[str, ...]] = ("-timestamp",)
        indexes: ClassVar[tuple[models.Index, ...]] = (
            models.Index(fields=["content_type", "object_id", "-timestamp"], name="idx_audit_object_time"),
            models.Index(fields=["action", "-timestamp"], name="idx_audit_action_time"),
            models.Index(fields=["category", "-timestamp"], name="idx_audit_category_time"),
        )

    def __str__(self) -> str:
        return f"{self.action} on {self.content_type} by {self.user or 'System'}"

    def save(self, *args: Any, **kwargs: Any) -> None:
        if not self._state.adding:
            raise ValueError("Audit events are immutable")
        super().save(*args, **kwargs)
