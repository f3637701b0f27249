"""
Common abstract models for the Ledgerline Platform
Soft delete infrastructure shared by customers, usage pools and usage buckets.
"""

from __future__ import annotations

import logging
from typing import Any

from django.conf import settings
from django.db import models, transaction
from django.db.models.query import QuerySet
from django.utils import timezone

logger = logging.getLogger(__name__)


class SoftDeleteManager(models.Manager):
    """Manager that hides soft-deleted records by default"""

    def get_queryset(self) -> QuerySet[Any]:
        """Only show non-deleted records by default"""
        return super().get_queryset().filter(deleted_at__isnull=True)

    def with_deleted(self) -> QuerySet[Any]:
        """Show all records including soft-deleted"""
        return super().get_queryset()

    def deleted_only(self) -> QuerySet[Any]:
        """Only show soft-deleted records"""
        return super().get_queryset().filter(deleted_at__isnull=False)


class SoftDeleteModel(models.Model):
    """Abstract model with soft delete capabilities"""

    deleted_at = models.DateTimeField(null=True, blank=True)
    deleted_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="deleted_%(class)ss",
    )

    all_objects = models.Manager()  # Manager - All records including soft-deleted
    objects = SoftDeleteManager()  # SoftDeleteManager - Only non-deleted records

    class Meta:
        abstract = True

    def soft_delete(self, user: Any | None = None) -> None:
        """Soft delete with cascading hook"""
        with transaction.atomic():
            logger.warning(
                f"⚡ [SoftDelete] Soft delete initiated: {self.__class__.__name__} ID {self.pk}",
                extra={
                    "user_id": user.pk if user else None,
                    "model": self.__class__.__name__,
                    "record_id": str(self.pk),
                    "operation": "soft_delete",
                },
            )

            self._cascade_soft_delete(user)

            self.deleted_at = timezone.now()
            self.deleted_by = user
            self.save(update_fields=["deleted_at", "deleted_by"])

    def restore(self) -> None:
        """Restore a soft-deleted record"""
        with transaction.atomic():
            logger.info(
                f"⚡ [SoftDelete] Restore initiated: {self.__class__.__name__} ID {self.pk}",
                extra={"model": self.__class__.__name__, "record_id": str(self.pk), "operation": "restore"},
            )
            self.deleted_at = None
            self.deleted_by = None
            self.save(update_fields=["deleted_at", "deleted_by"])

    def _cascade_soft_delete(self, user: Any | None = None) -> None:
        """Handle cascading soft delete for related objects"""
        # Override in subclasses for model-specific cascading

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None
