"""
Audit services for Ledgerline Platform
Centralized audit logging for usage billing operations.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from django.contrib.contenttypes.models import ContentType

from apps.common.logging import get_correlation_id

from .models import AuditEvent

logger = logging.getLogger(__name__)


class AuditJSONEncoder(json.JSONEncoder):
    """
    Custom JSON encoder for audit metadata serialization.

    Handles the types the billing engine puts into metadata:
    - UUID objects (convert to string)
    - datetime/date objects (convert to ISO format)
    - Decimal objects (convert to string to preserve precision)
    - Model instances (convert to string representation)
    """

    def default(self, obj: Any) -> Any:
        if isinstance(obj, uuid.UUID):
            return str(obj)
        elif isinstance(obj, (datetime, date)):
            return obj.isoformat()
        elif isinstance(obj, Decimal):
            return str(obj)
        elif hasattr(obj, "pk"):
            return f"{obj.__class__.__name__}(pk={obj.pk})"
        return super().default(obj)


def serialize_metadata(metadata: dict[str, Any] | None) -> dict[str, Any]:
    """Round-trip metadata through the audit encoder so it is safe for JSONField storage"""
    if not metadata:
        return {}
    try:
        return json.loads(json.dumps(metadata, cls=AuditJSONEncoder, ensure_ascii=False))  # type: ignore[no-any-return]
    except (TypeError, ValueError) as e:
        logger.error(f"🔥 [Audit] Failed to serialize metadata: {e}")
        raise


@dataclass
class AuditContext:
    """Parameter object for audit event context information"""

    user: Any | None = None
    request_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    actor_type: str = "system"


@dataclass
class AuditEventData:
    """
    Parameter object for audit event data

    content_object.pk is stored as a string so integer and UUID keys mix.
    """

    event_type: str
    content_object: Any | None = None
    old_values: dict[str, Any] | None = None
    new_values: dict[str, Any] | None = None
    description: str = ""


class AuditService:
    """Centralized audit logging service"""

    @staticmethod
    def log_event(event_data: AuditEventData, context: AuditContext | None = None) -> AuditEvent:
        """
        🔐 Log an audit event with automatic categorization

        Args:
            event_data: AuditEventData containing event information
            context: AuditContext containing actor context (optional)
        """
        if context is None:
            context = AuditContext()

        try:
            content_type = None
            object_id = ""
            if event_data.content_object is not None:
                content_type = ContentType.objects.get_for_model(event_data.content_object)
                object_id = str(event_data.content_object.pk)

            category = context.metadata.get("category") or AuditService._get_action_category(event_data.event_type)
            severity = context.metadata.get("severity") or AuditService._get_action_severity(event_data.event_type)

            audit_event = AuditEvent.objects.create(
                user=context.user,
                actor_type=context.actor_type,
                action=event_data.event_type,
                category=category,
                severity=severity,
                content_type=content_type,
                object_id=object_id,
                old_values=serialize_metadata(event_data.old_values),
                new_values=serialize_metadata(event_data.new_values),
                description=event_data.description,
                request_id=context.request_id or get_correlation_id() or str(uuid.uuid4()),
                metadata=serialize_metadata(context.metadata),
            )

            logger.info(
                f"✅ [Audit] {event_data.event_type} event logged for "
                f"{getattr(context.user, 'username', None) or 'System'} ({category}/{severity})"
            )
            return audit_event

        except Exception as e:
            logger.error(f"🔥 [Audit] Failed to log event {event_data.event_type}: {e}")
            raise

    @staticmethod
    def log_simple_event(  # noqa: PLR0913
        event_type: str,
        *,
        user: Any | None = None,
        content_object: Any | None = None,
        description: str = "",
        old_values: dict[str, Any] | None = None,
        new_values: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
        actor_type: str = "user",
    ) -> AuditEvent:
        """
        🔐 Simplified audit logging method (DRY helper)

        Args:
            event_type: Type of event being logged
            user: User who performed the action (None for system actions)
            content_object: Django model instance being audited
            description: Human-readable description
            old_values: Previous values (for updates)
            new_values: New values (for updates)
            metadata: Additional metadata
            actor_type: Type of actor ("user" or "system")
        """
        event_data = AuditEventData(
            event_type=event_type,
            content_object=content_object,
            description=description,
            old_values=old_values,
            new_values=new_values,
        )
        context = AuditContext(user=user, actor_type=actor_type, metadata=metadata or {})
        return AuditService.log_event(event_data, context)

    @staticmethod
    def _get_action_category(action: str) -> str:
        """Determine audit event category from action type"""
        category_mappings = {
            "billing_exception": ["usage_billing_exception"],
            "configuration": ["pricing_rule_", "usage_pool_capacity", "usage_bucket_capacity"],
            "system_admin": ["usage_period_reset", "usage_schedule_"],
        }
        for category, prefixes in category_mappings.items():
            if any(action.startswith(prefix) for prefix in prefixes):
                return category
        return "business_operation"

    @staticmethod
    def _get_action_severity(action: str) -> str:
        """Determine severity level for an action"""
        if action in {"usage_billing_exception", "usage_alert_automated_action"}:
            return "high"
        if action.endswith(("_suspended", "_expired", "_soft_deleted")):
            return "medium"
        return "low"
