# ===============================================================================
# AUDIT SERVICE TEST SUITE
# ===============================================================================
"""
Tests for audit event logging: categorization, severity, metadata
serialization, correlation ids and immutability.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal

from django.test import SimpleTestCase, TestCase

from apps.audit.models import AuditEvent
from apps.audit.services import AuditService, serialize_metadata
from apps.common.logging import correlation_context
from apps.customers.models import Customer


class AuditServiceTestCase(TestCase):
    """Events written through the service."""

    def setUp(self):
        self.customer = Customer.objects.create(name="Acme")

    def test_log_simple_event_records_object(self):
        event = AuditService.log_simple_event(
            "usage_event_rated",
            content_object=self.customer,
            description="Usage event rated",
            new_values={"total_cost": Decimal("12.5000")},
            actor_type="system",
        )

        self.assertEqual(event.action, "usage_event_rated")
        self.assertEqual(event.object_id, str(self.customer.pk))
        self.assertEqual(event.new_values, {"total_cost": "12.5000"})
        self.assertEqual(event.category, "business_operation")
        self.assertEqual(event.severity, "low")

    def test_billing_exception_category_and_severity(self):
        event = AuditService.log_simple_event("usage_billing_exception", actor_type="system")

        self.assertEqual(event.category, "billing_exception")
        self.assertEqual(event.severity, "high")

    def test_configuration_category(self):
        event = AuditService.log_simple_event("pricing_rule_updated")

        self.assertEqual(event.category, "configuration")

    def test_system_admin_category(self):
        self.assertEqual(AuditService.log_simple_event("usage_period_reset").category, "system_admin")
        self.assertEqual(AuditService.log_simple_event("usage_schedule_period_resets").category, "system_admin")

    def test_status_changes_are_medium_severity(self):
        self.assertEqual(AuditService.log_simple_event("usage_bucket_suspended").severity, "medium")
        self.assertEqual(AuditService.log_simple_event("usage_pool_soft_deleted").severity, "medium")

    def test_explicit_category_overrides_mapping(self):
        event = AuditService.log_simple_event("usage_event_rated", metadata={"category": "configuration"})

        self.assertEqual(event.category, "configuration")

    def test_correlation_id_used_as_request_id(self):
        with correlation_context("evt-42"):
            event = AuditService.log_simple_event("usage_event_rated")

        self.assertEqual(event.request_id, "evt-42")

    def test_events_are_immutable(self):
        event = AuditService.log_simple_event("usage_event_rated")
        event.description = "rewritten"

        with self.assertRaises(ValueError):
            event.save()
        self.assertEqual(AuditEvent.objects.get(pk=event.pk).description, "")


class MetadataSerializationTestCase(SimpleTestCase):
    """JSON-safe metadata."""

    def test_decimal_uuid_and_datetime(self):
        key = uuid.UUID("12345678-1234-5678-1234-567812345678")
        moment = datetime(2025, 3, 12, 10, 0, tzinfo=UTC)

        serialized = serialize_metadata({"amount": Decimal("0.050000"), "id": key, "at": moment})

        self.assertEqual(
            serialized,
            {"amount": "0.050000", "id": "12345678-1234-5678-1234-567812345678", "at": "2025-03-12T10:00:00+00:00"},
        )

    def test_model_instances_rendered_by_pk(self):
        customer = Customer(pk=7, name="Acme")

        self.assertEqual(serialize_metadata({"customer": customer}), {"customer": "Customer(pk=7)"})

    def test_empty_metadata(self):
        self.assertEqual(serialize_metadata(None), {})

    def test_unserializable_metadata_raises(self):
        with self.assertRaises(TypeError):
            serialize_metadata({"callback": object()})
