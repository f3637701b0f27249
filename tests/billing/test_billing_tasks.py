# ===============================================================================
# USAGE BILLING TASKS AND COMMANDS TEST SUITE
# ===============================================================================
"""
Tests for the Django-Q task functions, schedule registration and the
management commands that drive resets and threshold sweeps.
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

from django.core import mail
from django.core.management import CommandError, call_command
from django.test import TestCase
from django.utils import timezone
from django_q.models import Schedule

from apps.audit.models import AuditEvent
from apps.billing import capacity
from apps.billing.bucket_models import UsageBucket
from apps.billing.usage_tasks import (
    deliver_usage_alert_notification,
    evaluate_allocation_snapshot,
    evaluate_allocation_snapshot_async,
    evaluate_usage_thresholds_task,
    expire_rollover_balances,
    expire_usage_targets,
    register_usage_schedules,
    reset_due_usage_periods,
)
from apps.customers.models import Customer


class UsageTaskTestCase(TestCase):
    """Task functions run by the Django-Q cluster."""

    def setUp(self):
        self.customer = Customer.objects.create(name="Acme", customer_type="company")
        self.now = timezone.now()

    def create_bucket(self, code: str, **overrides) -> UsageBucket:
        values = {
            "code": code,
            "name": code.title(),
            "customer": self.customer,
            "usage_type": "voice_minutes",
            "bucket_capacity": Decimal("100"),
        }
        values.update(overrides)
        return UsageBucket.objects.create(**values)

    def test_deliver_email_notification(self):
        result = deliver_usage_alert_notification(
            "email", ["ops@acme.test"], {"alert_code": "INCL-90", "alert_name": "Included 90%", "severity": "high"}
        )

        self.assertTrue(result["success"])
        self.assertEqual(result["alert_code"], "INCL-90")
        self.assertEqual(result["recipients"], 1)
        self.assertEqual(len(mail.outbox), 1)

    def test_deliver_unsupported_channel(self):
        result = deliver_usage_alert_notification("webhook", ["https://hooks.acme.test"], {"alert_code": "INCL-90"})

        self.assertFalse(result["success"])
        self.assertEqual(result["error"], "no transport")

    def test_reset_due_usage_periods(self):
        self.create_bucket("DUE", used_amount=Decimal("40"), next_reset_date=self.now - timedelta(hours=1))

        result = reset_due_usage_periods()

        self.assertTrue(result["success"])
        self.assertEqual(result["reset"], 1)
        self.assertEqual(UsageBucket.objects.get(code="DUE").used_amount, Decimal("0"))
        self.assertTrue(AuditEvent.objects.filter(action="usage_schedule_period_resets").exists())

    @patch("apps.billing.usage_engine.UsageBillingEngine.reset_due_periods", side_effect=RuntimeError("db gone"))
    def test_reset_due_usage_periods_failure(self, mock_reset):
        result = reset_due_usage_periods()

        self.assertFalse(result["success"])
        self.assertIn("db gone", result["error"])

    def test_expire_usage_targets(self):
        self.create_bucket("OLD", expires_at=self.now - timedelta(days=1))

        result = expire_usage_targets()

        self.assertEqual(result, {"success": True, "expired": 1})
        self.assertEqual(UsageBucket.objects.get(code="OLD").bucket_status, capacity.STATUS_EXPIRED)

    def test_expire_rollover_balances(self):
        self.create_bucket(
            "ROLL",
            allows_rollover=True,
            rollover_percentage=Decimal("50"),
            rollover_balance=Decimal("10"),
            rollover_expires_at=self.now - timedelta(minutes=5),
        )

        result = expire_rollover_balances()

        self.assertEqual(result, {"success": True, "cleared": 1})

    def test_evaluate_usage_thresholds_task_without_alerts(self):
        result = evaluate_usage_thresholds_task()

        self.assertEqual(result, {"success": True, "triggered": 0, "notified": 0})

    def test_evaluate_allocation_snapshot_skips_stale_revision(self):
        bucket = self.create_bucket("SNAP", used_amount=Decimal("95"))

        result = evaluate_allocation_snapshot([["bucket", str(bucket.pk), bucket.revision + 1]])

        self.assertEqual(result, {"success": True, "targets": 1, "triggered": 0})

    @patch("apps.billing.usage_tasks.queue_by_name", return_value="task-1")
    def test_evaluate_allocation_snapshot_async(self, mock_queue):
        task_id = evaluate_allocation_snapshot_async([["pool", "pool-id", 4]])

        self.assertEqual(task_id, "task-1")
        mock_queue.assert_called_once_with(
            "apps.billing.usage_tasks.evaluate_allocation_snapshot", [["pool", "pool-id", 4]], timeout=60
        )

    def test_register_usage_schedules_is_idempotent(self):
        first = register_usage_schedules()
        second = register_usage_schedules()

        self.assertEqual(first, second)
        self.assertEqual(Schedule.objects.count(), 4)
        sweep = Schedule.objects.get(name="Evaluate All Usage Thresholds")
        self.assertEqual(sweep.minutes, 15)


class UsageCommandTestCase(TestCase):
    """Management commands."""

    def setUp(self):
        self.customer = Customer.objects.create(name="Acme", customer_type="company")
        self.bucket = UsageBucket.objects.create(
            code="INCL",
            name="Included",
            customer=self.customer,
            usage_type="voice_minutes",
            bucket_capacity=Decimal("100"),
            used_amount=Decimal("30"),
            next_reset_date=timezone.now() + timedelta(days=10),
        )

    def test_reset_target_not_due(self):
        out = StringIO()

        call_command("reset_usage_periods", "--target", "INCL", stdout=out)

        self.assertIn("not due", out.getvalue())
        self.bucket.refresh_from_db()
        self.assertEqual(self.bucket.used_amount, Decimal("30"))

    def test_forced_reset_of_target(self):
        out = StringIO()

        call_command("reset_usage_periods", "--target", "INCL", "--force", stdout=out)

        self.assertIn("Reset INCL", out.getvalue())
        self.bucket.refresh_from_db()
        self.assertEqual(self.bucket.used_amount, Decimal("0"))

    def test_force_requires_target(self):
        with self.assertRaises(CommandError):
            call_command("reset_usage_periods", "--force", stdout=StringIO())

    def test_unknown_target(self):
        with self.assertRaises(CommandError):
            call_command("reset_usage_periods", "--target", "MISSING", stdout=StringIO())

    def test_reset_all_due(self):
        out = StringIO()

        call_command("reset_usage_periods", stdout=out)

        self.assertIn("Reset 0 target(s)", out.getvalue())

    def test_evaluate_usage_thresholds_command(self):
        out = StringIO()

        call_command("evaluate_usage_thresholds", "--target", "INCL", stdout=out)

        self.assertIn("0 alert(s) triggered", out.getvalue())

    def test_register_usage_schedules_command(self):
        out = StringIO()

        call_command("register_usage_schedules", stdout=out)

        self.assertIn("Usage schedules registered", out.getvalue())
        self.assertEqual(Schedule.objects.count(), 4)
