"""
Management command for usage threshold evaluation.

Usage:
    python manage.py evaluate_usage_thresholds
    python manage.py evaluate_usage_thresholds --target BUCKET-1
"""

from __future__ import annotations

from typing import Any

from django.core.management.base import BaseCommand, CommandParser

from apps.billing.services import UsageBillingEngine


class Command(BaseCommand):
    """Re-evaluate usage alerts."""

    help = "Re-evaluate usage alerts for one pool/bucket or for every live alert"

    def add_arguments(self, parser: CommandParser) -> None:
        parser.add_argument("--target", type=str, help="Pool or bucket code/id to evaluate")

    def handle(self, *args: Any, **options: Any) -> None:
        triggered = UsageBillingEngine().evaluate_thresholds(options["target"])

        for alert in triggered:
            marker = "🔕" if alert["suppressed"] else "🔔"
            self.stdout.write(f"{marker} {alert['alert_code']}: {alert['severity']} ({alert['value']})")

        self.stdout.write(self.style.SUCCESS(f"✅ {len(triggered)} alert(s) triggered"))
