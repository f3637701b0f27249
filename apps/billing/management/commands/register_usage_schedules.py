"""
Management command registering the usage engine's Django-Q schedules.

Usage:
    python manage.py register_usage_schedules
"""

from __future__ import annotations

from typing import Any

from django.core.management.base import BaseCommand

from apps.billing.usage_tasks import register_usage_schedules


class Command(BaseCommand):
    """Register usage engine schedules."""

    help = "Register scheduled resets, expiry sweeps and threshold sweeps with Django-Q"

    def handle(self, *args: Any, **options: Any) -> None:
        for name in register_usage_schedules():
            self.stdout.write(f"  • {name}")
        self.stdout.write(self.style.SUCCESS("✅ Usage schedules registered"))
