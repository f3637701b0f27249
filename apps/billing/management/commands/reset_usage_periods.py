"""
Management command for usage period resets.

Usage:
    python manage.py reset_usage_periods                 # every pool/bucket that is due
    python manage.py reset_usage_periods --target POOL-1 # one target by code or id
    python manage.py reset_usage_periods --target POOL-1 --force
"""

from __future__ import annotations

from typing import Any

from django.core.management.base import BaseCommand, CommandError, CommandParser

from apps.billing.services import UsageBillingEngine


class Command(BaseCommand):
    """Reset usage periods for pools and buckets."""

    help = "Bank rollover and zero usage counters for pools and buckets whose period has ended"

    def add_arguments(self, parser: CommandParser) -> None:
        parser.add_argument("--target", type=str, help="Pool or bucket code/id to reset")
        parser.add_argument(
            "--force",
            action="store_true",
            help="Reset even when the target's next reset date is still in the future",
        )

    def handle(self, *args: Any, **options: Any) -> None:
        engine = UsageBillingEngine()

        if not options["target"]:
            if options["force"]:
                raise CommandError("--force needs --target")
            summary = engine.reset_due_periods()
            self.stdout.write(
                self.style.SUCCESS(
                    f"✅ Reset {summary['reset']} target(s), {summary['skipped']} not due, {summary['failed']} failed"
                )
            )
            return

        result = engine.reset_period(options["target"], force=options["force"])
        if result.is_err():
            raise CommandError(result.error)

        summary = result.unwrap()
        if summary["reset"]:
            self.stdout.write(self.style.SUCCESS(f"✅ Reset {summary['target']}"))
        else:
            self.stdout.write(
                self.style.WARNING(f"⚠️ {summary['target']} not due until {summary['next_reset_date']} (use --force)")
            )
