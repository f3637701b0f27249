"""
Usage Billing Background Tasks for Ledgerline Platform
Django-Q2 tasks for the usage engine.

This module provides scheduled and async tasks for:
- Alert notification delivery
- Period resets for pools and buckets that are due
- Expiry of pools, buckets and banked rollover
- Periodic threshold sweeps and deferred post-allocation evaluation
"""

from __future__ import annotations

import logging
from typing import Any

from apps.audit.services import AuditService
from apps.common.queue import queue_by_name

from . import config

logger = logging.getLogger(__name__)


# ===============================================================================
# NOTIFICATION TASKS
# ===============================================================================


def deliver_usage_alert_notification(channel: str, recipients: list[str], context: dict[str, Any]) -> dict[str, Any]:
    """
    Deliver one alert notification on one channel.

    Queued by the threshold monitor so allocation never waits on a transport.
    """
    from .interfaces import EmailNotificationDispatcher  # noqa: PLC0415

    try:
        result = EmailNotificationDispatcher().send(channel, recipients, context)
    except Exception as e:
        logger.exception(f"🔥 [Notification] Error delivering {channel} alert {context.get('alert_code')}: {e}")
        return {"success": False, "error": str(e)}

    return {
        "success": result.delivered,
        "channel": channel,
        "alert_code": context.get("alert_code"),
        "recipients": len(result.recipients),
        "error": result.error,
    }


# ===============================================================================
# PERIOD TASKS
# ===============================================================================


def reset_due_usage_periods() -> dict[str, Any]:
    """Reset every pool and bucket whose period has ended."""
    from .usage_engine import UsageBillingEngine  # noqa: PLC0415

    logger.info("🔁 [Reset] Resetting due usage periods")

    try:
        summary = UsageBillingEngine().reset_due_periods()
    except Exception as e:
        logger.exception(f"🔥 [Reset] Error resetting due usage periods: {e}")
        return {"success": False, "error": str(e)}

    AuditService.log_simple_event(
        "usage_schedule_period_resets",
        user=None,
        content_object=None,
        description=f"Scheduled reset: {summary['reset']} reset, {summary['skipped']} not due, {summary['failed']} failed",
        metadata=summary,
        actor_type="system",
    )
    return {"success": True, **summary}


def expire_usage_targets() -> dict[str, Any]:
    """Mark pools and buckets past their ``expires_at`` as expired."""
    from .allocation_service import AllocationEngine  # noqa: PLC0415

    try:
        expired = AllocationEngine().expire_due_targets()
    except Exception as e:
        logger.exception(f"🔥 [Allocation] Error expiring usage targets: {e}")
        return {"success": False, "error": str(e)}

    if expired:
        logger.info(f"📦 [Allocation] Expired {expired} pool(s)/bucket(s)")
    return {"success": True, "expired": expired}


def expire_rollover_balances() -> dict[str, Any]:
    """Drop banked rollover capacity whose expiry has passed."""
    from .allocation_service import AllocationEngine  # noqa: PLC0415

    try:
        cleared = AllocationEngine().expire_rollover()
    except Exception as e:
        logger.exception(f"🔥 [Reset] Error expiring rollover balances: {e}")
        return {"success": False, "error": str(e)}

    return {"success": True, "cleared": cleared}


# ===============================================================================
# THRESHOLD TASKS
# ===============================================================================


def evaluate_usage_thresholds_task(target_id: str | None = None) -> dict[str, Any]:
    """Re-evaluate alerts of one target, or every live alert when no target is given."""
    from .usage_engine import UsageBillingEngine  # noqa: PLC0415

    try:
        triggered = UsageBillingEngine().evaluate_thresholds(target_id)
    except Exception as e:
        logger.exception(f"🔥 [Threshold] Error evaluating usage thresholds: {e}")
        return {"success": False, "error": str(e)}

    return {
        "success": True,
        "triggered": len(triggered),
        "notified": sum(1 for alert in triggered if not alert["suppressed"]),
    }


def evaluate_allocation_snapshot(touched: list[list[Any]]) -> dict[str, Any]:
    """Evaluate the targets one allocation committed, as [target_type, target_id, revision] entries."""
    from .threshold_service import ThresholdMonitor  # noqa: PLC0415

    try:
        triggered = ThresholdMonitor().evaluate_allocation(
            (target_type, target_id, revision) for target_type, target_id, revision in touched
        )
    except Exception as e:
        logger.exception(f"🔥 [Threshold] Error evaluating allocation snapshot: {e}")
        return {"success": False, "error": str(e)}

    return {"success": True, "targets": len(touched), "triggered": len(triggered)}


# ===============================================================================
# ASYNC WRAPPER FUNCTIONS
# ===============================================================================


def evaluate_allocation_snapshot_async(touched: list[list[Any]]) -> str:
    """Queue a post-allocation threshold evaluation."""
    return queue_by_name(
        "apps.billing.usage_tasks.evaluate_allocation_snapshot",
        touched,
        timeout=config.NOTIFICATION_TASK_TIMEOUT,
    )


# ===============================================================================
# SCHEDULED TASK REGISTRATION
# ===============================================================================


def register_usage_schedules() -> list[str]:
    """
    Register the usage engine's scheduled tasks with Django-Q.

    Call this from the ``register_usage_schedules`` management command.
    """
    from django_q.models import Schedule  # noqa: PLC0415

    schedules = [
        {
            "name": "Reset Due Usage Periods",
            "func": "apps.billing.usage_tasks.reset_due_usage_periods",
            "schedule_type": Schedule.HOURLY,
        },
        {
            "name": "Expire Usage Pools And Buckets",
            "func": "apps.billing.usage_tasks.expire_usage_targets",
            "schedule_type": Schedule.HOURLY,
        },
        {
            "name": "Expire Usage Rollover Balances",
            "func": "apps.billing.usage_tasks.expire_rollover_balances",
            "schedule_type": Schedule.DAILY,
        },
        {
            "name": "Evaluate All Usage Thresholds",
            "func": "apps.billing.usage_tasks.evaluate_usage_thresholds_task",
            "schedule_type": Schedule.MINUTES,
            "minutes": 15,
        },
    ]

    registered = []
    for schedule in schedules:
        Schedule.objects.update_or_create(
            name=schedule["name"],
            defaults={
                "func": schedule["func"],
                "schedule_type": schedule["schedule_type"],
                "minutes": schedule.get("minutes"),
            },
        )
        registered.append(schedule["name"])
        logger.info(f"✅ [Schedule] Registered scheduled task: {schedule['name']}")
    return registered
