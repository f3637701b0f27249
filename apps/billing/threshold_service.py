"""
Threshold monitoring for Ledgerline Platform
Re-evaluates usage alerts after allocations, applies suppression and
escalation policy, hands notifications to the dispatcher and runs
automated remediation on critical triggers.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any
from zoneinfo import ZoneInfo

from django.db import transaction
from django.db.models import Q, Sum

from apps.audit.services import AuditService
from apps.common.types import Err, Ok, Result

from . import capacity, config
from .alert_models import UsageAlert
from .bucket_models import UsageBucket
from .interfaces import Clock, NotificationDispatcher, QueuedNotificationDispatcher, SystemClock
from .pool_models import UsagePool
from .usage_config import local_moment
from .usage_exceptions import ThresholdEvaluationSkipped

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")

SEVERITY_STATUS = {
    "critical": "critical",
    "high": "warning",
    "medium": "triggered",
    "low": "triggered",
}


# ===============================================================================
# MEASUREMENT
# ===============================================================================


@dataclass(frozen=True)
class Measurement:
    """Committed usage of a monitored target"""

    used: Decimal
    capacity: Decimal
    revision: int | None = None
    label: str = ""

    @property
    def utilization(self) -> Decimal:
        return capacity.utilization_percentage(self.capacity, self.used)


def measure(target: UsagePool | UsageBucket) -> Measurement:
    if isinstance(target, UsagePool):
        return Measurement(target.used_capacity, target.effective_capacity, target.revision, f"pool {target.code}")
    return Measurement(target.used_amount, target.effective_capacity, target.revision, f"bucket {target.code}")


def measure_client(customer_id: Any) -> Measurement:
    """Aggregate usage over the client's live pools and standalone buckets"""
    pools = UsagePool.objects.filter(customer_id=customer_id, is_active=True).aggregate(
        used=Sum("used_capacity"), total=Sum("total_capacity"), rollover=Sum("rollover_capacity")
    )
    buckets = UsageBucket.objects.filter(customer_id=customer_id, pool__isnull=True, is_active=True).aggregate(
        used=Sum("used_amount"), total=Sum("bucket_capacity"), rollover=Sum("rollover_balance")
    )
    used = (pools["used"] or ZERO) + (buckets["used"] or ZERO)
    total = sum((totals[key] or ZERO for totals in (pools, buckets) for key in ("total", "rollover")), ZERO)
    return Measurement(used, total, None, f"client {customer_id}")


def compare(value: Decimal, threshold: Decimal, operator: str) -> bool:
    """Apply a comparison operator; equality uses ``config.EQUALITY_TOLERANCE``"""
    if operator == ">":
        return value > threshold
    if operator == "<=":
        return value <= threshold
    if operator == "<":
        return value < threshold
    if operator == "=":
        return abs(value - threshold) < config.EQUALITY_TOLERANCE
    if operator == "!=":
        return abs(value - threshold) >= config.EQUALITY_TOLERANCE
    return value >= threshold


def notifications_since(alert: UsageAlert, since: datetime) -> list[str]:
    """Logged notification times after ``since``; the log holds one day at most"""
    return [stamp for stamp in alert.notification_log or [] if datetime.fromisoformat(stamp) > since]


def projected_usage(alert: UsageAlert, measurement: Measurement, now: datetime) -> Decimal:
    """Linear projection of usage ``prediction_horizon_hours`` ahead from the last two evaluations"""
    if alert.last_check_at is None or now <= alert.last_check_at:
        return measurement.used
    elapsed_hours = Decimal(str((now - alert.last_check_at).total_seconds())) / Decimal("3600")
    rate = (measurement.used - alert.current_usage) / elapsed_hours
    return max(ZERO, measurement.used + rate * alert.prediction_horizon_hours)


def metric_value(alert: UsageAlert, measurement: Measurement, now: datetime) -> Decimal:
    """The number the alert compares against ``threshold_value``"""
    if alert.threshold_type == "absolute":
        return measurement.used
    if alert.threshold_type == "rate_of_change":
        previous = alert.current_usage
        if previous <= 0:
            return ZERO
        return (measurement.used - previous) / previous * HUNDRED
    if alert.threshold_type == "predictive":
        return capacity.utilization_percentage(measurement.capacity, projected_usage(alert, measurement, now))
    return measurement.utilization


def severity_for(alert: UsageAlert, utilization: Decimal) -> str:
    if utilization >= alert.critical_threshold:
        return "critical"
    if utilization >= alert.warning_threshold:
        return "high"
    return "medium"


# ===============================================================================
# MONITOR
# ===============================================================================


class ThresholdMonitor:
    """
    🔔 Stateful watcher over pools, buckets and client totals.

    Suppression is a rate limiter: a suppressed trigger is still counted in
    ``trigger_count`` and the history ring but sends nothing.
    """

    def __init__(
        self,
        clock: Clock | None = None,
        dispatcher: NotificationDispatcher | None = None,
    ) -> None:
        self.clock = clock or SystemClock()
        self.dispatcher = dispatcher or QueuedNotificationDispatcher()

    # ---------------------------------------------------------------------------
    # Entry points
    # ---------------------------------------------------------------------------

    def evaluate_target(self, target_type: str, target_id: Any, revision: int | None = None) -> list[dict[str, Any]]:
        """
        Evaluate every live alert on a pool or bucket, plus the owning client's
        client-scoped alerts. ``revision`` is the committed snapshot the caller
        saw; a target that already moved past it is skipped.
        """
        customer_id, triggered = self._evaluate_target_alerts(target_type, target_id, revision)
        if customer_id is not None:
            triggered.extend(self.evaluate_client(customer_id))
        return triggered

    def evaluate_allocation(self, touched: Iterable[tuple[str, str, int | None]]) -> list[dict[str, Any]]:
        """
        Evaluate the targets one allocation touched, given as
        (target_type, target_id, revision). Client-scoped alerts count one
        evaluation per allocation however many of the client's targets moved.
        """
        triggered: list[dict[str, Any]] = []
        customers: list[Any] = []
        for target_type, target_id, revision in touched:
            customer_id, results = self._evaluate_target_alerts(target_type, target_id, revision)
            triggered.extend(results)
            if customer_id is not None and customer_id not in customers:
                customers.append(customer_id)
        for customer_id in customers:
            triggered.extend(self.evaluate_client(customer_id))
        return triggered

    def evaluate_client(self, customer_id: Any) -> list[dict[str, Any]]:
        """Evaluate a client's client-scoped alerts against its aggregate usage"""
        client_alerts = UsageAlert.objects.filter(
            is_active=True, archived_at__isnull=True, scope="client", customer_id=customer_id
        )
        if not client_alerts.exists():
            return []
        measurement = measure_client(customer_id)
        return [result for alert in client_alerts if (result := self.evaluate_alert(alert, measurement))]

    def _evaluate_target_alerts(
        self, target_type: str, target_id: Any, revision: int | None
    ) -> tuple[Any | None, list[dict[str, Any]]]:
        """Alerts scoped to the target itself; returns its customer id unless it was skipped"""
        model = UsagePool if target_type == "pool" else UsageBucket
        target = model.objects.filter(pk=target_id).first()
        if target is None:
            return None, []

        if revision is not None and target.revision != revision:
            skipped = ThresholdEvaluationSkipped(
                f"{target_type} {target.code}", f"snapshot revision {revision} superseded by {target.revision}"
            )
            logger.info(f"🔔 [Threshold] Skipping evaluation: {skipped}")
            return None, []

        measurement = measure(target)
        alerts = UsageAlert.objects.filter(
            is_active=True, archived_at__isnull=True, scope=target_type, **{target_type: target}
        )
        return target.customer_id, [result for alert in alerts if (result := self.evaluate_alert(alert, measurement))]

    def evaluate_all(self) -> list[dict[str, Any]]:
        """Evaluate every live alert against current usage (scheduled sweep)"""
        triggered: list[dict[str, Any]] = []
        for alert in UsageAlert.objects.filter(is_active=True, archived_at__isnull=True).select_related(
            "pool", "bucket"
        ):
            result = self.evaluate_alert(alert, self._measure_alert_target(alert))
            if result:
                triggered.append(result)
        return triggered

    def _measure_alert_target(self, alert: UsageAlert) -> Measurement:
        if alert.scope == "pool" and alert.pool is not None:
            return measure(alert.pool)
        if alert.scope == "bucket" and alert.bucket is not None:
            return measure(alert.bucket)
        return measure_client(alert.customer_id)

    # ---------------------------------------------------------------------------
    # Evaluation
    # ---------------------------------------------------------------------------

    def evaluate_alert(self, alert: UsageAlert, measurement: Measurement) -> dict[str, Any] | None:
        """Evaluate one alert; returns the trigger record when it fired"""
        now = self.clock.now()
        with transaction.atomic():
            locked = UsageAlert.objects.select_for_update().get(pk=alert.pk)
            if not locked.is_active or locked.is_archived:
                logger.debug(f"🔔 [Threshold] {ThresholdEvaluationSkipped(locked.code, 'alert inactive')}")
                return None
            if (
                measurement.revision is not None
                and locked.last_evaluated_revision is not None
                and measurement.revision < locked.last_evaluated_revision
            ):
                logger.info(
                    f"🔔 [Threshold] "
                    f"{ThresholdEvaluationSkipped(locked.code, f'revision {measurement.revision} already evaluated')}"
                )
                return None

            value = metric_value(locked, measurement, now)
            previous_check = locked.last_check_at
            locked.previous_usage = locked.current_usage
            locked.current_usage = measurement.used
            locked.current_threshold_percentage = measurement.utilization
            locked.last_check_at = now
            if measurement.revision is not None:
                locked.last_evaluated_revision = measurement.revision

            if not compare(value, locked.threshold_value, locked.comparison_operator):
                locked.breach_streak = 0
                locked.breach_streak_started_at = None
                locked.alert_status = "normal"
                locked.save()
                return None

            self._advance_streak(locked, previous_check, now)
            if locked.require_consecutive_periods and locked.breach_streak < locked.consecutive_period_count:
                logger.info(
                    f"🔔 [Threshold] {locked.code} breaching "
                    f"{locked.breach_streak}/{locked.consecutive_period_count} consecutive evaluation(s)"
                )
                locked.save()
                return None

            result = self._trigger(locked, measurement, value, now)
            locked.save()

        if not result["suppressed"]:
            result["deliveries"] = self._dispatch(locked, result)
            if result["severity"] == "critical" and locked.enable_automated_actions:
                result["actions"] = self._run_automated_actions(locked)
        return result

    @staticmethod
    def _advance_streak(alert: UsageAlert, previous_check: datetime | None, now: datetime) -> None:
        lookback = timedelta(hours=config.CONSECUTIVE_LOOKBACK_HOURS)
        if alert.breach_streak == 0 or previous_check is None or now - previous_check > lookback:
            alert.breach_streak = 1
            alert.breach_streak_started_at = now
        else:
            alert.breach_streak += 1

    def _trigger(self, alert: UsageAlert, measurement: Measurement, value: Decimal, now: datetime) -> dict[str, Any]:
        severity = severity_for(alert, measurement.utilization)
        suppression_reason = self.suppression_reason(alert, now)
        suppressed = suppression_reason is not None

        alert.alert_status = SEVERITY_STATUS[severity]
        alert.severity_level = severity
        alert.last_triggered_at = now
        alert.trigger_count += 1

        if suppressed:
            alert.suppressed_alert_count += 1
        else:
            alert.notification_count += 1
            alert.notification_log = [*notifications_since(alert, now - timedelta(days=1)), now.isoformat()]
            if severity == "critical":
                alert.critical_alert_count += 1
            elif severity == "high":
                alert.warning_alert_count += 1
            if alert.enable_suppression:
                alert.suppression_until = now + timedelta(minutes=alert.suppression_window_minutes)

        escalated = False
        if alert.enable_escalation and severity == "critical":
            escalated = self._escalate(alert, now)

        entry = {
            "timestamp": now.isoformat(),
            "usage": str(measurement.used),
            "value": str(value),
            "utilization": str(measurement.utilization),
            "severity": severity,
            "notified": not suppressed,
            "suppression_reason": suppression_reason or "",
            "escalation_level": alert.escalation_level,
        }
        alert.recent_alerts = [*(alert.recent_alerts or []), entry][-config.ALERT_HISTORY_SIZE :]

        if suppressed:
            logger.info(f"🔕 [Threshold] {alert.code} triggered ({severity}) but suppressed: {suppression_reason}")
        else:
            logger.warning(f"🔔 [Threshold] {alert.code} triggered ({severity}) on {measurement.label}: {value}")

        return {
            "alert_id": str(alert.pk),
            "alert_code": alert.code,
            "severity": severity,
            "alert_status": alert.alert_status,
            "value": str(value),
            "utilization": str(measurement.utilization),
            "suppressed": suppressed,
            "suppression_reason": suppression_reason,
            "escalated": escalated,
            "escalation_level": alert.escalation_level,
            "deliveries": [],
            "actions": [],
        }

    @staticmethod
    def _escalate(alert: UsageAlert, now: datetime) -> bool:
        if alert.last_escalated_at is not None:
            if now < alert.last_escalated_at + timedelta(minutes=alert.escalation_delay_minutes):
                return False
        alert.last_escalated_at = now
        alert.escalation_level += 1
        logger.warning(f"🔥 [Threshold] {alert.code} escalated to level {alert.escalation_level}")
        return True

    # ---------------------------------------------------------------------------
    # Suppression
    # ---------------------------------------------------------------------------

    @staticmethod
    def suppression_reason(alert: UsageAlert, now: datetime) -> str | None:
        """Why a trigger at ``now`` must not notify, or None"""
        if alert.enable_suppression:
            if alert.suppression_until is not None and now < alert.suppression_until:
                return "suppression window"
            if alert.max_alerts_per_hour is not None:
                if len(notifications_since(alert, now - timedelta(hours=1))) >= alert.max_alerts_per_hour:
                    return "hourly cap reached"
            if alert.max_alerts_per_day is not None:
                if len(notifications_since(alert, now - timedelta(days=1))) >= alert.max_alerts_per_day:
                    return "daily cap reached"

        tz = ZoneInfo(alert.time_zone or "UTC")
        if alert.respect_business_hours and not alert.schedule.allows(now, tz):
            return "outside business hours"
        if not alert.weekend_notifications and local_moment(now, tz).weekday() >= 5:
            return "weekend"
        return None

    # ---------------------------------------------------------------------------
    # Delivery and remediation
    # ---------------------------------------------------------------------------

    def _dispatch(self, alert: UsageAlert, result: dict[str, Any]) -> list[dict[str, Any]]:
        recipients = list(alert.notification_recipients or [])
        if not recipients and alert.customer.primary_email:
            recipients = [alert.customer.primary_email]

        context = {
            "alert_id": str(alert.pk),
            "alert_code": alert.code,
            "alert_name": alert.name,
            "target": str(alert.target),
            "customer": alert.customer.get_display_name(),
            "current_usage": str(alert.current_usage),
            "utilization": str(alert.current_threshold_percentage),
            "threshold_value": str(alert.threshold_value),
            "severity": result["severity"],
            "alert_status": result["alert_status"],
            "escalation_level": alert.escalation_level,
            "triggered_at": alert.last_triggered_at.isoformat() if alert.last_triggered_at else "",
        }

        deliveries = []
        for channel in alert.channels:
            delivery = self.dispatcher.send(channel, recipients, context)
            deliveries.append(
                {"channel": channel, "delivered": delivery.delivered, "queued": delivery.queued, "error": delivery.error}
            )
        return deliveries

    def _run_automated_actions(self, alert: UsageAlert) -> list[str]:
        """Remediation for a critical, non-suppressed trigger"""
        from .allocation_service import AllocationEngine  # noqa: PLC0415

        engine = AllocationEngine(clock=self.clock)
        targets = self._remediation_targets(alert)
        actions: list[str] = []

        if alert.auto_suspend_services:
            for target in targets:
                if engine.suspend(target, None, f"Auto-suspended by alert {alert.code}").is_ok():
                    actions.append(f"suspended {target.code}")

        if alert.auto_limit_usage:
            for target in targets:
                if isinstance(target, UsagePool):
                    UsagePool.objects.filter(pk=target.pk).update(allow_overallocation=False)
                else:
                    UsageBucket.objects.filter(pk=target.pk).update(allows_overflow=False, overflow_behavior="block")
                actions.append(f"limited {target.code}")

        if alert.auto_purchase_additional_usage and alert.auto_purchase_amount > 0:
            for target in targets:
                current = target.total_capacity if isinstance(target, UsagePool) else target.bucket_capacity
                if engine.adjust_capacity(target, current + alert.auto_purchase_amount, None).is_ok():
                    actions.append(f"purchased {alert.auto_purchase_amount} for {target.code}")

        if actions:
            AuditService.log_simple_event(
                "usage_alert_automated_action",
                user=None,
                content_object=alert,
                description=f"Automated actions for alert {alert.code}: {', '.join(actions)}",
                metadata={"actions": actions, "severity": alert.severity_level},
                actor_type="system",
            )
            logger.warning(f"⚡ [Threshold] {alert.code} automated actions: {actions}")
        return actions

    @staticmethod
    def _remediation_targets(alert: UsageAlert) -> list[UsagePool | UsageBucket]:
        if alert.scope == "pool" and alert.pool is not None:
            return [alert.pool]
        if alert.scope == "bucket" and alert.bucket is not None:
            return [alert.bucket]
        return [
            *UsagePool.objects.filter(customer_id=alert.customer_id, is_active=True),
            *UsageBucket.objects.filter(customer_id=alert.customer_id, pool__isnull=True, is_active=True),
        ]

    # ---------------------------------------------------------------------------
    # Operator actions
    # ---------------------------------------------------------------------------

    def acknowledge(self, alert: UsageAlert, actor: Any | None = None, notes: str = "") -> Result[UsageAlert, str]:
        """Record an acknowledgment and return the alert to ``normal``"""
        now = self.clock.now()
        with transaction.atomic():
            locked = UsageAlert.objects.select_for_update().filter(pk=alert.pk).first()
            if locked is None:
                return Err(f"Alert {alert.pk} not found")
            if locked.is_archived:
                return Err(f"Alert {locked.code} is archived")

            previous_status = locked.alert_status
            locked.acknowledgment_log = [
                *(locked.acknowledgment_log or []),
                {
                    "acknowledged_at": now.isoformat(),
                    "acknowledged_by": str(getattr(actor, "pk", actor)) if actor is not None else None,
                    "notes": notes,
                    "status_before": previous_status,
                },
            ]
            locked.alert_status = "normal"
            locked.acknowledged_by = actor if hasattr(actor, "pk") else None
            locked.save(update_fields=["acknowledgment_log", "alert_status", "acknowledged_by", "updated_at"])

            AuditService.log_simple_event(
                "usage_alert_acknowledged",
                user=actor if hasattr(actor, "pk") else None,
                content_object=locked,
                description=f"Alert {locked.code} acknowledged",
                old_values={"alert_status": previous_status},
                new_values={"alert_status": "normal"},
                metadata={"notes": notes},
                actor_type="system" if actor is None else "user",
            )
        return Ok(locked)


def archive_alerts_for(target: UsagePool | UsageBucket, actor: Any | None = None) -> int:
    """Archive live alerts bound to a soft-deleted pool or bucket"""
    field_name = "pool" if isinstance(target, UsagePool) else "bucket"
    alerts = UsageAlert.objects.filter(Q(**{field_name: target}), archived_at__isnull=True)
    now = SystemClock().now()
    archived = alerts.update(is_active=False, archived_at=now)
    if archived:
        AuditService.log_simple_event(
            "usage_alerts_archived",
            user=actor if hasattr(actor, "pk") else None,
            content_object=target,
            description=f"Archived {archived} alert(s) of {field_name} {target.code}",
            metadata={"archived": archived},
            actor_type="system" if actor is None else "user",
        )
        logger.info(f"🔕 [Threshold] Archived {archived} alert(s) of {field_name} {target.code}")
    return archived
