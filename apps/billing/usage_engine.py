"""
Usage billing entry points for Ledgerline Platform
Rates a metering event end to end: selects the governing rule, allocates the
usage into the client's pools and buckets, prices what was left uncovered and
re-evaluates thresholds on every touched target.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from django.core.exceptions import ValidationError
from django.db import IntegrityError, transaction
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from apps.audit.services import AuditService
from apps.common.logging import correlation_context
from apps.common.types import Err, Result
from apps.customers.models import Customer

from . import capacity, config
from .allocation_service import AllocationEngine, AllocationOutcome, AllocationRequest
from .bucket_models import UsageBucket
from .interfaces import ClientDirectory, Clock, NotificationDispatcher, SystemClock
from .pool_models import UsagePool
from .pricing_models import PricingRule
from .pricing_service import PricingRuleSelector
from .rate_calculator import (
    CostBreakdown,
    RatingContext,
    calculate_layered_cost,
    calculate_overage_cost,
    quantize_money,
)
from .threshold_service import ThresholdMonitor
from .usage_exceptions import CapacityExceeded, NoApplicableRule
from .usage_models import RatedUsage, UsageBillingException

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

REQUIRED_EVENT_FIELDS = ("idempotency_key", "client_id", "usage_type", "quantity", "timestamp")


# ===============================================================================
# EVENT / RESULT
# ===============================================================================


@dataclass(frozen=True)
class UsageEvent:
    """One metering event as it arrives from a collector"""

    idempotency_key: str
    client_id: Any
    usage_type: str
    quantity: Decimal
    timestamp: datetime
    service_type: str = ""
    origin_country: str = ""
    destination_country: str = ""
    is_roaming: bool = False
    scope_criteria: dict[str, Any] = field(default_factory=dict)
    properties: dict[str, Any] = field(default_factory=dict)
    layered: bool = False

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> UsageEvent:
        """Build an event from a collector payload; malformed payloads raise ValidationError"""
        missing = [name for name in REQUIRED_EVENT_FIELDS if payload.get(name) in (None, "")]
        if missing:
            raise ValidationError(f"Usage event missing fields: {', '.join(missing)}")

        try:
            quantity = Decimal(str(payload["quantity"]))
        except InvalidOperation as e:
            raise ValidationError(f"Invalid quantity: {payload['quantity']!r}") from e
        if quantity < 0:
            raise ValidationError("Usage quantity cannot be negative")

        timestamp = payload["timestamp"]
        if isinstance(timestamp, str):
            timestamp = parse_datetime(timestamp)
            if timestamp is None:
                raise ValidationError(f"Invalid timestamp: {payload['timestamp']!r}")
        if timezone.is_naive(timestamp):
            timestamp = timezone.make_aware(timestamp, timezone.get_default_timezone())

        return cls(
            idempotency_key=str(payload["idempotency_key"]),
            client_id=payload["client_id"],
            usage_type=str(payload["usage_type"]),
            quantity=quantity,
            timestamp=timestamp,
            service_type=str(payload.get("service_type") or ""),
            origin_country=str(payload.get("origin_country") or "").upper(),
            destination_country=str(payload.get("destination_country") or "").upper(),
            is_roaming=bool(payload.get("is_roaming", False)),
            scope_criteria=dict(payload.get("scope_criteria") or {}),
            properties=dict(payload.get("properties") or {}),
            layered=bool(payload.get("layered", False)),
        )

    def to_json(self) -> dict[str, Any]:
        return {
            "idempotency_key": self.idempotency_key,
            "client_id": str(self.client_id),
            "usage_type": self.usage_type,
            "quantity": str(self.quantity),
            "timestamp": self.timestamp.isoformat(),
            "service_type": self.service_type,
            "origin_country": self.origin_country,
            "destination_country": self.destination_country,
            "is_roaming": self.is_roaming,
            "scope_criteria": self.scope_criteria,
            "properties": self.properties,
            "layered": self.layered,
        }


@dataclass
class UsageRatingResult:
    """What ``rate_and_allocate`` hands back to the caller"""

    idempotency_key: str
    allocation_breakdown: dict[str, Any]
    cost_breakdown: dict[str, Any]
    alerts_triggered: list[dict[str, Any]] = field(default_factory=list)
    total_cost: Decimal = ZERO
    rated_usage_id: str | None = None
    exception_id: str | None = None
    replayed: bool = False

    @property
    def is_exception(self) -> bool:
        return self.exception_id is not None

    @classmethod
    def from_record(cls, record: RatedUsage, replayed: bool = False) -> UsageRatingResult:
        exception = record.exceptions.filter(status="open").first()
        return cls(
            idempotency_key=record.idempotency_key,
            allocation_breakdown=record.allocation_breakdown,
            cost_breakdown=record.cost_breakdown,
            alerts_triggered=list(record.alerts_triggered),
            total_cost=record.total_cost,
            rated_usage_id=str(record.pk),
            exception_id=str(exception.pk) if exception else None,
            replayed=replayed,
        )


# ===============================================================================
# ENGINE
# ===============================================================================


class UsageBillingEngine:
    """
    ⚙️ Single entry point for usage rating.

    Collaborators are injected so tests can pin the clock and capture
    notifications; production uses the system clock, the customer directory
    and queued delivery.
    """

    def __init__(
        self,
        clock: Clock | None = None,
        directory: ClientDirectory | None = None,
        dispatcher: NotificationDispatcher | None = None,
    ) -> None:
        self.clock = clock or SystemClock()
        self.selector = PricingRuleSelector(directory=directory, clock=self.clock)
        self.monitor = ThresholdMonitor(clock=self.clock, dispatcher=dispatcher)
        self.allocator = AllocationEngine(clock=self.clock, monitor=self.monitor)

    # ---------------------------------------------------------------------------
    # Rating
    # ---------------------------------------------------------------------------

    def rate_and_allocate(self, usage_event: UsageEvent, actor: Any | None = None) -> UsageRatingResult:
        """
        Rate one event. A repeated ``idempotency_key`` returns the stored
        result without allocating again.
        """
        with correlation_context(usage_event.idempotency_key):
            existing = RatedUsage.objects.filter(idempotency_key=usage_event.idempotency_key).first()
            if existing is not None:
                logger.info(f"⚙️ [Usage] Event {usage_event.idempotency_key} already rated, returning stored result")
                return UsageRatingResult.from_record(existing, replayed=True)

            try:
                customer = Customer.objects.filter(pk=usage_event.client_id).first()
            except (ValidationError, ValueError):
                customer = None
            if customer is None:
                return self._unknown_client(usage_event, actor)

            try:
                with transaction.atomic():
                    record, outcome = self._rate(usage_event, customer, actor)
            except IntegrityError:
                # A concurrent delivery of the same event won; its row is authoritative
                stored = RatedUsage.objects.get(idempotency_key=usage_event.idempotency_key)
                logger.info(f"⚙️ [Usage] Event {usage_event.idempotency_key} rated concurrently, returning stored result")
                return UsageRatingResult.from_record(stored, replayed=True)

            alerts = self._hand_off_thresholds(outcome)
            if alerts:
                record.alerts_triggered = alerts
                record.save(update_fields=["alerts_triggered"])

            logger.info(
                f"⚙️ [Usage] Rated {usage_event.quantity} {usage_event.usage_type} for {customer.get_display_name()}: "
                f"covered {outcome.covered}, uncovered {outcome.uncovered}, cost {record.total_cost}"
            )
            return UsageRatingResult.from_record(record)

    def _rate(self, event: UsageEvent, customer: Customer, actor: Any | None) -> tuple[RatedUsage, AllocationOutcome]:
        rule: PricingRule | None
        layers: list[PricingRule] = []
        try:
            if event.layered:
                layers = self.selector.select_layers(
                    customer.pk, event.service_type, event.timestamp, event.scope_criteria, event.usage_type
                )
                rule = layers[0]
            else:
                rule = self.selector.select_rule(
                    customer.pk, event.service_type, event.timestamp, event.scope_criteria, event.usage_type
                )
        except NoApplicableRule as e:
            logger.warning(f"⚠️ [Usage] {e}")
            rule = None

        outcome = self.allocator.allocate(
            AllocationRequest(
                client_id=customer.pk,
                usage_type=event.usage_type,
                quantity=event.quantity,
                timestamp=event.timestamp,
                service_type=event.service_type,
                origin_country=event.origin_country,
                destination_country=event.destination_country,
                is_roaming=event.is_roaming,
                reference=event.idempotency_key,
            )
        )

        exception_reason = ""
        if outcome.uncovered > 0 and rule is None:
            breakdown = CostBreakdown.empty(outcome.uncovered, "no applicable rule")
            exception_reason = "no_applicable_rule"
            cost_json = breakdown.to_json()
            total = ZERO
        else:
            breakdown, cost_json, total = self._price_uncovered(rule, outcome, event, layers)
            if outcome.uncovered > 0 and not breakdown.rule_applied:
                exception_reason = "rule_not_effective"

        if exception_reason:
            status = "exception"
        elif outcome.covered >= event.quantity:
            status = "allocated"
        else:
            status = "rated"

        record = RatedUsage.objects.create(
            idempotency_key=event.idempotency_key,
            customer=customer,
            usage_type=event.usage_type,
            service_type=event.service_type,
            quantity=event.quantity,
            event_timestamp=event.timestamp,
            origin_country=event.origin_country,
            destination_country=event.destination_country,
            is_roaming=event.is_roaming,
            properties=event.properties,
            rule=rule,
            rule_snapshot=rule.snapshot() if rule is not None else {},
            covered_quantity=outcome.covered,
            uncovered_quantity=outcome.uncovered,
            blocked_quantity=outcome.blocked,
            allocation_breakdown=outcome.to_json(),
            cost_breakdown=cost_json,
            total_cost=total,
            status=status,
            rated_by=actor if hasattr(actor, "pk") else None,
            created_at=self.clock.now(),
        )

        if exception_reason:
            self._open_exception(event, customer, record, exception_reason, outcome.uncovered, actor)
        elif rule is not None and breakdown.rule_applied and outcome.uncovered > 0:
            self.selector.record_application(rule, total, event.idempotency_key)
            self._record_adjusting_layers(layers, breakdown, event.idempotency_key)

        if outcome.uncovered > 0 and outcome.covered > 0:
            logger.info(f"⚙️ [Usage] {CapacityExceeded('allocation', event.quantity, outcome.uncovered)}")

        AuditService.log_simple_event(
            "usage_event_rated",
            user=actor if hasattr(actor, "pk") else None,
            content_object=record,
            description=f"Usage event {event.idempotency_key} rated: {status}",
            new_values={"total_cost": total, "covered": outcome.covered, "uncovered": outcome.uncovered},
            metadata={
                "rule": rule.code if rule is not None else None,
                "usage_type": event.usage_type,
                "layers": [layer.code for layer in layers],
            },
            actor_type="system" if actor is None else "user",
        )
        return record, outcome

    def _price_uncovered(
        self,
        rule: PricingRule | None,
        outcome: AllocationOutcome,
        event: UsageEvent,
        layers: list[PricingRule] | None = None,
    ) -> tuple[CostBreakdown, dict[str, Any], Decimal]:
        """Price the uncovered remainder; bucket overflow rates price their own overage"""
        if rule is None or outcome.uncovered <= 0:
            breakdown = CostBreakdown.empty(ZERO, "fully covered by allocation")
            return breakdown, breakdown.to_json(), ZERO

        context = RatingContext(
            timestamp=event.timestamp,
            destination_country=event.destination_country,
            origin_country=event.origin_country,
            is_roaming=event.is_roaming,
        )

        bucket_overage = ZERO
        bucket_quantity = ZERO
        if outcome.overage_rate is not None and outcome.overage_quantity > 0:
            bucket_quantity = outcome.overage_quantity
            bucket_overage = quantize_money(bucket_quantity * outcome.overage_rate)

        remainder = outcome.uncovered - bucket_quantity
        if remainder > 0 and layers and len(layers) > 1:
            breakdown = calculate_layered_cost(layers, rule.active_tiers(), remainder, context)
        elif remainder > 0:
            breakdown = calculate_overage_cost(rule, rule.active_tiers(), remainder, context)
        else:
            breakdown = CostBreakdown(
                quantity=ZERO,
                rule_applied=True,
                rule_id=str(rule.pk),
                rule_code=rule.code,
                rule_version=rule.version,
                pricing_model=rule.pricing_model,
            )

        cost_json = breakdown.to_json()
        total = breakdown.total
        if bucket_quantity > 0:
            cost_json["bucket_overage"] = {
                "quantity": str(bucket_quantity),
                "rate": str(outcome.overage_rate),
                "cost": str(bucket_overage),
            }
            total = quantize_money(total + bucket_overage)
            cost_json["total"] = str(total)
        return breakdown, cost_json, total

    def _record_adjusting_layers(self, layers: list[PricingRule], breakdown: CostBreakdown, key: str) -> None:
        """Count each adjusting layer once; the governing rule already carries the revenue"""
        adjusting = {entry["rule_id"] for entry in breakdown.layers if entry["role"] == "adjustment"}
        for rule in layers[1:]:
            if str(rule.pk) in adjusting:
                self.selector.record_application(rule, ZERO, f"{key}:{rule.layer}")

    # ---------------------------------------------------------------------------
    # Billing exceptions
    # ---------------------------------------------------------------------------

    def _open_exception(
        self,
        event: UsageEvent,
        customer: Customer | None,
        record: RatedUsage | None,
        reason: str,
        uncovered: Decimal,
        actor: Any | None,
    ) -> UsageBillingException:
        exception = UsageBillingException.objects.create(
            idempotency_key=event.idempotency_key,
            customer=customer,
            rated_usage=record,
            reason=reason,
            description=f"{event.quantity} {event.usage_type} could not be rated: {reason.replace('_', ' ')}",
            event_payload=event.to_json(),
            uncovered_quantity=uncovered,
            created_at=self.clock.now(),
        )
        AuditService.log_simple_event(
            "usage_billing_exception",
            user=actor if hasattr(actor, "pk") else None,
            content_object=exception,
            description=f"Usage event {event.idempotency_key} needs manual review: {reason}",
            metadata={"reason": reason, "uncovered": uncovered, "client_id": str(event.client_id)},
            actor_type="system" if actor is None else "user",
        )
        logger.error(f"🔥 [Usage] Billing exception for event {event.idempotency_key}: {reason}")
        return exception

    def _unknown_client(self, event: UsageEvent, actor: Any | None) -> UsageRatingResult:
        exception = UsageBillingException.objects.filter(
            idempotency_key=event.idempotency_key, reason="unknown_client", status="open"
        ).first()
        if exception is None:
            exception = self._open_exception(event, None, None, "unknown_client", event.quantity, actor)
        return UsageRatingResult(
            idempotency_key=event.idempotency_key,
            allocation_breakdown={},
            cost_breakdown=CostBreakdown.empty(event.quantity, "unknown client").to_json(),
            exception_id=str(exception.pk),
        )

    def _hand_off_thresholds(self, outcome: AllocationOutcome) -> list[dict[str, Any]]:
        """Evaluate touched targets inline, or queue one evaluation for the committed snapshot"""
        if not config.DEFER_THRESHOLD_EVALUATION:
            return self.allocator.evaluate_touched(outcome)
        if not outcome.touched:
            return []

        from .usage_tasks import evaluate_allocation_snapshot_async  # noqa: PLC0415

        snapshots = [list(snapshot) for snapshot in outcome.snapshots()]
        try:
            evaluate_allocation_snapshot_async(snapshots)
        except Exception as e:
            logger.warning(f"⚠️ [Usage] Could not queue threshold evaluation for {len(snapshots)} target(s): {e}")
        return []

    # ---------------------------------------------------------------------------
    # Maintenance
    # ---------------------------------------------------------------------------

    def reset_period(self, target_id: Any, actor: Any | None = None, force: bool = False) -> Result[dict[str, Any], str]:
        """Reset one pool or bucket (by id or code)"""
        resolved = self.allocator.resolve_target(target_id)
        if resolved is None:
            return Err(f"No live pool or bucket matches {target_id}")
        _, target = resolved
        return self.allocator.reset_period(target, actor=actor, force=force)

    def reset_due_periods(self, actor: Any | None = None) -> dict[str, int]:
        """Reset every live pool and bucket whose ``next_reset_date`` has passed"""
        now = self.clock.now()
        summary = {"reset": 0, "skipped": 0, "failed": 0}
        for model, status_field in ((UsagePool, "pool_status"), (UsageBucket, "bucket_status")):
            due = model.objects.filter(next_reset_date__lte=now, is_active=True).exclude(
                **{status_field: capacity.STATUS_EXPIRED}
            )
            for target in due:
                result = self.allocator.reset_period(target, actor=actor)
                if result.is_err():
                    summary["failed"] += 1
                elif result.unwrap()["reset"]:
                    summary["reset"] += 1
                else:
                    summary["skipped"] += 1
        return summary

    def evaluate_thresholds(self, target_id: Any | None = None) -> list[dict[str, Any]]:
        """Re-evaluate alerts for one target (by id or code), or every live alert"""
        if target_id is None:
            return self.monitor.evaluate_all()
        resolved = self.allocator.resolve_target(target_id)
        if resolved is None:
            logger.warning(f"⚠️ [Usage] No live pool or bucket matches {target_id}")
            return []
        target_type, target = resolved
        return self.monitor.evaluate_target(target_type, target.pk)
