"""
Allocation engine for Ledgerline Platform
Decides how much of a usage event the client's buckets and pools absorb and
how much is left uncovered for pricing.

Every write to a pool or bucket happens under ``select_for_update`` and is
committed with a compare-and-update on the ``revision`` column, so two
events racing on the same target never lose an update. Independent targets
never share a lock.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_DOWN, Decimal
from typing import TYPE_CHECKING, Any, TypeVar

from django.db import transaction
from django.db.models import Q, Sum

from apps.audit.services import AuditService
from apps.common.types import Err, Ok, Result

from . import capacity, config
from .bucket_models import UsageBucket
from .interfaces import Clock, SystemClock
from .pool_models import UsagePool, UsagePoolMember
from .usage_exceptions import ConcurrentAllocationError, OverflowCycle, RestrictionViolation

if TYPE_CHECKING:
    from .threshold_service import ThresholdMonitor

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
SHARE_QUANTUM = Decimal("0.000001")

T = TypeVar("T")

POOL_STATE_FIELDS = (
    "total_capacity",
    "allocated_capacity",
    "used_capacity",
    "current_period_usage",
    "previous_period_usage",
    "lifetime_usage",
    "last_usage_update",
    "usage_history",
    "rollover_capacity",
    "rollover_expires_at",
    "cycle_start_date",
    "cycle_end_date",
    "next_reset_date",
    "pool_status",
    "status_reason",
    "suspended_at",
    "is_active",
)

BUCKET_STATE_FIELDS = (
    "bucket_capacity",
    "used_amount",
    "current_period_usage",
    "daily_usage",
    "weekly_usage",
    "monthly_usage",
    "lifetime_usage",
    "first_usage_at",
    "last_usage_at",
    "rollover_balance",
    "rollover_expires_at",
    "last_reset_date",
    "next_reset_date",
    "bucket_status",
    "status_reason",
    "depleted_at",
    "suspended_at",
    "is_active",
)

STATE_FIELDS: dict[type, tuple[str, ...]] = {UsagePool: POOL_STATE_FIELDS, UsageBucket: BUCKET_STATE_FIELDS}


# ===============================================================================
# REQUEST / OUTCOME
# ===============================================================================


@dataclass(frozen=True)
class AllocationRequest:
    """Usage to place against a client's pools and buckets"""

    client_id: Any
    usage_type: str
    quantity: Decimal
    timestamp: datetime
    service_type: str = ""
    origin_country: str = ""
    destination_country: str = ""
    is_roaming: bool = False
    reference: str = ""


@dataclass
class TargetAllocation:
    """Usage absorbed by one pool or bucket"""

    target_type: str
    target_id: str
    code: str
    amount: Decimal
    revision: int
    via_overflow: bool = False
    members: list[dict[str, str]] = field(default_factory=list)
    attributed_to: str | None = None

    def to_json(self) -> dict[str, Any]:
        return {
            "target_type": self.target_type,
            "target_id": self.target_id,
            "code": self.code,
            "amount": str(self.amount),
            "revision": self.revision,
            "via_overflow": self.via_overflow,
            "members": self.members,
            "attributed_to": self.attributed_to,
        }


@dataclass(frozen=True)
class TouchedTarget:
    """Committed snapshot handed to the threshold monitor"""

    target_type: str
    target_id: str
    revision: int


@dataclass
class AllocationOutcome:
    """Where the usage went: absorbed, left for pricing, or refused"""

    requested: Decimal
    covered: Decimal = ZERO
    uncovered: Decimal = ZERO
    blocked: Decimal = ZERO
    overage_quantity: Decimal = ZERO
    overage_rate: Decimal | None = None
    allocations: list[TargetAllocation] = field(default_factory=list)
    restrictions: list[dict[str, str]] = field(default_factory=list)
    touched: dict[tuple[str, str], TouchedTarget] = field(default_factory=dict)

    @property
    def considered_any_target(self) -> bool:
        return bool(self.allocations or self.restrictions or self.touched or self.blocked)

    def touch(self, target_type: str, target_id: str, revision: int) -> None:
        self.touched[(target_type, target_id)] = TouchedTarget(target_type, target_id, revision)

    def snapshots(self) -> list[tuple[str, str, int]]:
        """Touched targets as (target_type, target_id, revision), in touch order"""
        return [(t.target_type, t.target_id, t.revision) for t in self.touched.values()]

    def to_json(self) -> dict[str, Any]:
        return {
            "requested": str(self.requested),
            "covered": str(self.covered),
            "uncovered": str(self.uncovered),
            "blocked": str(self.blocked),
            "overage_quantity": str(self.overage_quantity),
            "overage_rate": None if self.overage_rate is None else str(self.overage_rate),
            "allocations": [allocation.to_json() for allocation in self.allocations],
            "restrictions": self.restrictions,
        }


# ===============================================================================
# MEMBER ATTRIBUTION
# ===============================================================================


def member_headroom(
    member: UsagePoolMember, members: list[UsagePoolMember], method: str, pool_limit: Decimal
) -> Decimal | None:
    """How much more a member may draw; None when only the pool total bounds it"""
    if method == "equal_share" and members:
        share = pool_limit / len(members)
    elif method == "weighted" and members:
        total_weight = sum((m.weight for m in members), ZERO)
        share = pool_limit * member.weight / total_weight if total_weight > 0 else pool_limit / len(members)
    elif member.allocated_capacity > 0:
        share = member.allocated_capacity
    else:
        return None
    return capacity.remaining(share, member.used_capacity)


def _proportional_split(members: list[UsagePoolMember], amount: Decimal, weights: list[Decimal]) -> list[Decimal]:
    total_weight = sum(weights, ZERO)
    if total_weight <= 0:
        weights = [Decimal("1")] * len(members)
        total_weight = Decimal(len(members))
    shares = [(amount * weight / total_weight).quantize(SHARE_QUANTUM, rounding=ROUND_DOWN) for weight in weights]
    # Rounding dust goes to the last member so the split sums exactly
    shares[-1] += amount - sum(shares, ZERO)
    return shares


def split_among_members(
    members: list[UsagePoolMember], amount: Decimal, method: str, client_id: Any, pool_limit: Decimal
) -> tuple[list[tuple[UsagePoolMember, Decimal]], Decimal]:
    """
    Attribute ``amount`` to pool members. Returns the per-member split and
    the total the members could take.

    Usage from a member client is drawn from that member alone, bounded by
    its headroom. Usage from anyone else (the pool owner) is spread across
    members per the allocation method: priority_based fills members by
    descending priority, first_come_first_served fills them in stored
    order, weighted splits by weight and equal_share splits evenly.
    """
    if not members or amount <= 0:
        return [], amount

    own = next((m for m in members if str(m.customer_id) == str(client_id)), None)
    if own is not None:
        headroom = member_headroom(own, members, method, pool_limit)
        taken = amount if headroom is None else min(amount, headroom)
        return ([(own, taken)] if taken > 0 else []), taken

    if method in ("weighted", "equal_share"):
        weights = [m.weight for m in members] if method == "weighted" else [Decimal("1")] * len(members)
        shares = _proportional_split(members, amount, weights)
        return [(m, share) for m, share in zip(members, shares) if share > 0], amount

    if method == "priority_based":
        ordered = sorted(members, key=lambda m: (-m.priority, m.position))
    else:
        ordered = sorted(members, key=lambda m: m.position)

    split: list[tuple[UsagePoolMember, Decimal]] = []
    left = amount
    for member in ordered:
        if left <= 0:
            break
        headroom = member_headroom(member, members, method, pool_limit)
        taken = left if headroom is None else min(left, headroom)
        if taken > 0:
            split.append((member, taken))
            left -= taken
    return split, amount - left


# ===============================================================================
# ENGINE
# ===============================================================================


def _actor_type(actor: Any | None) -> str:
    return "system" if actor is None else "user"


def _audit_user(actor: Any | None) -> Any | None:
    return actor if hasattr(actor, "pk") else None


class AllocationEngine:
    """
    📦 Places usage into the pool/bucket hierarchy.

    Draw order for a client: standalone buckets by ``usage_priority`` (each
    with its overflow chain), then pools the client owns, then pools it is
    a member of. Whatever no target absorbs is uncovered and priced by the
    caller.
    """

    def __init__(self, clock: Clock | None = None, monitor: ThresholdMonitor | None = None) -> None:
        self.clock = clock or SystemClock()
        self.monitor = monitor

    # ---------------------------------------------------------------------------
    # Locked compare-and-update
    # ---------------------------------------------------------------------------

    def _locked_update(self, model: type, pk: Any, mutate: Callable[[Any], tuple[T, bool]]) -> tuple[Any, T]:
        """
        Lock the row, apply ``mutate`` and write the state fields back only if
        ``revision`` is unchanged. ``mutate`` returns (result, changed).
        """
        fields = STATE_FIELDS[model]
        for attempt in range(1, config.ALLOCATION_MAX_RETRIES + 1):
            with transaction.atomic():
                obj = model.all_objects.select_for_update().get(pk=pk)
                revision = obj.revision
                result, changed = mutate(obj)
                if not changed:
                    return obj, result
                values = {name: getattr(obj, name) for name in fields}
                updated = model.all_objects.filter(pk=pk, revision=revision).update(
                    **values, revision=revision + 1, updated_at=self.clock.now()
                )
                if updated == 1:
                    obj.revision = revision + 1
                    return obj, result
            logger.warning(
                f"⚠️ [Allocation] Lost compare-and-update race on {model.__name__} {pk} "
                f"(attempt {attempt}/{config.ALLOCATION_MAX_RETRIES})"
            )
        raise ConcurrentAllocationError(f"{model.__name__} {pk}", config.ALLOCATION_MAX_RETRIES)

    # ---------------------------------------------------------------------------
    # Allocation
    # ---------------------------------------------------------------------------

    def allocate(self, request: AllocationRequest) -> AllocationOutcome:
        """Absorb as much of ``request.quantity`` as the client's targets allow"""
        outcome = AllocationOutcome(requested=request.quantity)
        left = request.quantity
        if left <= 0:
            return outcome

        with transaction.atomic():
            for bucket in self._entry_buckets(request):
                if left <= 0:
                    break
                left, stop = self._draw_bucket_chain(bucket.pk, left, request, outcome)
                if stop:
                    left = ZERO
                    break

            for pool in self._candidate_pools(request):
                if left <= 0:
                    break
                left = self._draw_pool(pool.pk, left, request, outcome)

        outcome.uncovered += left
        outcome.covered = sum((a.amount for a in outcome.allocations if a.attributed_to is None), ZERO)
        logger.info(
            f"📦 [Allocation] {request.reference or 'event'}: requested {request.quantity}, "
            f"covered {outcome.covered}, uncovered {outcome.uncovered}, blocked {outcome.blocked}"
        )
        return outcome

    def _entry_buckets(self, request: AllocationRequest) -> list[UsageBucket]:
        buckets = [
            bucket
            for bucket in UsageBucket.objects.filter(
                customer_id=request.client_id, usage_type=request.usage_type, pool__isnull=True, is_active=True
            ).order_by("usage_priority", "created_at")
            if bucket.applies_to_service_type(request.service_type)
        ]
        # Overflow targets are reached through their source's chain
        overflow_targets = {bucket.overflow_bucket_id for bucket in buckets if self._spills_over(bucket)}
        return [bucket for bucket in buckets if bucket.pk not in overflow_targets]

    def _candidate_pools(self, request: AllocationRequest) -> list[UsagePool]:
        pools = (
            UsagePool.objects.filter(usage_type=request.usage_type, is_active=True)
            .filter(Q(customer_id=request.client_id) | Q(members__customer_id=request.client_id))
            .distinct()
        )
        eligible = [pool for pool in pools if pool.applies_to_service_type(request.service_type)]
        # Owned pools before shared memberships
        eligible.sort(key=lambda pool: (str(pool.customer_id) != str(request.client_id), pool.created_at))
        return eligible

    @staticmethod
    def _spills_over(bucket: UsageBucket) -> bool:
        return (
            bucket.allows_overflow
            and bucket.overflow_behavior == "spillover"
            and bucket.overflow_bucket_id is not None
        )

    def _draw_bucket_chain(
        self, bucket_id: Any, amount: Decimal, request: AllocationRequest, outcome: AllocationOutcome
    ) -> tuple[Decimal, bool]:
        """
        Draw ``amount`` from a bucket and, on spillover, down its overflow chain.
        Returns (left, stop) where ``stop`` ends the event's allocation. Only
        ``block`` and ``charge_overage`` stop; a spillover bucket without a live
        target leaves the remainder for the client's pools.
        """
        visited: list[Any] = []
        current_id: Any = bucket_id
        left = amount
        via_overflow = False

        while current_id is not None and left > 0:
            if current_id in visited:
                logger.error(f"🔥 [Allocation] {OverflowCycle([*visited, current_id])}")
                break
            if len(visited) >= config.MAX_OVERFLOW_DEPTH:
                logger.error(f"🔥 [Allocation] Overflow chain from bucket {bucket_id} exceeds depth limit")
                break
            visited.append(current_id)

            try:
                bucket, absorbed = self._absorb_into_bucket(current_id, left, request)
            except RestrictionViolation as e:
                outcome.restrictions.append({"target": e.target, "reason": e.reason})
                logger.info(f"📦 [Allocation] Skipping {e}")
                node = UsageBucket.objects.filter(pk=current_id).first()
                if node is None or not self._spills_over(node):
                    return left, False
                current_id = node.overflow_bucket_id
                via_overflow = True
                continue

            if absorbed > 0:
                outcome.allocations.append(
                    TargetAllocation(
                        target_type="bucket",
                        target_id=str(bucket.pk),
                        code=bucket.code,
                        amount=absorbed,
                        revision=bucket.revision,
                        via_overflow=via_overflow,
                    )
                )
                outcome.touch("bucket", str(bucket.pk), bucket.revision)
            left -= absorbed
            if left <= 0:
                return ZERO, False

            if bucket.overflow_behavior == "block":
                outcome.blocked += left
                logger.info(f"📦 [Allocation] Bucket {bucket.code} blocks remaining {left}")
                return ZERO, True

            if bucket.overflow_behavior == "charge_overage":
                outcome.overage_quantity += left
                outcome.uncovered += left
                if bucket.overflow_rate is not None:
                    outcome.overage_rate = bucket.overflow_rate
                return ZERO, True

            if not self._spills_over(bucket):
                return left, False
            target = UsageBucket.objects.filter(pk=bucket.overflow_bucket_id, is_active=True).first()
            if target is None:
                logger.warning(f"⚠️ [Allocation] Overflow target of {bucket.code} is no longer live")
                return left, False
            current_id = target.pk
            via_overflow = True

        return left, False

    def _absorb_into_bucket(
        self, bucket_id: Any, amount: Decimal, request: AllocationRequest
    ) -> tuple[UsageBucket, Decimal]:
        now = self.clock.now()

        def mutate(bucket: UsageBucket) -> tuple[Decimal, bool]:
            bucket.refresh_status(now)
            if bucket.bucket_status not in (capacity.STATUS_ACTIVE, capacity.STATUS_DEPLETED):
                raise RestrictionViolation(f"bucket {bucket.code}", f"bucket is {bucket.bucket_status}")
            reason = bucket.restriction_violation(
                request.timestamp, request.origin_country, request.destination_country, request.is_roaming
            )
            if reason:
                raise RestrictionViolation(f"bucket {bucket.code}", reason)
            absorbed, _ = capacity.absorb(bucket.absorbable(request.timestamp), ZERO, amount)
            if absorbed > 0:
                bucket.apply_usage(absorbed, request.timestamp)
                bucket.refresh_status(now)
            return absorbed, absorbed > 0

        return self._locked_update(UsageBucket, bucket_id, mutate)

    def _draw_pool(
        self, pool_id: Any, amount: Decimal, request: AllocationRequest, outcome: AllocationOutcome
    ) -> Decimal:
        now = self.clock.now()
        splits: list[tuple[UsagePoolMember, Decimal]] = []

        def mutate(pool: UsagePool) -> tuple[Decimal, bool]:
            pool.refresh_status(now)
            if pool.pool_status not in (capacity.STATUS_ACTIVE, capacity.STATUS_DEPLETED):
                raise RestrictionViolation(f"pool {pool.code}", f"pool is {pool.pool_status}")
            reason = pool.restriction_violation(
                request.timestamp, request.origin_country, request.destination_country, request.is_roaming
            )
            if reason:
                raise RestrictionViolation(f"pool {pool.code}", reason)

            absorbed, _ = capacity.absorb(pool.allocation_ceiling, pool.used_capacity, amount)
            if absorbed > 0:
                members = list(UsagePoolMember.objects.select_for_update().filter(pool=pool).order_by("position"))
                split, taken = split_among_members(
                    members, absorbed, pool.allocation_method, request.client_id, pool.allocation_ceiling
                )
                if members:
                    absorbed = taken
                splits[:] = split
            if absorbed > 0:
                pool.apply_usage(absorbed, request.timestamp, request.reference)
                pool.refresh_status(now)
            return absorbed, absorbed > 0

        try:
            with transaction.atomic():
                pool, absorbed = self._locked_update(UsagePool, pool_id, mutate)
                for member, share in splits:
                    member.used_capacity += share
                    member.save(update_fields=["used_capacity"])
                nested = self._attribute_to_nested_buckets(pool, absorbed, request, outcome) if absorbed > 0 else []
        except RestrictionViolation as e:
            outcome.restrictions.append({"target": e.target, "reason": e.reason})
            logger.info(f"📦 [Allocation] Skipping {e}")
            return amount

        if absorbed > 0:
            outcome.allocations.append(
                TargetAllocation(
                    target_type="pool",
                    target_id=str(pool.pk),
                    code=pool.code,
                    amount=absorbed,
                    revision=pool.revision,
                    members=[{"customer_id": str(m.customer_id), "amount": str(share)} for m, share in splits],
                )
            )
            outcome.allocations.extend(nested)
            outcome.touch("pool", str(pool.pk), pool.revision)
        return amount - absorbed

    def _attribute_to_nested_buckets(
        self, pool: UsagePool, absorbed: Decimal, request: AllocationRequest, outcome: AllocationOutcome
    ) -> list[TargetAllocation]:
        """Record pool usage against the pool's categorized buckets in usage priority order"""
        attributions: list[TargetAllocation] = []
        left = absorbed
        nested = UsageBucket.objects.filter(pool=pool, usage_type=request.usage_type, is_active=True).order_by(
            "usage_priority", "created_at"
        )
        for candidate in nested:
            if left <= 0:
                break
            if not candidate.applies_to_service_type(request.service_type):
                continue
            try:
                bucket, taken = self._absorb_into_bucket(candidate.pk, left, request)
            except RestrictionViolation:
                continue
            if taken > 0:
                attributions.append(
                    TargetAllocation(
                        target_type="bucket",
                        target_id=str(bucket.pk),
                        code=bucket.code,
                        amount=taken,
                        revision=bucket.revision,
                        attributed_to=str(pool.pk),
                    )
                )
                outcome.touch("bucket", str(bucket.pk), bucket.revision)
                left -= taken
        return attributions

    # ---------------------------------------------------------------------------
    # Threshold hand-off
    # ---------------------------------------------------------------------------

    def evaluate_touched(self, outcome: AllocationOutcome) -> list[dict[str, Any]]:
        """Run the threshold monitor on every committed snapshot the allocation produced"""
        if self.monitor is None:
            return []
        return self.monitor.evaluate_allocation(outcome.snapshots())

    def _evaluate(self, target_type: str, target: Any) -> None:
        if self.monitor is not None:
            self.monitor.evaluate_target(target_type, str(target.pk), target.revision)

    # ---------------------------------------------------------------------------
    # Target lookup
    # ---------------------------------------------------------------------------

    @staticmethod
    def resolve_target(target_id: Any) -> tuple[str, UsagePool | UsageBucket] | None:
        """Find a live pool or bucket by id or code"""
        lookup = str(target_id)
        try:
            pk: uuid.UUID | None = uuid.UUID(lookup)
        except ValueError:
            pk = None
        for target_type, model in (("pool", UsagePool), ("bucket", UsageBucket)):
            query = Q(code=lookup) | Q(pk=pk) if pk is not None else Q(code=lookup)
            target = model.objects.filter(query).first()
            if target is not None:
                return target_type, target
        return None

    # ---------------------------------------------------------------------------
    # Operator actions
    # ---------------------------------------------------------------------------

    def deallocate(self, target: UsagePool | UsageBucket, amount: Decimal, actor: Any | None = None,
                   reason: str = "") -> Result[Decimal, str]:
        """Give capacity back after an adjustment or refund; may flip depleted → active"""
        if amount <= 0:
            return Err("Deallocation amount must be positive")
        now = self.clock.now()
        target_type = "pool" if isinstance(target, UsagePool) else "bucket"

        def mutate(obj: Any) -> tuple[Decimal, bool]:
            if isinstance(obj, UsagePool):
                released = obj.release_usage(amount, now, reason)
            else:
                released = obj.release_usage(amount)
            obj.refresh_status(now)
            return released, released > 0

        obj, released = self._locked_update(type(target), target.pk, mutate)
        if released <= 0:
            return Err(f"{target_type} {obj.code} has no usage to release")

        AuditService.log_simple_event(
            f"usage_{target_type}_deallocated",
            user=_audit_user(actor),
            content_object=obj,
            description=f"Released {released} from {target_type} {obj.code}",
            metadata={"amount": released, "requested": amount, "reason": reason},
            actor_type=_actor_type(actor),
        )
        logger.info(f"📦 [Allocation] Released {released} from {target_type} {obj.code}")
        self._evaluate(target_type, obj)
        return Ok(released)

    def adjust_capacity(self, target: UsagePool | UsageBucket, new_capacity: Decimal,
                        actor: Any | None = None) -> Result[UsagePool | UsageBucket, str]:
        """Change total capacity and re-derive status"""
        if new_capacity < 0:
            return Err("Capacity cannot be negative")
        now = self.clock.now()
        target_type = "pool" if isinstance(target, UsagePool) else "bucket"
        capacity_field = "total_capacity" if target_type == "pool" else "bucket_capacity"
        previous: dict[str, Decimal] = {}

        def mutate(obj: Any) -> tuple[None, bool]:
            previous["capacity"] = getattr(obj, capacity_field)
            setattr(obj, capacity_field, new_capacity)
            obj.refresh_status(now)
            return None, previous["capacity"] != new_capacity

        obj, _ = self._locked_update(type(target), target.pk, mutate)
        AuditService.log_simple_event(
            f"usage_{target_type}_capacity_adjusted",
            user=_audit_user(actor),
            content_object=obj,
            description=f"{target_type.title()} {obj.code} capacity {previous['capacity']} → {new_capacity}",
            old_values={capacity_field: previous["capacity"]},
            new_values={capacity_field: new_capacity},
            actor_type=_actor_type(actor),
        )
        self._evaluate(target_type, obj)
        return Ok(obj)

    def suspend(self, target: UsagePool | UsageBucket, actor: Any | None = None,
                reason: str = "") -> Result[UsagePool | UsageBucket, str]:
        return self._set_explicit_status(target, capacity.STATUS_SUSPENDED, actor, reason or "Suspended by operator")

    def resume(self, target: UsagePool | UsageBucket, actor: Any | None = None) -> Result[UsagePool | UsageBucket, str]:
        now = self.clock.now()
        target_type = "pool" if isinstance(target, UsagePool) else "bucket"
        status_field = "pool_status" if target_type == "pool" else "bucket_status"

        def mutate(obj: Any) -> tuple[str | None, bool]:
            if getattr(obj, status_field) != capacity.STATUS_SUSPENDED:
                return f"{target_type} {obj.code} is not suspended", False
            setattr(obj, status_field, capacity.STATUS_ACTIVE)
            obj.suspended_at = None
            obj.status_reason = ""
            obj.refresh_status(now)
            return None, True

        obj, error = self._locked_update(type(target), target.pk, mutate)
        if error:
            return Err(error)
        self._audit_status(obj, target_type, "resumed", actor, "")
        return Ok(obj)

    def expire(self, target: UsagePool | UsageBucket, actor: Any | None = None,
               reason: str = "") -> Result[UsagePool | UsageBucket, str]:
        return self._set_explicit_status(target, capacity.STATUS_EXPIRED, actor, reason or "Expired")

    def _set_explicit_status(self, target: UsagePool | UsageBucket, status: str, actor: Any | None,
                             reason: str) -> Result[UsagePool | UsageBucket, str]:
        now = self.clock.now()
        target_type = "pool" if isinstance(target, UsagePool) else "bucket"
        status_field = "pool_status" if target_type == "pool" else "bucket_status"

        def mutate(obj: Any) -> tuple[str | None, bool]:
            current = getattr(obj, status_field)
            if current == capacity.STATUS_EXPIRED:
                return f"{target_type} {obj.code} has expired", False
            if current == status:
                return None, False
            setattr(obj, status_field, status)
            obj.status_reason = reason
            if status == capacity.STATUS_SUSPENDED:
                obj.suspended_at = now
            return None, True

        obj, error = self._locked_update(type(target), target.pk, mutate)
        if error:
            return Err(error)
        self._audit_status(obj, target_type, status, actor, reason)
        return Ok(obj)

    def _audit_status(self, obj: Any, target_type: str, status: str, actor: Any | None, reason: str) -> None:
        AuditService.log_simple_event(
            f"usage_{target_type}_{status}",
            user=_audit_user(actor),
            content_object=obj,
            description=f"{target_type.title()} {obj.code} {status}" + (f": {reason}" if reason else ""),
            actor_type=_actor_type(actor),
        )
        logger.info(f"📦 [Allocation] {target_type.title()} {obj.code} {status}")

    def soft_delete(self, target: UsagePool | UsageBucket, actor: Any | None = None) -> Result[bool, str]:
        """Soft delete a pool (contract termination) or bucket, archiving its alerts"""
        if target.is_deleted:
            return Err(f"{target.code} is already deleted")
        target_type = "pool" if isinstance(target, UsagePool) else "bucket"
        with transaction.atomic():
            target.soft_delete(_audit_user(actor))
            AuditService.log_simple_event(
                f"usage_{target_type}_soft_deleted",
                user=_audit_user(actor),
                content_object=target,
                description=f"{target_type.title()} {target.code} soft deleted",
                actor_type=_actor_type(actor),
            )
        return Ok(True)

    def add_member(self, pool: UsagePool, customer: Any, *, weight: Decimal = Decimal("1"), priority: int = 0,
                   allocated_capacity: Decimal = ZERO, actor: Any | None = None) -> Result[UsagePoolMember, str]:
        """Add a client to a pool at the end of its stored order"""
        with transaction.atomic():
            locked = UsagePool.objects.select_for_update().get(pk=pool.pk)
            if UsagePoolMember.objects.filter(pool=locked, customer=customer).exists():
                return Err(f"{customer} is already a member of {locked.code}")
            position = UsagePoolMember.objects.filter(pool=locked).count()
            member = UsagePoolMember.objects.create(
                pool=locked,
                customer=customer,
                weight=weight,
                priority=priority,
                allocated_capacity=allocated_capacity,
                position=position,
            )
            allocated = UsagePoolMember.objects.filter(pool=locked).aggregate(total=Sum("allocated_capacity"))
            UsagePool.objects.filter(pk=locked.pk).update(allocated_capacity=allocated["total"] or ZERO)
            AuditService.log_simple_event(
                "usage_pool_member_added",
                user=_audit_user(actor),
                content_object=locked,
                description=f"{customer} joined pool {locked.code}",
                metadata={"weight": weight, "priority": priority, "allocated_capacity": allocated_capacity},
                actor_type=_actor_type(actor),
            )
        return Ok(member)

    # ---------------------------------------------------------------------------
    # Period reset and expiry
    # ---------------------------------------------------------------------------

    def reset_period(self, target: UsagePool | UsageBucket, actor: Any | None = None,
                     force: bool = False) -> Result[dict[str, Any], str]:
        """
        Scheduler-triggered period reset under the target lock. A reset whose
        ``next_reset_date`` is still in the future is a no-op unless forced.
        """
        now = self.clock.now()
        target_type = "pool" if isinstance(target, UsagePool) else "bucket"

        def mutate(obj: Any) -> tuple[dict[str, Any] | None, bool]:
            if not force and obj.next_reset_date is not None and obj.next_reset_date > now:
                return None, False
            return obj.reset_for_new_period(now), True

        with transaction.atomic():
            obj, summary = self._locked_update(type(target), target.pk, mutate)
            if summary is not None and target_type == "pool":
                # Member shares restart with the pool
                members_reset = UsagePoolMember.objects.filter(pool_id=obj.pk).update(used_capacity=ZERO)
                summary["members_reset"] = members_reset
        if summary is None:
            logger.info(f"🔁 [Reset] {target_type.title()} {obj.code} not due until {obj.next_reset_date}")
            return Ok({"reset": False, "target": obj.code, "next_reset_date": obj.next_reset_date})

        AuditService.log_simple_event(
            "usage_period_reset",
            user=_audit_user(actor),
            content_object=obj,
            description=f"{target_type.title()} {obj.code} period reset" + (" (forced)" if force else ""),
            new_values=summary,
            actor_type=_actor_type(actor),
        )
        logger.info(f"🔁 [Reset] {target_type.title()} {obj.code} period reset")
        self._evaluate(target_type, obj)
        return Ok({"reset": True, "target": obj.code, **summary})

    def expire_due_targets(self, actor: Any | None = None) -> int:
        """Expire every live pool and bucket past its ``expires_at``"""
        now = self.clock.now()
        expired = 0
        for model in (UsagePool, UsageBucket):
            status_field = "pool_status" if model is UsagePool else "bucket_status"
            due = model.objects.filter(expires_at__lte=now).exclude(**{status_field: capacity.STATUS_EXPIRED})
            for target in due:
                if self.expire(target, actor, "Past expiry date").is_ok():
                    expired += 1
        return expired

    def expire_rollover(self) -> int:
        """Drop banked rollover whose expiry has passed"""
        now = self.clock.now()
        cleared = 0
        for model, balance_field in ((UsagePool, "rollover_capacity"), (UsageBucket, "rollover_balance")):
            due = model.objects.filter(rollover_expires_at__lte=now, **{f"{balance_field}__gt": 0})
            for target in due:

                def mutate(obj: Any, balance_field: str = balance_field) -> tuple[None, bool]:
                    if obj.rollover_expires_at is None or obj.rollover_expires_at > now:
                        return None, False
                    setattr(obj, balance_field, ZERO)
                    obj.rollover_expires_at = None
                    obj.refresh_status(now)
                    return None, True

                self._locked_update(model, target.pk, mutate)
                cleared += 1
        if cleared:
            logger.info(f"🔁 [Reset] Cleared {cleared} expired rollover balance(s)")
        return cleared
