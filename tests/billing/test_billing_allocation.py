# ===============================================================================
# ALLOCATION ENGINE TEST SUITE
# ===============================================================================
"""
Tests for placing usage into buckets and pools: draw order, overflow chains,
block/overage behaviors, restrictions, overallocation, member attribution,
operator actions and period resets.
"""

from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest import skipUnless

from django.core.exceptions import ValidationError
from django.db import connection
from django.db.models import F
from django.test import SimpleTestCase, TestCase, TransactionTestCase

from apps.audit.models import AuditEvent
from apps.billing import capacity, config
from apps.billing.allocation_service import AllocationEngine, AllocationRequest, split_among_members
from apps.billing.alert_models import UsageAlert
from apps.billing.bucket_models import UsageBucket
from apps.billing.interfaces import FixedClock
from apps.billing.pool_models import UsagePool, UsagePoolMember
from apps.billing.usage_exceptions import ConcurrentAllocationError
from apps.customers.models import Customer

NOW = datetime(2025, 3, 12, 10, 0, tzinfo=UTC)


def create_bucket(customer: Customer, code: str, bucket_capacity: str, **overrides) -> UsageBucket:
    values = {
        "code": code,
        "name": code.title(),
        "customer": customer,
        "usage_type": "voice_minutes",
        "bucket_capacity": Decimal(bucket_capacity),
    }
    values.update(overrides)
    return UsageBucket.objects.create(**values)


def create_pool(customer: Customer, code: str, total_capacity: str, **overrides) -> UsagePool:
    values = {
        "code": code,
        "name": code.title(),
        "customer": customer,
        "usage_type": "voice_minutes",
        "total_capacity": Decimal(total_capacity),
    }
    values.update(overrides)
    return UsagePool.objects.create(**values)


class AllocationTestMixin:
    """Shared setup: a customer, a pinned clock and an engine without a monitor."""

    def setUp(self):
        self.customer = Customer.objects.create(name="Acme", customer_type="company")
        self.clock = FixedClock(NOW)
        self.engine = AllocationEngine(clock=self.clock)

    def request(self, quantity: str, **overrides) -> AllocationRequest:
        values = {
            "client_id": self.customer.pk,
            "usage_type": "voice_minutes",
            "quantity": Decimal(quantity),
            "timestamp": self.clock.now(),
        }
        values.update(overrides)
        return AllocationRequest(**values)


class BucketAllocationTestCase(AllocationTestMixin, TestCase):
    """Standalone buckets and their overflow chains."""

    def test_bucket_absorbs_within_capacity(self):
        bucket = create_bucket(self.customer, "INCL", "100")

        outcome = self.engine.allocate(self.request("40"))

        bucket.refresh_from_db()
        self.assertEqual(outcome.covered, Decimal("40"))
        self.assertEqual(outcome.uncovered, Decimal("0"))
        self.assertEqual(bucket.used_amount, Decimal("40"))
        self.assertEqual(bucket.revision, 1)

    def test_spillover_to_overflow_bucket(self):
        overflow = create_bucket(self.customer, "OVERFLOW", "100", usage_priority=200)
        primary = create_bucket(
            self.customer,
            "PRIMARY",
            "8",
            usage_priority=10,
            allows_overflow=True,
            overflow_bucket=overflow,
            overflow_behavior="spillover",
        )

        self.engine.allocate(self.request("5"))
        outcome = self.engine.allocate(self.request("5"))

        primary.refresh_from_db()
        overflow.refresh_from_db()
        self.assertEqual(primary.used_amount, Decimal("8"))
        self.assertEqual(overflow.used_amount, Decimal("2"))
        self.assertEqual(primary.bucket_status, capacity.STATUS_DEPLETED)
        self.assertEqual([a.amount for a in outcome.allocations], [Decimal("3"), Decimal("2")])
        self.assertTrue(outcome.allocations[1].via_overflow)
        self.assertEqual(outcome.covered, Decimal("5"))

    def test_block_behavior_refuses_remainder(self):
        bucket = create_bucket(self.customer, "CAPPED", "10", overflow_behavior="block")

        outcome = self.engine.allocate(self.request("15"))

        bucket.refresh_from_db()
        self.assertEqual(bucket.used_amount, Decimal("10"))
        self.assertEqual(outcome.blocked, Decimal("5"))
        self.assertEqual(outcome.uncovered, Decimal("0"))

    def test_charge_overage_reports_remainder_with_rate(self):
        create_bucket(
            self.customer, "METERED", "10", overflow_behavior="charge_overage", overflow_rate=Decimal("0.15")
        )

        outcome = self.engine.allocate(self.request("15"))

        self.assertEqual(outcome.covered, Decimal("10"))
        self.assertEqual(outcome.uncovered, Decimal("5"))
        self.assertEqual(outcome.overage_quantity, Decimal("5"))
        self.assertEqual(outcome.overage_rate, Decimal("0.15"))

    def test_usage_priority_orders_buckets(self):
        bonus = create_bucket(self.customer, "BONUS", "5", usage_priority=1, bucket_type="bonus")
        included = create_bucket(self.customer, "INCL", "100", usage_priority=50)

        self.engine.allocate(self.request("3"))

        bonus.refresh_from_db()
        included.refresh_from_db()
        self.assertEqual(bonus.used_amount, Decimal("3"))
        self.assertEqual(included.used_amount, Decimal("0"))

    def test_service_type_mismatch_skips_bucket(self):
        create_bucket(self.customer, "SMS", "100", service_types=["sms"])

        outcome = self.engine.allocate(self.request("10", service_type="voice"))

        self.assertEqual(outcome.covered, Decimal("0"))
        self.assertEqual(outcome.uncovered, Decimal("10"))
        self.assertFalse(outcome.considered_any_target)

    def test_location_restriction_skips_bucket(self):
        create_bucket(self.customer, "DOMESTIC", "100", location_restrictions={"restricted_destinations": ["CU"]})

        outcome = self.engine.allocate(self.request("10", destination_country="CU"))

        self.assertEqual(outcome.uncovered, Decimal("10"))
        self.assertEqual(outcome.restrictions[0]["target"], "bucket DOMESTIC")
        self.assertIn("restricted", outcome.restrictions[0]["reason"])

    def test_restricted_bucket_passes_usage_down_its_chain(self):
        overflow = create_bucket(self.customer, "ANYTIME", "100")
        create_bucket(
            self.customer,
            "NIGHTS",
            "100",
            time_restrictions={"off_peak_only": True},
            allows_overflow=True,
            overflow_bucket=overflow,
            overflow_behavior="spillover",
        )

        outcome = self.engine.allocate(self.request("10"))

        overflow.refresh_from_db()
        self.assertEqual(overflow.used_amount, Decimal("10"))
        self.assertEqual(len(outcome.restrictions), 1)

    def test_daily_limit_caps_absorption(self):
        create_bucket(self.customer, "DAILY", "100", daily_limit=Decimal("20"))

        first = self.engine.allocate(self.request("15"))
        second = self.engine.allocate(self.request("15"))
        self.clock.advance(days=1)
        third = self.engine.allocate(self.request("15"))

        self.assertEqual(first.covered, Decimal("15"))
        self.assertEqual(second.covered, Decimal("5"))
        self.assertEqual(third.covered, Decimal("15"))

    def test_suspended_bucket_skipped_until_resumed(self):
        bucket = create_bucket(self.customer, "INCL", "100")
        self.assertTrue(self.engine.suspend(bucket, reason="fraud review").is_ok())

        skipped = self.engine.allocate(self.request("10"))
        self.assertTrue(self.engine.resume(bucket).is_ok())
        drawn = self.engine.allocate(self.request("10"))

        self.assertEqual(skipped.covered, Decimal("0"))
        self.assertIn("suspended", skipped.restrictions[0]["reason"])
        self.assertEqual(drawn.covered, Decimal("10"))

    def test_resume_requires_suspension(self):
        bucket = create_bucket(self.customer, "INCL", "100")

        result = self.engine.resume(bucket)

        self.assertTrue(result.is_err())
        self.assertIn("not suspended", result.error)


class OverflowValidationTestCase(AllocationTestMixin, TestCase):
    """Overflow chains are validated when written."""

    def test_overflow_needs_target(self):
        with self.assertRaises(ValidationError):
            create_bucket(self.customer, "LONELY", "10", allows_overflow=True, overflow_behavior="spillover")

    def test_overflow_cycle_rejected(self):
        second = create_bucket(self.customer, "SECOND", "10")
        first = create_bucket(
            self.customer, "FIRST", "10", allows_overflow=True, overflow_bucket=second, overflow_behavior="spillover"
        )

        second.allows_overflow = True
        second.overflow_bucket = first
        second.overflow_behavior = "spillover"
        with self.assertRaises(ValidationError) as cm:
            second.save()

        self.assertIn("cycle", str(cm.exception))

    def test_overflow_into_expired_bucket_rejected(self):
        expired = create_bucket(self.customer, "OLD", "10", bucket_status=capacity.STATUS_EXPIRED)

        with self.assertRaises(ValidationError):
            create_bucket(
                self.customer, "NEW", "10", allows_overflow=True, overflow_bucket=expired, overflow_behavior="spillover"
            )

    def test_warning_threshold_cannot_exceed_critical(self):
        with self.assertRaises(ValidationError):
            create_bucket(
                self.customer, "BAD", "10", warning_threshold=Decimal("96"), critical_threshold=Decimal("90")
            )


class PoolAllocationTestCase(AllocationTestMixin, TestCase):
    """Pools, overallocation and member attribution."""

    def test_pool_drawn_after_standalone_buckets(self):
        bucket = create_bucket(self.customer, "INCL", "10")
        pool = create_pool(self.customer, "SHARED", "100")

        outcome = self.engine.allocate(self.request("30"))

        bucket.refresh_from_db()
        pool.refresh_from_db()
        self.assertEqual(bucket.used_amount, Decimal("10"))
        self.assertEqual(pool.used_capacity, Decimal("20"))
        self.assertEqual(outcome.covered, Decimal("30"))

    def test_full_default_bucket_hands_remainder_to_owned_pool(self):
        bucket = create_bucket(self.customer, "PLAIN", "10")
        pool = create_pool(self.customer, "SHARED", "100")

        outcome = self.engine.allocate(self.request("30"))

        pool.refresh_from_db()
        self.assertEqual(bucket.overflow_behavior, "spillover")
        self.assertFalse(bucket.allows_overflow)
        self.assertEqual(pool.used_capacity, Decimal("20"))
        self.assertEqual(outcome.covered, Decimal("30"))
        self.assertEqual(outcome.uncovered, Decimal("0"))

    def test_charge_overage_bucket_stops_before_pools(self):
        create_bucket(self.customer, "METERED", "10", overflow_behavior="charge_overage")
        pool = create_pool(self.customer, "SHARED", "100")

        outcome = self.engine.allocate(self.request("30"))

        pool.refresh_from_db()
        self.assertEqual(pool.used_capacity, Decimal("0"))
        self.assertEqual(outcome.overage_quantity, Decimal("20"))
        self.assertEqual(outcome.uncovered, Decimal("20"))

    def test_pool_without_overallocation_stops_at_total(self):
        pool = create_pool(self.customer, "STRICT", "100")

        outcome = self.engine.allocate(self.request("130"))

        pool.refresh_from_db()
        self.assertEqual(pool.used_capacity, Decimal("100"))
        self.assertEqual(outcome.uncovered, Decimal("30"))
        self.assertEqual(pool.pool_status, capacity.STATUS_DEPLETED)

    def test_overallocation_extends_ceiling(self):
        pool = create_pool(
            self.customer, "ELASTIC", "100", allow_overallocation=True, overallocation_limit=Decimal("20")
        )

        outcome = self.engine.allocate(self.request("130"))

        pool.refresh_from_db()
        self.assertEqual(pool.used_capacity, Decimal("120"))
        self.assertEqual(outcome.uncovered, Decimal("10"))
        self.assertEqual(pool.utilization_percentage, Decimal("120.00"))

    def test_nested_buckets_record_pool_usage(self):
        pool = create_pool(self.customer, "SHARED", "100")
        nested = create_bucket(self.customer, "NESTED", "50", pool=pool)

        outcome = self.engine.allocate(self.request("30"))

        nested.refresh_from_db()
        self.assertEqual(nested.used_amount, Decimal("30"))
        self.assertEqual(outcome.covered, Decimal("30"))
        self.assertEqual(outcome.allocations[1].attributed_to, str(pool.pk))

    def test_pool_history_records_reference(self):
        pool = create_pool(self.customer, "SHARED", "100")

        self.engine.allocate(self.request("5", reference="evt-42"))

        pool.refresh_from_db()
        self.assertEqual(pool.usage_history[-1]["reference"], "evt-42")
        self.assertEqual(Decimal(pool.usage_history[-1]["used_after"]), Decimal("5"))

    def test_member_draws_own_weighted_share(self):
        member_a = Customer.objects.create(name="Branch A")
        member_b = Customer.objects.create(name="Branch B")
        pool = create_pool(self.customer, "FAMILY", "100", allocation_method="weighted")
        self.engine.add_member(pool, member_a, weight=Decimal("3"))
        self.engine.add_member(pool, member_b, weight=Decimal("1"))

        outcome = self.engine.allocate(self.request("80", client_id=member_a.pk))

        self.assertEqual(outcome.covered, Decimal("75"))
        self.assertEqual(outcome.uncovered, Decimal("5"))
        self.assertEqual(UsagePoolMember.objects.get(pool=pool, customer=member_a).used_capacity, Decimal("75"))

    def test_owner_usage_spread_across_members(self):
        member_a = Customer.objects.create(name="Branch A")
        member_b = Customer.objects.create(name="Branch B")
        pool = create_pool(self.customer, "FAMILY", "100", allocation_method="weighted")
        self.engine.add_member(pool, member_a, weight=Decimal("3"))
        self.engine.add_member(pool, member_b, weight=Decimal("1"))

        outcome = self.engine.allocate(self.request("40"))

        self.assertEqual(outcome.covered, Decimal("40"))
        shares = {m["customer_id"]: Decimal(m["amount"]) for m in outcome.allocations[0].members}
        self.assertEqual(shares[str(member_a.pk)], Decimal("30"))
        self.assertEqual(shares[str(member_b.pk)], Decimal("10"))

    def test_add_member_twice_rejected(self):
        member = Customer.objects.create(name="Branch A")
        pool = create_pool(self.customer, "FAMILY", "100")

        self.assertTrue(self.engine.add_member(pool, member, allocated_capacity=Decimal("40")).is_ok())
        duplicate = self.engine.add_member(pool, member)

        pool.refresh_from_db()
        self.assertTrue(duplicate.is_err())
        self.assertEqual(pool.allocated_capacity, Decimal("40"))

    def test_pool_time_restriction(self):
        create_pool(self.customer, "NIGHTS", "100", time_restrictions={"allowed_windows": [{"start": 22, "end": 6}]})

        outcome = self.engine.allocate(self.request("10"))

        self.assertEqual(outcome.uncovered, Decimal("10"))
        self.assertIn("outside the allowed windows", outcome.restrictions[0]["reason"])


class MemberSplitTestCase(SimpleTestCase):
    """Attribution of pool usage to members."""

    def member(self, customer_id: int, **values) -> UsagePoolMember:
        return UsagePoolMember(customer_id=customer_id, **values)

    def test_equal_share_sums_exactly(self):
        members = [self.member(1, position=0), self.member(2, position=1), self.member(3, position=2)]

        split, taken = split_among_members(members, Decimal("10"), "equal_share", 99, Decimal("100"))

        self.assertEqual(taken, Decimal("10"))
        self.assertEqual(sum(share for _, share in split), Decimal("10"))
        self.assertEqual(split[0][1], Decimal("3.333333"))

    def test_priority_based_fills_highest_priority_first(self):
        low = self.member(1, priority=1, allocated_capacity=Decimal("10"), position=0)
        high = self.member(2, priority=5, allocated_capacity=Decimal("10"), position=1)

        split, taken = split_among_members([low, high], Decimal("15"), "priority_based", 99, Decimal("100"))

        self.assertEqual(taken, Decimal("15"))
        self.assertEqual([(m.customer_id, share) for m, share in split], [(2, Decimal("10")), (1, Decimal("5"))])

    def test_first_come_first_served_uses_stored_order(self):
        second = self.member(1, allocated_capacity=Decimal("10"), position=1)
        first = self.member(2, allocated_capacity=Decimal("10"), position=0)

        split, taken = split_among_members([second, first], Decimal("25"), "first_come_first_served", 99, Decimal("100"))

        self.assertEqual(taken, Decimal("20"))
        self.assertEqual(split[0][0], first)

    def test_member_bounded_by_own_headroom(self):
        member = self.member(7, allocated_capacity=Decimal("10"), used_capacity=Decimal("8"), position=0)

        split, taken = split_among_members([member], Decimal("5"), "first_come_first_served", 7, Decimal("100"))

        self.assertEqual(taken, Decimal("2"))

    def test_no_members_passes_amount_through(self):
        self.assertEqual(split_among_members([], Decimal("5"), "weighted", 1, Decimal("10")), ([], Decimal("5")))


class OperatorActionTestCase(AllocationTestMixin, TestCase):
    """Deallocation, capacity changes, expiry and soft delete."""

    def test_deallocate_reactivates_depleted_bucket(self):
        bucket = create_bucket(self.customer, "INCL", "10")
        self.engine.allocate(self.request("10"))
        bucket.refresh_from_db()
        self.assertEqual(bucket.bucket_status, capacity.STATUS_DEPLETED)

        result = self.engine.deallocate(bucket, Decimal("4"), reason="refund")

        bucket.refresh_from_db()
        self.assertTrue(result.is_ok())
        self.assertEqual(result.unwrap(), Decimal("4"))
        self.assertEqual(bucket.used_amount, Decimal("6"))
        self.assertEqual(bucket.bucket_status, capacity.STATUS_ACTIVE)
        self.assertTrue(AuditEvent.objects.filter(action="usage_bucket_deallocated").exists())

    def test_deallocate_rejects_non_positive_amount(self):
        bucket = create_bucket(self.customer, "INCL", "10")

        self.assertTrue(self.engine.deallocate(bucket, Decimal("0")).is_err())

    def test_adjust_capacity_reactivates_pool(self):
        pool = create_pool(self.customer, "SHARED", "10")
        self.engine.allocate(self.request("10"))

        result = self.engine.adjust_capacity(pool, Decimal("50"))

        self.assertTrue(result.is_ok())
        pool.refresh_from_db()
        self.assertEqual(pool.total_capacity, Decimal("50"))
        self.assertEqual(pool.pool_status, capacity.STATUS_ACTIVE)

    def test_expired_target_cannot_be_suspended(self):
        bucket = create_bucket(self.customer, "INCL", "10")
        self.assertTrue(self.engine.expire(bucket).is_ok())

        result = self.engine.suspend(bucket)

        self.assertTrue(result.is_err())

    def test_expire_due_targets(self):
        create_bucket(self.customer, "OLD", "10", expires_at=NOW - timedelta(days=1))
        create_pool(self.customer, "CURRENT", "10", expires_at=NOW + timedelta(days=1))

        expired = self.engine.expire_due_targets()

        self.assertEqual(expired, 1)
        self.assertEqual(UsageBucket.objects.get(code="OLD").bucket_status, capacity.STATUS_EXPIRED)

    def test_soft_delete_archives_alerts(self):
        pool = create_pool(self.customer, "SHARED", "100")
        alert = UsageAlert.objects.create(
            code="POOL-80", name="Pool 80%", scope="pool", customer=self.customer, pool=pool,
            threshold_value=Decimal("80"),
        )

        result = self.engine.soft_delete(pool)

        alert.refresh_from_db()
        self.assertTrue(result.is_ok())
        self.assertFalse(UsagePool.objects.filter(pk=pool.pk).exists())
        self.assertTrue(UsagePool.all_objects.filter(pk=pool.pk).exists())
        self.assertTrue(alert.is_archived)
        self.assertFalse(alert.is_active)

    def test_resolve_target_by_code_or_id(self):
        bucket = create_bucket(self.customer, "INCL", "10")

        self.assertEqual(self.engine.resolve_target("INCL"), ("bucket", bucket))
        self.assertEqual(self.engine.resolve_target(str(bucket.pk)), ("bucket", bucket))
        self.assertIsNone(self.engine.resolve_target("MISSING"))


class PeriodResetTestCase(AllocationTestMixin, TestCase):
    """Scheduler-triggered resets and rollover."""

    def test_reset_not_due_is_a_noop(self):
        bucket = create_bucket(self.customer, "INCL", "10", next_reset_date=NOW + timedelta(days=5))

        result = self.engine.reset_period(bucket)

        self.assertTrue(result.is_ok())
        self.assertFalse(result.unwrap()["reset"])

    def test_reset_banks_rollover_and_zeroes_usage(self):
        bucket = create_bucket(
            self.customer, "INCL", "10", allows_rollover=True, rollover_percentage=Decimal("50"),
            next_reset_date=NOW - timedelta(hours=1),
        )
        self.engine.allocate(self.request("4"))

        result = self.engine.reset_period(bucket)

        bucket.refresh_from_db()
        self.assertTrue(result.unwrap()["reset"])
        self.assertEqual(bucket.used_amount, Decimal("0"))
        self.assertEqual(bucket.rollover_balance, Decimal("3"))
        self.assertEqual(bucket.effective_capacity, Decimal("13"))
        self.assertEqual(bucket.next_reset_date, datetime(2025, 4, 12, 9, 0, tzinfo=UTC))

    def test_repeated_reset_is_idempotent(self):
        bucket = create_bucket(
            self.customer, "INCL", "10", allows_rollover=True, rollover_percentage=Decimal("50"),
            next_reset_date=NOW - timedelta(hours=1),
        )
        self.engine.allocate(self.request("4"))
        self.engine.reset_period(bucket)
        bucket.refresh_from_db()
        snapshot = (bucket.used_amount, bucket.rollover_balance, bucket.current_period_usage)

        second = self.engine.reset_period(bucket)
        forced = self.engine.reset_period(bucket, force=True)

        bucket.refresh_from_db()
        self.assertFalse(second.unwrap()["reset"])
        self.assertTrue(forced.unwrap()["reset"])
        self.assertEqual((bucket.used_amount, bucket.rollover_balance, bucket.current_period_usage), snapshot)

    def test_pool_reset_advances_cycle(self):
        pool = create_pool(
            self.customer, "SHARED", "100",
            cycle_start_date=datetime(2025, 2, 1, tzinfo=UTC),
            cycle_end_date=datetime(2025, 3, 1, tzinfo=UTC),
            next_reset_date=datetime(2025, 3, 1, tzinfo=UTC),
        )
        self.engine.allocate(self.request("60"))

        self.engine.reset_period(pool)

        pool.refresh_from_db()
        self.assertEqual(pool.used_capacity, Decimal("0"))
        self.assertEqual(pool.previous_period_usage, Decimal("60"))
        self.assertEqual(pool.cycle_start_date, datetime(2025, 3, 1, tzinfo=UTC))
        self.assertEqual(pool.next_reset_date, datetime(2025, 4, 1, tzinfo=UTC))
        self.assertTrue(AuditEvent.objects.filter(action="usage_period_reset").exists())

    def test_pool_reset_restores_member_shares(self):
        member_a = Customer.objects.create(name="Branch A")
        member_b = Customer.objects.create(name="Branch B")
        pool = create_pool(self.customer, "FAMILY", "100", allocation_method="equal_share")
        self.engine.add_member(pool, member_a)
        self.engine.add_member(pool, member_b)

        first_period = self.engine.allocate(self.request("50", client_id=member_a.pk))
        result = self.engine.reset_period(pool, force=True)
        second_period = self.engine.allocate(self.request("50", client_id=member_a.pk))

        pool.refresh_from_db()
        self.assertEqual(first_period.covered, Decimal("50"))
        self.assertEqual(result.unwrap()["members_reset"], 2)
        self.assertEqual(second_period.covered, Decimal("50"))
        self.assertEqual(pool.used_capacity, Decimal("50"))
        self.assertEqual(UsagePoolMember.objects.get(pool=pool, customer=member_a).used_capacity, Decimal("50"))

    def test_expired_rollover_cleared(self):
        create_bucket(
            self.customer, "INCL", "10", allows_rollover=True, rollover_percentage=Decimal("50"),
            rollover_balance=Decimal("5"), rollover_expires_at=NOW - timedelta(minutes=1),
        )

        cleared = self.engine.expire_rollover()

        self.assertEqual(cleared, 1)
        self.assertEqual(UsageBucket.objects.get(code="INCL").rollover_balance, Decimal("0"))


class CapacityBoundTestCase(AllocationTestMixin, TestCase):
    """Capacity bounds and the compare-and-update guard on the default backend."""

    SIZES = ("30", "45", "20", "25")

    def test_sequential_allocations_never_exceed_total(self):
        pool = create_pool(self.customer, "STRICT", "100")
        requested = Decimal("0")

        for size in self.SIZES:
            self.engine.allocate(self.request(size))
            requested += Decimal(size)
            pool.refresh_from_db()
            self.assertLessEqual(pool.used_capacity, Decimal("100"))
            self.assertEqual(pool.used_capacity, min(Decimal("100"), requested))

    def test_sequential_allocations_stop_at_overallocation_ceiling(self):
        pool = create_pool(
            self.customer, "ELASTIC", "100", allow_overallocation=True, overallocation_limit=Decimal("10")
        )

        for size in self.SIZES:
            self.engine.allocate(self.request(size))
            pool.refresh_from_db()
            self.assertLessEqual(pool.used_capacity, Decimal("110"))

        self.assertEqual(pool.used_capacity, Decimal("110"))

    def test_overflow_split_is_independent_of_request_order(self):
        for sizes in (("5", "5"), ("3", "7"), ("7", "3")):
            with self.subTest(sizes=sizes):
                customer = Customer.objects.create(name=f"Order {'-'.join(sizes)}")
                overflow = create_bucket(customer, f"OVER-{'-'.join(sizes)}", "100", usage_priority=200)
                primary = create_bucket(
                    customer,
                    f"PRIM-{'-'.join(sizes)}",
                    "8",
                    usage_priority=10,
                    allows_overflow=True,
                    overflow_bucket=overflow,
                    overflow_behavior="spillover",
                )

                for size in sizes:
                    self.engine.allocate(self.request(size, client_id=customer.pk))

                primary.refresh_from_db()
                overflow.refresh_from_db()
                self.assertEqual(primary.used_amount, Decimal("8"))
                self.assertEqual(overflow.used_amount, Decimal("2"))

    def test_stale_revision_is_retried_without_double_counting(self):
        bucket = create_bucket(self.customer, "INCL", "100")
        calls: list[int] = []

        def mutate(obj: UsageBucket) -> tuple[Decimal, bool]:
            calls.append(obj.revision)
            if len(calls) == 1:
                # Another writer commits between the lock and the guarded write
                UsageBucket.all_objects.filter(pk=obj.pk).update(revision=F("revision") + 1)
            obj.used_amount += Decimal("5")
            return Decimal("5"), True

        updated, absorbed = self.engine._locked_update(UsageBucket, bucket.pk, mutate)

        bucket.refresh_from_db()
        self.assertEqual(calls, [0, 1])
        self.assertEqual(absorbed, Decimal("5"))
        self.assertEqual(bucket.used_amount, Decimal("5"))
        self.assertEqual(bucket.revision, 2)
        self.assertEqual(updated.revision, 2)

    def test_revision_that_keeps_moving_gives_up(self):
        bucket = create_bucket(self.customer, "INCL", "100")

        def mutate(obj: UsageBucket) -> tuple[None, bool]:
            UsageBucket.all_objects.filter(pk=obj.pk).update(revision=F("revision") + 1)
            obj.used_amount += Decimal("5")
            return None, True

        with self.assertRaises(ConcurrentAllocationError) as ctx:
            self.engine._locked_update(UsageBucket, bucket.pk, mutate)

        bucket.refresh_from_db()
        self.assertEqual(ctx.exception.attempts, config.ALLOCATION_MAX_RETRIES)
        self.assertEqual(bucket.used_amount, Decimal("0"))


@skipUnless(connection.vendor == "postgresql", "row locks need PostgreSQL")
class ConcurrentAllocationTestCase(TransactionTestCase):
    """Racing events on one bucket never lose an update."""

    def test_parallel_allocations_are_serialized(self):
        customer = Customer.objects.create(name="Acme")
        bucket = create_bucket(customer, "SHARED", "1000")
        engine = AllocationEngine(clock=FixedClock(NOW))
        errors: list[Exception] = []

        def worker():
            try:
                for _ in range(10):
                    engine.allocate(
                        AllocationRequest(
                            client_id=customer.pk, usage_type="voice_minutes", quantity=Decimal("1"), timestamp=NOW
                        )
                    )
            except Exception as e:  # noqa: BLE001
                errors.append(e)
            finally:
                connection.close()

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        bucket.refresh_from_db()
        self.assertEqual(errors, [])
        self.assertEqual(bucket.used_amount, Decimal("40"))
        self.assertEqual(bucket.revision, 40)
