# ===============================================================================
# CAPACITY STATE MACHINE TEST SUITE
# ===============================================================================
"""
Tests for capacity arithmetic, status derivation and period boundaries.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

from django.test import SimpleTestCase

from apps.billing import capacity
from apps.billing.capacity import CapacityState


class CapacityArithmeticTestCase(SimpleTestCase):
    """Absorption, ceilings and utilization."""

    def test_absorb_splits_amount_against_remaining(self):
        self.assertEqual(capacity.absorb(Decimal("10"), Decimal("7"), Decimal("5")), (Decimal("3"), Decimal("2")))
        self.assertEqual(capacity.absorb(Decimal("10"), Decimal("0"), Decimal("5")), (Decimal("5"), Decimal("0")))
        self.assertEqual(capacity.absorb(Decimal("10"), Decimal("12"), Decimal("5")), (Decimal("0"), Decimal("5")))

    def test_overallocation_ceiling(self):
        self.assertEqual(capacity.overallocation_ceiling(Decimal("100"), True, Decimal("20")), Decimal("120"))
        self.assertEqual(capacity.overallocation_ceiling(Decimal("100"), False, Decimal("20")), Decimal("100"))

    def test_utilization_percentage(self):
        self.assertEqual(capacity.utilization_percentage(Decimal("100"), Decimal("95")), Decimal("95.00"))
        self.assertEqual(capacity.utilization_percentage(Decimal("3"), Decimal("1")), Decimal("33.33"))
        self.assertEqual(capacity.utilization_percentage(Decimal("0"), Decimal("1")), Decimal("100"))
        self.assertEqual(capacity.utilization_percentage(Decimal("0"), Decimal("0")), Decimal("0"))

    def test_rollover_amount(self):
        self.assertEqual(capacity.rollover_amount(Decimal("60"), Decimal("50")), Decimal("30"))
        self.assertEqual(capacity.rollover_amount(Decimal("60"), Decimal("150")), Decimal("60"))
        self.assertEqual(capacity.rollover_amount(Decimal("0"), Decimal("50")), Decimal("0"))


class StatusDerivationTestCase(SimpleTestCase):
    """active / depleted / suspended / expired."""

    def setUp(self):
        self.now = datetime(2025, 3, 12, 10, 0, tzinfo=UTC)

    def test_depleted_when_nothing_remains(self):
        state = CapacityState(limit=Decimal("10"), used=Decimal("10"))

        self.assertEqual(capacity.derive_status(state, self.now), capacity.STATUS_DEPLETED)

    def test_restored_capacity_reactivates(self):
        state = CapacityState(limit=Decimal("10"), used=Decimal("4"), status=capacity.STATUS_DEPLETED)

        self.assertEqual(capacity.derive_status(state, self.now), capacity.STATUS_ACTIVE)

    def test_suspension_is_sticky(self):
        state = CapacityState(limit=Decimal("10"), used=Decimal("0"), status=capacity.STATUS_SUSPENDED)

        self.assertEqual(capacity.derive_status(state, self.now), capacity.STATUS_SUSPENDED)

    def test_expiry_is_terminal(self):
        expired = CapacityState(limit=Decimal("10"), used=Decimal("0"), status=capacity.STATUS_EXPIRED)
        past_due = CapacityState(
            limit=Decimal("10"), used=Decimal("0"), status=capacity.STATUS_SUSPENDED,
            expires_at=datetime(2025, 3, 1, tzinfo=UTC),
        )

        self.assertEqual(capacity.derive_status(expired, self.now), capacity.STATUS_EXPIRED)
        self.assertEqual(capacity.derive_status(past_due, self.now), capacity.STATUS_EXPIRED)


class PeriodTestCase(SimpleTestCase):
    """Reset boundaries and billing cycles."""

    def setUp(self):
        self.now = datetime(2025, 3, 15, 10, 0, tzinfo=UTC)

    def test_next_reset_steps_from_previous_boundary(self):
        previous = datetime(2025, 1, 1, tzinfo=UTC)

        self.assertEqual(capacity.next_reset_after("monthly", previous, self.now), datetime(2025, 4, 1, tzinfo=UTC))

    def test_future_boundary_returned_unchanged(self):
        future = datetime(2025, 3, 20, tzinfo=UTC)

        self.assertEqual(capacity.next_reset_after("weekly", future, self.now), future)

    def test_first_reset_is_one_period_out(self):
        self.assertEqual(capacity.next_reset_after("daily", None, self.now), datetime(2025, 3, 16, 10, 0, tzinfo=UTC))

    def test_billing_cycle_resets_on_first_of_next_month(self):
        self.assertEqual(
            capacity.next_reset_after("billing_cycle", None, self.now), datetime(2025, 4, 1, tzinfo=UTC)
        )

    def test_unknown_frequency(self):
        with self.assertRaises(ValueError):
            capacity.next_reset_after("fortnightly", None, self.now)

    def test_advance_cycle_from_stored_window(self):
        start, end = capacity.advance_cycle(
            "monthly", datetime(2025, 1, 1, tzinfo=UTC), datetime(2025, 2, 1, tzinfo=UTC), self.now
        )

        self.assertEqual(start, datetime(2025, 3, 1, tzinfo=UTC))
        self.assertEqual(end, datetime(2025, 4, 1, tzinfo=UTC))

    def test_advance_cycle_without_window_starts_now(self):
        start, end = capacity.advance_cycle("quarterly", None, None, self.now)

        self.assertEqual(start, self.now)
        self.assertEqual(end, datetime(2025, 6, 15, 10, 0, tzinfo=UTC))

    def test_rolled_counter(self):
        last = datetime(2025, 3, 14, 23, 0, tzinfo=UTC)

        self.assertEqual(capacity.rolled_counter(Decimal("5"), last, self.now, capacity.GRANULARITY_DAY), Decimal("0"))
        self.assertEqual(
            capacity.rolled_counter(Decimal("5"), last, self.now, capacity.GRANULARITY_WEEK), Decimal("5")
        )
        self.assertEqual(
            capacity.rolled_counter(Decimal("5"), last, self.now, capacity.GRANULARITY_MONTH), Decimal("5")
        )
