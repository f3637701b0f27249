# ===============================================================================
# USAGE CONFIGURATION PARSING TEST SUITE
# ===============================================================================
"""
Tests for the JSON-backed configuration structs: time and location
restrictions, rate tables, volume discounts, client criteria and alert
business hours.
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal

from django.core.exceptions import ValidationError
from django.test import SimpleTestCase

from apps.billing.interfaces import ClientAttributes
from apps.billing.usage_config import (
    BusinessHours,
    ClientCriteria,
    GeographicRates,
    HourWindow,
    LocationRestrictions,
    TimeBasedRates,
    TimeRestrictions,
    parse_volume_discounts,
)


def at(day: int, hour: int) -> datetime:
    return datetime(2025, 3, day, hour, 0, tzinfo=UTC)


class TimeRestrictionsTestCase(SimpleTestCase):
    """When pools and buckets accept usage."""

    def test_empty_config_is_unrestricted(self):
        restrictions = TimeRestrictions.from_json({})

        self.assertTrue(restrictions.is_unrestricted)
        self.assertIsNone(restrictions.violation(at(12, 3)))

    def test_unknown_keys_rejected(self):
        with self.assertRaises(ValidationError):
            TimeRestrictions.from_json({"allowed_hours": [9, 17]})

    def test_peak_only_and_off_peak_only_conflict(self):
        with self.assertRaises(ValidationError):
            TimeRestrictions.from_json({"peak_only": True, "off_peak_only": True})

    def test_window_wrapping_midnight(self):
        restrictions = TimeRestrictions.from_json({"allowed_windows": [{"start": 22, "end": 6}]})

        self.assertTrue(restrictions.allows(at(12, 23)))
        self.assertTrue(restrictions.allows(at(12, 2)))
        self.assertFalse(restrictions.allows(at(12, 12)))

    def test_blackout_period(self):
        restrictions = TimeRestrictions.from_json(
            {"blackout_periods": [{"start": "2025-03-12T00:00:00+00:00", "end": "2025-03-12T23:59:59+00:00"}]}
        )

        self.assertIn("blackout", restrictions.violation(at(12, 10)))
        self.assertIsNone(restrictions.violation(at(13, 10)))

    def test_peak_only_uses_default_peak_hours(self):
        restrictions = TimeRestrictions.from_json({"peak_only": True})

        self.assertTrue(restrictions.allows(at(12, 8)))
        self.assertFalse(restrictions.allows(at(12, 18)))

    def test_empty_hour_window_rejected(self):
        with self.assertRaises(ValidationError):
            HourWindow(9, 9)
        with self.assertRaises(ValidationError):
            HourWindow.from_json({"start": 9})


class LocationRestrictionsTestCase(SimpleTestCase):
    """Where usage may originate and terminate."""

    def test_origin_outside_allowed_countries(self):
        restrictions = LocationRestrictions.from_json({"allowed_countries": ["ro", "md"]})

        self.assertIsNone(restrictions.violation("RO", "DE"))
        self.assertIn("not an allowed country", restrictions.violation("DE", "RO"))

    def test_restricted_destination(self):
        restrictions = LocationRestrictions.from_json({"restricted_destinations": ["CU"]})

        self.assertIn("restricted", restrictions.violation("RO", "cu"))

    def test_roaming_behaviors(self):
        blocked = LocationRestrictions.from_json({"roaming_behavior": "blocked"})
        charged = LocationRestrictions.from_json({"roaming_behavior": "charged"})

        self.assertEqual(blocked.violation("RO", "RO", is_roaming=True), "roaming usage is blocked")
        self.assertIsNone(charged.violation("RO", "RO", is_roaming=True))
        self.assertTrue(charged.charges_roaming(True))

    def test_invalid_roaming_behavior(self):
        with self.assertRaises(ValidationError):
            LocationRestrictions.from_json({"roaming_behavior": "sometimes"})

    def test_country_both_allowed_and_restricted(self):
        with self.assertRaises(ValidationError):
            LocationRestrictions.from_json({"allowed_countries": ["RO"], "restricted_destinations": ["RO"]})


class RateTableTestCase(SimpleTestCase):
    """Geographic rates, time-based rates and volume discounts."""

    def test_geographic_rates_reject_bad_country_code(self):
        with self.assertRaises(ValidationError):
            GeographicRates.from_json({"ROU": "1.5"})

    def test_geographic_rates_reject_negative_multiplier(self):
        with self.assertRaises(ValidationError):
            GeographicRates.from_json({"RO": "-1"})

    def test_time_rates_default_peak_window(self):
        rates = TimeBasedRates.from_json({"peak_multiplier": "2", "off_peak_multiplier": "0.5"})

        self.assertEqual(rates.multiplier_for(at(12, 8)), ("peak", Decimal("2")))
        self.assertEqual(rates.multiplier_for(at(12, 18)), ("off_peak", Decimal("0.5")))

    def test_holiday_multiplier_beats_weekday(self):
        rates = TimeBasedRates.from_json(
            {"peak_multiplier": "2", "holiday_multiplier": "0.25", "holidays": ["2025-03-12"]}
        )

        self.assertEqual(rates.multiplier_for(at(12, 10)), ("holiday", Decimal("0.25")))
        self.assertEqual(rates.holidays, (date(2025, 3, 12),))

    def test_holiday_without_multiplier_uses_weekend_rate(self):
        rates = TimeBasedRates.from_json({"weekend_multiplier": "0.7", "holidays": ["2025-03-12"]})

        self.assertEqual(rates.multiplier_for(at(12, 10)), ("weekend", Decimal("0.7")))

    def test_empty_time_rates_parse_to_none(self):
        self.assertIsNone(TimeBasedRates.from_json({}))

    def test_volume_discounts_must_be_a_list(self):
        with self.assertRaises(ValidationError):
            parse_volume_discounts({"min_usage": "10", "discount_percentage": "5"})

    def test_volume_discount_over_hundred_percent(self):
        with self.assertRaises(ValidationError):
            parse_volume_discounts([{"min_usage": "10", "discount_percentage": "150"}])

    def test_volume_discounts_keep_stored_order(self):
        discounts = parse_volume_discounts(
            [{"min_usage": "1000", "discount_percentage": "10"}, {"min_usage": "100", "discount_percentage": "2"}]
        )

        self.assertEqual([d.min_usage for d in discounts], [Decimal("1000"), Decimal("100")])


class ClientCriteriaTestCase(SimpleTestCase):
    """Group-scope predicates over client attributes."""

    def setUp(self):
        self.attributes = ClientAttributes(
            client_id=1,
            customer_type="company",
            country_code="RO",
            industry="Telecom",
            account_age_days=400,
            tags=("partner", "reseller"),
        )

    def test_empty_criteria_matches_nobody(self):
        self.assertFalse(ClientCriteria.from_json({}).matches(self.attributes))

    def test_all_predicates_must_hold(self):
        criteria = ClientCriteria.from_json(
            {"customer_types": ["company"], "countries": ["ro"], "industries": ["telecom"], "tags": ["partner"]}
        )

        self.assertTrue(criteria.matches(self.attributes))

    def test_missing_tag_fails(self):
        criteria = ClientCriteria.from_json({"tags": ["partner", "vip"]})

        self.assertFalse(criteria.matches(self.attributes))

    def test_minimum_account_age(self):
        self.assertTrue(ClientCriteria.from_json({"min_account_age_days": 365}).matches(self.attributes))
        self.assertFalse(ClientCriteria.from_json({"min_account_age_days": 500}).matches(self.attributes))

    def test_invalid_criteria_rejected(self):
        with self.assertRaises(ValidationError):
            ClientCriteria.from_json({"min_account_age_days": "soon"})
        with self.assertRaises(ValidationError):
            ClientCriteria.from_json({"regions": ["EU"]})


class BusinessHoursTestCase(SimpleTestCase):
    """Alert notification schedules."""

    def test_weekday_window(self):
        hours = BusinessHours.from_json({"monday": {"start": 9, "end": 17}})

        self.assertTrue(hours.allows(at(10, 10), UTC))
        self.assertFalse(hours.allows(at(10, 18), UTC))
        self.assertFalse(hours.allows(at(11, 10), UTC))

    def test_no_days_allows_everything(self):
        self.assertTrue(BusinessHours.from_json({}).allows(at(15, 3), UTC))

    def test_unknown_weekday_rejected(self):
        with self.assertRaises(ValidationError):
            BusinessHours.from_json({"funday": {"start": 9, "end": 17}})

    def test_round_trips_through_json(self):
        hours = BusinessHours.from_json({"tue": [8, 12]})

        self.assertEqual(hours.to_json(), {"tuesday": {"start": 8, "end": 12}})
