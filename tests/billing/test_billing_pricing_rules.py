# ===============================================================================
# PRICING RULE SELECTION TEST SUITE
# ===============================================================================
"""
Tests for pricing rule validation, candidate selection across scopes,
layering, application bookkeeping and rule versioning.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal

from django.core.exceptions import ValidationError
from django.test import TestCase

from apps.audit.models import AuditEvent
from apps.billing.interfaces import FixedClock
from apps.billing.pricing_models import PricingRule, PricingRuleApplication, UsageTier
from apps.billing.pricing_service import PricingRuleSelector, PricingRuleService
from apps.billing.usage_exceptions import NoApplicableRule
from apps.customers.models import Customer, CustomerContract

NOW = datetime(2025, 3, 12, 10, 0, tzinfo=UTC)
LAUNCH = datetime(2024, 1, 1, tzinfo=UTC)


def create_rule(code: str, **overrides) -> PricingRule:
    values = {
        "code": code,
        "name": code.title(),
        "usage_type": "voice_minutes",
        "pricing_model": "usage_based",
        "base_rate": Decimal("0.05"),
        "approval_status": "approved",
        "is_active": True,
        "effective_date": LAUNCH,
        "created_at": LAUNCH,
    }
    values.update(overrides)
    return PricingRule.objects.create(**values)


class PricingRuleValidationTestCase(TestCase):
    """Rules are validated on every save."""

    def setUp(self):
        self.customer = Customer.objects.create(name="Acme", customer_type="company")

    def test_active_rule_must_be_approved(self):
        with self.assertRaises(ValidationError) as cm:
            create_rule("DRAFT", approval_status="draft")

        self.assertIn("is_active", cm.exception.message_dict)

    def test_client_scope_needs_customer(self):
        with self.assertRaises(ValidationError):
            create_rule("CLIENT", scope="client")

    def test_contract_scope_needs_reference(self):
        with self.assertRaises(ValidationError):
            create_rule("CONTRACT", scope="contract")

    def test_group_scope_needs_criteria(self):
        with self.assertRaises(ValidationError):
            create_rule("GROUP", scope="group")

    def test_block_pricing_needs_size_and_rate(self):
        with self.assertRaises(ValidationError) as cm:
            create_rule("BLOCK", pricing_model="block")

        self.assertIn("block_size", cm.exception.message_dict)
        self.assertIn("block_rate", cm.exception.message_dict)

    def test_malformed_adjustment_json_rejected(self):
        with self.assertRaises(ValidationError) as cm:
            create_rule("BAD-TIME", time_based_rates={"peak": "2"})

        self.assertIn("time_based_rates", cm.exception.message_dict)

    def test_tiers_only_on_tiered_rules(self):
        rule = create_rule("FLAT")

        with self.assertRaises(ValidationError):
            UsageTier.objects.create(rule=rule, min_usage=Decimal("0"), rate=Decimal("0.1"))

    def test_overlapping_tiers_rejected(self):
        rule = create_rule("TIERED", pricing_model="tiered")
        UsageTier.objects.create(rule=rule, min_usage=Decimal("0"), max_usage=Decimal("100"), rate=Decimal("0.1"))

        with self.assertRaises(ValidationError):
            UsageTier.objects.create(rule=rule, min_usage=Decimal("50"), max_usage=None, rate=Decimal("0.05"))

    def test_adjacent_tiers_accepted(self):
        rule = create_rule("TIERED", pricing_model="tiered")
        UsageTier.objects.create(rule=rule, min_usage=Decimal("0"), max_usage=Decimal("100"), rate=Decimal("0.1"))
        UsageTier.objects.create(rule=rule, min_usage=Decimal("100"), max_usage=None, rate=Decimal("0.05"))

        self.assertEqual(len(rule.active_tiers()), 2)

    def test_layer_classification(self):
        standard = create_rule("STD")
        promo = create_rule("PROMO", is_promotional=True)
        override = create_rule("OVERRIDE", is_contract_override=True)

        self.assertEqual(standard.layer, "standard")
        self.assertEqual(promo.layer, "promotional")
        self.assertEqual(override.layer, "contract")


class PricingRuleSelectorTestCase(TestCase):
    """Candidate rules across global, client, contract and group scopes."""

    def setUp(self):
        self.customer = Customer.objects.create(
            name="Acme", customer_type="company", country_code="RO", tags=["partner"], created_at=LAUNCH
        )
        self.other = Customer.objects.create(name="Other", customer_type="individual", created_at=LAUNCH)
        self.clock = FixedClock(NOW)
        self.selector = PricingRuleSelector(clock=self.clock)

    def test_lower_priority_number_wins(self):
        create_rule("GLOBAL", rule_priority=100)
        client_rule = create_rule("CLIENT", scope="client", customer=self.customer, rule_priority=10)

        selected = self.selector.select_rule(self.customer.pk, "voice", NOW, usage_type="voice_minutes")

        self.assertEqual(selected, client_rule)

    def test_newest_rule_wins_priority_tie(self):
        create_rule("OLDER", created_at=LAUNCH)
        newer = create_rule("NEWER", created_at=LAUNCH + timedelta(days=30))

        candidates = self.selector.candidate_rules(self.customer.pk, "voice", NOW)

        self.assertEqual(candidates[0], newer)
        self.assertEqual(len(candidates), 2)

    def test_other_clients_rules_excluded(self):
        create_rule("MINE", scope="client", customer=self.other)

        self.assertEqual(self.selector.candidate_rules(self.customer.pk, "voice", NOW), [])

    def test_service_type_filter(self):
        create_rule("SMS-ONLY", service_types=["sms"])
        voice = create_rule("VOICE-ONLY", service_types=["voice"])

        self.assertEqual(self.selector.candidate_rules(self.customer.pk, "voice", NOW), [voice])

    def test_effective_window(self):
        create_rule("EXPIRED", expiry_date=datetime(2025, 1, 1, tzinfo=UTC))
        create_rule("FUTURE", effective_date=datetime(2025, 6, 1, tzinfo=UTC))

        self.assertEqual(self.selector.candidate_rules(self.customer.pk, "voice", NOW), [])

    def test_contract_rules_need_current_membership(self):
        contract_rule = create_rule("CTR", scope="contract", contract_reference="CTR-2025")

        self.assertEqual(self.selector.candidate_rules(self.customer.pk, "voice", NOW), [])

        CustomerContract.objects.create(customer=self.customer, contract_reference="CTR-2025", starts_at=LAUNCH)
        self.assertEqual(self.selector.candidate_rules(self.customer.pk, "voice", NOW), [contract_rule])

    def test_ended_contract_membership_ignored(self):
        create_rule("CTR", scope="contract", contract_reference="CTR-2024")
        CustomerContract.objects.create(
            customer=self.customer,
            contract_reference="CTR-2024",
            starts_at=LAUNCH,
            ends_at=datetime(2024, 12, 31, tzinfo=UTC),
        )

        self.assertEqual(self.selector.candidate_rules(self.customer.pk, "voice", NOW), [])

    def test_scope_criteria_pins_contract(self):
        create_rule("CTR-A", scope="contract", contract_reference="A")
        rule_b = create_rule("CTR-B", scope="contract", contract_reference="B")
        for reference in ("A", "B"):
            CustomerContract.objects.create(customer=self.customer, contract_reference=reference, starts_at=LAUNCH)

        candidates = self.selector.candidate_rules(
            self.customer.pk, "voice", NOW, scope_criteria={"contract_reference": "B"}
        )

        self.assertEqual(candidates, [rule_b])

    def test_group_rule_matches_client_attributes(self):
        group_rule = create_rule("PARTNERS", scope="group", client_criteria={"tags": ["partner"], "countries": ["RO"]})

        self.assertEqual(self.selector.candidate_rules(self.customer.pk, "voice", NOW), [group_rule])
        self.assertEqual(self.selector.candidate_rules(self.other.pk, "voice", NOW), [])

    def test_scope_criteria_overrides_directory_attributes(self):
        vip_rule = create_rule("VIP", scope="group", client_criteria={"tags": ["vip"]})

        candidates = self.selector.candidate_rules(self.other.pk, "voice", NOW, scope_criteria={"tags": ["vip"]})

        self.assertEqual(candidates, [vip_rule])

    def test_no_applicable_rule(self):
        with self.assertRaises(NoApplicableRule) as cm:
            self.selector.select_rule(self.customer.pk, "voice", NOW)

        self.assertEqual(cm.exception.client_id, self.customer.pk)

    def test_layered_rules_contract_then_promotional_then_standard(self):
        standard = create_rule("STD", rule_priority=1)
        promo = create_rule("PROMO", is_promotional=True, rule_priority=50)
        contract = create_rule("CTR", scope="contract", contract_reference="CTR-1", rule_priority=90)
        CustomerContract.objects.create(customer=self.customer, contract_reference="CTR-1", starts_at=LAUNCH)

        layered = self.selector.layered_rules(self.customer.pk, "voice", NOW)

        self.assertEqual(layered, [contract, promo, standard])

    def test_select_layers_keeps_leading_rule_per_layer(self):
        standard = create_rule("STD", rule_priority=1)
        create_rule("STD-LATE", rule_priority=5)
        promo = create_rule("PROMO", is_promotional=True, rule_priority=50)

        heads = self.selector.select_layers(self.customer.pk, "voice", NOW)

        self.assertEqual(heads, [promo, standard])

    def test_select_layers_without_rules(self):
        with self.assertRaises(NoApplicableRule):
            self.selector.select_layers(self.customer.pk, "voice", NOW)


class RuleBookkeepingTestCase(TestCase):
    """Applications, edits, approval and versioning."""

    def setUp(self):
        self.clock = FixedClock(NOW)
        self.selector = PricingRuleSelector(clock=self.clock)
        self.rule = create_rule("VOICE", pricing_model="tiered")
        UsageTier.objects.create(rule=self.rule, min_usage=Decimal("0"), max_usage=Decimal("100"), rate=Decimal("0.1"))

    def test_record_application_is_idempotent(self):
        first = self.selector.record_application(self.rule, Decimal("12.50"), "evt-1")
        second = self.selector.record_application(self.rule, Decimal("12.50"), "evt-1")

        self.rule.refresh_from_db()
        self.assertTrue(first)
        self.assertFalse(second)
        self.assertEqual(self.rule.total_applications, 1)
        self.assertEqual(self.rule.total_revenue_generated, Decimal("12.50"))
        self.assertEqual(self.rule.last_applied_at, NOW)
        self.assertEqual(PricingRuleApplication.objects.count(), 1)

    def test_update_rule_records_change_history(self):
        result = PricingRuleService.update_rule(self.rule, {"base_rate": Decimal("0.07")})

        self.assertTrue(result.is_ok())
        updated = result.unwrap()
        self.assertEqual(updated.change_history[-1]["action"], "updated")
        self.assertIn("base_rate", updated.change_history[-1]["changes"])
        self.assertTrue(AuditEvent.objects.filter(action="pricing_rule_updated").exists())

    def test_update_rule_refuses_bookkeeping_fields(self):
        result = PricingRuleService.update_rule(self.rule, {"total_applications": 99})

        self.assertTrue(result.is_err())
        self.assertIn("total_applications", result.error)

    def test_update_rule_surfaces_validation_errors(self):
        result = PricingRuleService.update_rule(self.rule, {"approval_status": "pending_approval"})

        self.assertTrue(result.is_err())

    def test_approve_draft_rule(self):
        draft = create_rule("DRAFT", approval_status="draft", is_active=False)

        result = PricingRuleService.approve_rule(draft)

        self.assertTrue(result.is_ok())
        approved = result.unwrap()
        self.assertEqual(approved.approval_status, "approved")
        self.assertTrue(approved.is_active)

    def test_supersede_creates_next_version_with_tiers(self):
        result = PricingRuleService.supersede_rule(self.rule, {"base_rate": Decimal("0.02")})

        self.assertTrue(result.is_ok())
        successor = result.unwrap()
        self.rule.refresh_from_db()
        self.assertEqual(successor.version, 2)
        self.assertEqual(successor.code, "VOICE")
        self.assertEqual(successor.tiers.count(), 1)
        self.assertFalse(self.rule.is_active)
        self.assertEqual(self.rule.superseded_by, successor)

    def test_superseded_rule_cannot_be_superseded_again(self):
        PricingRuleService.supersede_rule(self.rule)

        result = PricingRuleService.supersede_rule(self.rule)

        self.assertTrue(result.is_err())
        self.assertIn("already superseded", result.error)
