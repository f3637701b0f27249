# ===============================================================================
# CUSTOMER MODELS TEST SUITE
# ===============================================================================
"""
Tests for the customer record, contract memberships, soft delete cascade and
the directory the pricing rule selector reads client attributes from.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

import pytest
from django.test import TestCase

from apps.billing.bucket_models import UsageBucket
from apps.billing.interfaces import CustomerDirectory, FixedClock
from apps.billing.pool_models import UsagePool
from apps.customers.models import Customer, CustomerContract

NOW = datetime(2025, 3, 12, 10, 0, tzinfo=UTC)
LAUNCH = datetime(2024, 1, 1, tzinfo=UTC)


class CustomerModelTestCase(TestCase):
    """Display names, account age and contract windows."""

    def test_company_display_name_prefers_company_name(self):
        customer = Customer(name="Ion Popescu", customer_type="company", company_name="Popescu SRL")

        self.assertEqual(customer.get_display_name(), "Popescu SRL")
        self.assertEqual(str(customer), "Popescu SRL")

    def test_individual_display_name(self):
        customer = Customer(name="Ion Popescu", customer_type="individual", company_name="Ignored SRL")

        self.assertEqual(customer.get_display_name(), "Ion Popescu")

    def test_account_age_days(self):
        customer = Customer(name="Acme", created_at=LAUNCH)

        self.assertEqual(customer.account_age_days(NOW), 436)
        self.assertEqual(customer.account_age_days(datetime(2023, 1, 1, tzinfo=UTC)), 0)

    def test_contract_window(self):
        customer = Customer.objects.create(name="Acme")
        contract = CustomerContract.objects.create(
            customer=customer,
            contract_reference="CTR-1",
            starts_at=LAUNCH,
            ends_at=datetime(2025, 1, 1, tzinfo=UTC),
        )

        self.assertTrue(contract.is_current(datetime(2024, 6, 1, tzinfo=UTC)))
        self.assertFalse(contract.is_current(NOW))
        self.assertFalse(contract.is_current(datetime(2023, 6, 1, tzinfo=UTC)))

    def test_inactive_contract_is_never_current(self):
        customer = Customer.objects.create(name="Acme")
        contract = CustomerContract.objects.create(
            customer=customer, contract_reference="CTR-1", starts_at=LAUNCH, is_active=False
        )

        self.assertFalse(contract.is_current(NOW))


class CustomerSoftDeleteTestCase(TestCase):
    """Soft deleting a customer soft deletes its capacity."""

    def test_soft_delete_cascades_to_pools_and_buckets(self):
        customer = Customer.objects.create(name="Acme")
        pool = UsagePool.objects.create(
            code="SHARED", name="Shared", customer=customer, usage_type="voice_minutes", total_capacity=Decimal("100")
        )
        bucket = UsageBucket.objects.create(
            code="INCL", name="Included", customer=customer, usage_type="voice_minutes", bucket_capacity=Decimal("10")
        )

        customer.soft_delete()

        self.assertFalse(Customer.objects.filter(pk=customer.pk).exists())
        self.assertTrue(UsagePool.all_objects.get(pk=pool.pk).is_deleted)
        self.assertTrue(UsageBucket.all_objects.get(pk=bucket.pk).is_deleted)

    def test_restore(self):
        customer = Customer.objects.create(name="Acme")
        customer.soft_delete()

        customer.restore()

        self.assertTrue(Customer.objects.filter(pk=customer.pk).exists())


@pytest.mark.django_db
def test_directory_reports_client_attributes(customer):
    Customer.objects.filter(pk=customer.pk).update(created_at=LAUNCH)
    directory = CustomerDirectory(clock=FixedClock(NOW))

    attributes = directory.client_attributes(customer.pk)

    assert attributes.customer_type == "company"
    assert attributes.country_code == "RO"
    assert attributes.industry == "telecom"
    assert attributes.tags == ("partner",)
    assert attributes.account_age_days == 436


@pytest.mark.django_db
def test_directory_unknown_client():
    directory = CustomerDirectory(clock=FixedClock(NOW))

    assert directory.client_attributes(424242) is None
    assert directory.client_attributes("not-an-id") is None


@pytest.mark.django_db
def test_directory_contract_membership(customer):
    CustomerContract.objects.create(customer=customer, contract_reference="CTR-1", starts_at=LAUNCH)
    directory = CustomerDirectory(clock=FixedClock(NOW))

    assert directory.belongs_to_contract(customer.pk, "CTR-1")
    assert not directory.belongs_to_contract(customer.pk, "CTR-2")
    assert not directory.belongs_to_contract(customer.pk, "")
