# ===============================================================================
# PYTEST CONFIGURATION FOR LEDGERLINE PLATFORM
# ===============================================================================
"""
Global test configuration for Ledgerline Platform.

Test Structure:
- tests/ mirrors apps/ structure for app-specific tests
- Naming convention: test_{app}_{feature}.py

Test Discovery:
- Run specific app tests: pytest tests/billing/
- Run all tests: pytest tests/
"""

import os

import django


def pytest_configure():
    """Configure Django settings for pytest"""
    os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings.test')

    # Configure Django
    django.setup()

# ===============================================================================
# PYTEST FIXTURES
# ===============================================================================

import pytest  # noqa: E402
from django.contrib.auth import get_user_model  # noqa: E402

from apps.customers.models import Customer  # noqa: E402

User = get_user_model()


@pytest.fixture
def user():
    """Create test user"""
    return User.objects.create_user(
        username='testuser',
        email='test@ledgerline.example',
        password='testpass123'
    )


@pytest.fixture
def customer():
    """Create test business customer"""
    return Customer.objects.create(
        name='Acme Telecom',
        customer_type='company',
        company_name='Acme Telecom SRL',
        primary_email='billing@acme.example',
        country_code='RO',
        industry='telecom',
        tags=['partner'],
        status='active',
    )
