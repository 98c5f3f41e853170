# ===============================================================================
# PYTEST CONFIGURATION FOR SUBSHARE PLATFORM
# ===============================================================================
"""
Global test configuration for SubShare Platform.

Test Structure:
- tests/ mirrors apps/ structure for app-specific tests
- Naming convention: test_{app}_{feature}.py
- Shared object builders live in tests/factories/

Test Discovery:
- Run specific app tests: pytest tests/billing/
- Run all tests: pytest tests/
- Row-lock concurrency tests run only against PostgreSQL: USE_POSTGRES=true pytest
"""

import os

import django


def pytest_configure():
    """Configure Django settings for pytest"""
    os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings.test")

    # Configure Django
    django.setup()


# ===============================================================================
# PYTEST FIXTURES
# ===============================================================================

import pytest  # noqa: E402
from django.contrib.auth import get_user_model  # noqa: E402

from tests.factories.catalog_factories import CatalogFixture, create_catalog  # noqa: E402

User = get_user_model()


@pytest.fixture
def user():
    """Create test user"""
    return User.objects.create_user(username="testuser", email="test@subshare.test", password="testpass123")


@pytest.fixture
def other_user():
    return User.objects.create_user(username="otheruser", email="other@subshare.test", password="testpass123")


@pytest.fixture
def admin_user():
    """Create admin user for tests"""
    return User.objects.create_user(
        username="admin_test",
        email="admin@subshare.test",
        password="testpass123",
        is_staff=True,
        is_superuser=True,
    )


@pytest.fixture
def catalog() -> CatalogFixture:
    """Streaming product with a 10.00 USD/month variant and 1/3/12-month terms"""
    return create_catalog()
