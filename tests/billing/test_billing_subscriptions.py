# ===============================================================================
# SUBSCRIPTION SERVICE TESTS
# ===============================================================================

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from apps.billing.models import Subscription
from apps.billing.pricing import compute_term_pricing
from apps.billing.subscription_service import SubscriptionService, compute_term_dates
from tests.factories.billing_factories import SubscriptionCreationRequest, create_subscription
from tests.factories.catalog_factories import create_catalog


class TestComputeTermDates:
    def test_twelve_month_term_with_default_lead(self):
        start = datetime(2026, 1, 15, 12, 0, tzinfo=UTC)
        dates = compute_term_dates(start, 12)
        assert dates.term_end_at == datetime(2027, 1, 15, 12, 0, tzinfo=UTC)
        assert dates.renewal_date == datetime(2027, 1, 8, 12, 0, tzinfo=UTC)

    def test_month_end_is_clamped(self):
        dates = compute_term_dates(datetime(2026, 1, 31, tzinfo=UTC), 1, lead_days=0)
        assert dates.term_end_at == datetime(2026, 2, 28, tzinfo=UTC)

    def test_custom_lead_days(self):
        dates = compute_term_dates(datetime(2026, 3, 1, tzinfo=UTC), 1, lead_days=3)
        assert dates.renewal_date == datetime(2026, 3, 29, tzinfo=UTC)


@pytest.mark.django_db
class TestSubscriptionService:
    def test_create_stores_snapshot_and_dates(self, user, catalog):
        pricing = compute_term_pricing(1000, 12, 10)
        now = datetime(2026, 5, 1, tzinfo=UTC)

        subscription = (
            SubscriptionService()
            .create(
                user,
                product=catalog.product,
                variant=catalog.variant,
                pricing=pricing,
                currency="USD",
                auto_renew=True,
                status_reason="paid_with_credits",
                now=now,
            )
            .unwrap()
        )

        assert subscription.status == "active"
        assert subscription.base_price_cents == 1000
        assert subscription.term_months == 12
        assert subscription.discount_percent == Decimal("10")
        assert subscription.price_cents == 10800
        assert subscription.term_end_at == datetime(2027, 5, 1, tzinfo=UTC)
        assert subscription.next_billing_at == subscription.renewal_date == datetime(2027, 4, 24, tzinfo=UTC)
        assert subscription.renewal_method == "credits"

    def test_create_without_auto_renew_has_no_billing_date(self, user, catalog):
        subscription = (
            SubscriptionService()
            .create(user, product=catalog.product, pricing=compute_term_pricing(1000, 1, 0), currency="USD")
            .unwrap()
        )
        assert subscription.next_billing_at is None

    def test_can_purchase_checks_active_and_limit(self, user):
        catalog = create_catalog(max_subscriptions=1)
        service = SubscriptionService()
        assert service.can_purchase_subscription(user, catalog.product, catalog.variant).is_ok()

        create_subscription(SubscriptionCreationRequest(user=user, product=catalog.product))
        result = service.can_purchase_subscription(user, catalog.product, catalog.variant)
        assert result.unwrap_err().code == "purchase_not_allowed"

    def test_can_purchase_rejects_inactive_variant(self, user, catalog):
        catalog.variant.is_active = False
        result = SubscriptionService().can_purchase_subscription(user, catalog.product, catalog.variant)
        assert result.unwrap_err().code == "purchase_not_allowed"

    def test_set_auto_renew_follows_renewal_date(self, user, catalog):
        subscription = create_subscription(
            SubscriptionCreationRequest(user=user, product=catalog.product, auto_renew=False)
        )
        service = SubscriptionService()

        enabled = service.set_auto_renew(user, subscription.id, True).unwrap()
        assert enabled.next_billing_at == enabled.renewal_date

        disabled = service.set_auto_renew(user, subscription.id, False).unwrap()
        assert disabled.next_billing_at is None
        assert disabled.auto_renew is False

    def test_set_auto_renew_rejects_other_users(self, user, other_user, catalog):
        subscription = create_subscription(SubscriptionCreationRequest(user=user, product=catalog.product))
        result = SubscriptionService().set_auto_renew(other_user, subscription.id, False)
        assert result.is_err()

    def test_request_cancellation_stops_renewals(self, user, catalog):
        subscription = create_subscription(SubscriptionCreationRequest(user=user, product=catalog.product))
        now = subscription.term_start_at + timedelta(days=3)

        cancelled = SubscriptionService().request_cancellation(user, subscription.id, now=now).unwrap()

        assert cancelled.cancellation_requested_at == now
        assert cancelled.auto_renew is False
        assert cancelled.next_billing_at is None
        assert Subscription.objects.get(pk=subscription.pk).status == "active"
