# ===============================================================================
# TEST FACTORIES FOR BILLING
# ===============================================================================

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from django.utils import timezone

from apps.billing.credit_service import CreditService
from apps.billing.models import CreditBalance, Subscription
from apps.billing.pricing import compute_term_pricing
from apps.billing.subscription_service import compute_term_dates
from apps.products.models import Product, ProductVariant

# ===============================================================================
# SUBSCRIPTION FACTORY PARAMETER OBJECTS
# ===============================================================================


@dataclass
class SubscriptionCreationRequest:
    """Parameter object for subscription creation"""

    user: object
    product: Product
    variant: ProductVariant | None = None
    base_price_cents: int = 1000
    term_months: int = 1
    discount_percent: Decimal = Decimal("0")
    currency: str = "USD"
    auto_renew: bool = True
    renewal_method: str = "credits"
    term_start_at: datetime | None = None
    status: str = "active"


def fund_user(user, amount_cents: int) -> CreditBalance:
    """Deposit credits through the ledger so the transaction chain stays valid."""
    result = CreditService().deposit(user, amount_cents, description="Test top-up")
    assert result.is_ok(), result
    return result.unwrap().balance


def create_subscription(request: SubscriptionCreationRequest) -> Subscription:
    """Create a subscription row directly, bypassing the purchase flow."""
    start = request.term_start_at or timezone.now()
    dates = compute_term_dates(start, request.term_months)
    pricing = compute_term_pricing(request.base_price_cents, request.term_months, request.discount_percent)
    return Subscription.objects.create(
        user=request.user,
        product=request.product,
        variant=request.variant,
        status=request.status,
        currency=request.currency,
        base_price_cents=request.base_price_cents,
        term_months=request.term_months,
        discount_percent=request.discount_percent,
        price_cents=pricing.total_price_cents,
        term_start_at=dates.term_start_at,
        term_end_at=dates.term_end_at,
        renewal_date=dates.renewal_date,
        next_billing_at=dates.renewal_date if request.auto_renew else None,
        auto_renew=request.auto_renew,
        renewal_method=request.renewal_method,
    )


def create_expiring_subscription(request: SubscriptionCreationRequest, days_left: int) -> Subscription:
    """Subscription whose term ends ``days_left`` days (plus an hour) from now."""
    subscription = create_subscription(request)
    end = timezone.now() + timedelta(days=days_left, hours=1)
    subscription.term_end_at = end
    subscription.term_start_at = end - timedelta(days=30 * request.term_months)
    subscription.renewal_date = end - timedelta(days=7)
    subscription.save()
    return subscription
