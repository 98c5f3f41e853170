"""
Subscription Service for SubShare Platform
Creation of term subscriptions after a successful credit debit, purchase
eligibility checks and term date arithmetic shared with renewals.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from dateutil.relativedelta import relativedelta
from django.db import DatabaseError, transaction
from django.utils import timezone

from apps.common.constants import PURCHASE_NOT_ALLOWED, SUBSCRIPTION_CREATE_FAILED
from apps.common.types import BusinessError, EligibilityError, Err, InfrastructureError, Ok, Result
from apps.common.validators import log_security_event

from .config import get_renewal_lead_days
from .pricing import TermPricing
from .subscription_models import Subscription

logger = logging.getLogger(__name__)


# ===============================================================================
# TERM DATES
# ===============================================================================


@dataclass(frozen=True)
class TermDates:
    term_start_at: datetime
    term_end_at: datetime
    renewal_date: datetime


def compute_term_dates(start: datetime, term_months: int, lead_days: int | None = None) -> TermDates:
    """
    Calendar-month term starting at ``start``.

    Month arithmetic clamps to the last day of shorter months (Jan 31 + 1 month
    is Feb 28/29). The renewal date falls ``lead_days`` before the end.
    """
    months = max(1, int(term_months))
    lead = get_renewal_lead_days() if lead_days is None else max(0, lead_days)
    end = start + relativedelta(months=months)
    return TermDates(term_start_at=start, term_end_at=end, renewal_date=end - timedelta(days=lead))


# ===============================================================================
# SUBSCRIPTION SERVICE
# ===============================================================================


class SubscriptionService:
    """
    Subscription store used by the purchase orchestrator.

    Never touches credits; callers create a subscription only after the debit
    committed, and compensate if creation fails.
    """

    def __init__(self, using: str = "default"):
        self.using = using

    def can_purchase_subscription(self, user: Any, product: Any, variant: Any = None) -> Result[None, EligibilityError]:
        """Product and variant must be live and the user under the per-product limit."""
        if not product.is_active or (variant is not None and not variant.is_active):
            return Err(EligibilityError(PURCHASE_NOT_ALLOWED, "This product is not available for purchase"))

        if product.max_subscriptions:
            active_count = (
                Subscription.objects.using(self.using).filter(user=user, product=product, status="active").count()
            )
            if active_count >= product.max_subscriptions:
                return Err(
                    EligibilityError(
                        PURCHASE_NOT_ALLOWED,
                        f"You already have the maximum of {product.max_subscriptions} active subscriptions for this product",
                    )
                )
        return Ok(None)

    def create(  # noqa: PLR0913
        self,
        user: Any,
        *,
        product: Any,
        pricing: TermPricing,
        currency: str,
        variant: Any = None,
        order: Any = None,
        auto_renew: bool = False,
        renewal_method: str = "credits",
        status_reason: str = "",
        now: datetime | None = None,
    ) -> Result[Subscription, BusinessError]:
        """
        Create an active subscription carrying the price snapshot.

        Args:
            pricing: Term pricing the user paid; renewals recompute from it
            auto_renew: When set, ``next_billing_at`` is the renewal date
        """
        now = now or timezone.now()
        dates = compute_term_dates(now, pricing.term_months)

        try:
            with transaction.atomic(using=self.using):
                subscription = Subscription.objects.using(self.using).create(
                    user=user,
                    order=order,
                    product=product,
                    variant=variant,
                    status="active",
                    status_reason=status_reason,
                    currency=currency,
                    base_price_cents=pricing.base_price_cents,
                    term_months=pricing.term_months,
                    discount_percent=pricing.discount_percent,
                    price_cents=pricing.total_price_cents,
                    term_start_at=dates.term_start_at,
                    term_end_at=dates.term_end_at,
                    renewal_date=dates.renewal_date,
                    next_billing_at=dates.renewal_date if auto_renew else None,
                    auto_renew=auto_renew,
                    renewal_method=renewal_method,
                )
        except DatabaseError:
            logger.exception(f"🔥 [Subscription] Failed to create subscription for user {user.pk}")
            return Err(BusinessError(SUBSCRIPTION_CREATE_FAILED, "Subscription could not be created"))

        log_security_event(
            "subscription_created",
            {
                "subscription_id": str(subscription.id),
                "user_id": user.pk,
                "product_id": str(product.pk),
                "term_months": pricing.term_months,
                "price_cents": pricing.total_price_cents,
                "auto_renew": auto_renew,
            },
        )
        logger.info(
            f"✅ [Subscription] Created {subscription.id} for user {user.pk} "
            f"({pricing.term_months}m, ends {dates.term_end_at:%Y-%m-%d})"
        )
        return Ok(subscription)

    def set_auto_renew(self, user: Any, subscription_id: Any, enabled: bool) -> Result[Subscription, BusinessError]:
        """Toggle auto-renew; the next billing date follows the renewal date."""
        try:
            with transaction.atomic(using=self.using):
                subscription = (
                    Subscription.objects.using(self.using)
                    .select_for_update()
                    .filter(pk=subscription_id, user=user)
                    .first()
                )
                if subscription is None or not subscription.is_active:
                    return Err(EligibilityError(PURCHASE_NOT_ALLOWED, "Subscription is not active"))

                subscription.auto_renew = enabled
                subscription.next_billing_at = subscription.renewal_date if enabled else None
                subscription.save(using=self.using, update_fields=["auto_renew", "next_billing_at", "updated_at"])
        except DatabaseError:
            logger.exception(f"🔥 [Subscription] Failed to update auto-renew for {subscription_id}")
            return Err(InfrastructureError())

        logger.info(f"🔄 [Subscription] Auto-renew {'enabled' if enabled else 'disabled'} for {subscription.id}")
        return Ok(subscription)

    def request_cancellation(
        self, user: Any, subscription_id: Any, now: datetime | None = None
    ) -> Result[Subscription, BusinessError]:
        """Stop future renewals; access lasts until the current term ends."""
        now = now or timezone.now()
        try:
            with transaction.atomic(using=self.using):
                subscription = (
                    Subscription.objects.using(self.using)
                    .select_for_update()
                    .filter(pk=subscription_id, user=user)
                    .first()
                )
                if subscription is None or not subscription.is_active:
                    return Err(EligibilityError(PURCHASE_NOT_ALLOWED, "Subscription is not active"))

                if subscription.cancellation_requested_at is None:
                    subscription.cancellation_requested_at = now
                subscription.auto_renew = False
                subscription.next_billing_at = None
                subscription.save(
                    using=self.using,
                    update_fields=["cancellation_requested_at", "auto_renew", "next_billing_at", "updated_at"],
                )
        except DatabaseError:
            logger.exception(f"🔥 [Subscription] Failed to request cancellation for {subscription_id}")
            return Err(InfrastructureError())

        logger.info(f"🛑 [Subscription] Cancellation requested for {subscription.id}")
        return Ok(subscription)
