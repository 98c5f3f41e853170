"""
Subscription renewal service for SubShare Platform.

Charges credits for the next term of a subscription and extends it. The
amount is always recomputed from the subscription's price snapshot. Each
(subscription, cycle end) pair is renewed at most once: a SubscriptionRenewal
row acts as the per-cycle lock.

Flow per subscription:
    acquire cycle lock → debit credits → extend term → queue fulfillment task
A failure after the debit refunds it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, TypedDict

from django.db import DatabaseError, transaction
from django.db.models import Q
from django.db.models.functions import Coalesce
from django.utils import timezone

from apps.common.constants import (
    INVALID_CURRENCY,
    PURCHASE_NOT_ALLOWED,
    REASON_AUTO_RENEW_CREDIT_FAILED,
    REASON_AUTO_RENEWED_CREDITS,
    REASON_MANUAL_RENEWED_CREDITS,
    REASON_TERM_EXPIRED,
)
from apps.common.types import (
    BusinessError,
    EligibilityError,
    Err,
    InfrastructureError,
    Ok,
    Result,
    ValidationError,
)
from apps.common.validators import log_security_event

from .config import (
    get_credits_currency,
    get_fulfillment_due_hours,
    get_manual_renewal_window_days,
    get_renewal_batch_size,
    get_renewal_lookahead_minutes,
    get_renewal_retry_minutes,
)
from .credit_models import CreditTransaction
from .credit_service import CreditService
from .subscription_models import FulfillmentTask, Subscription, SubscriptionRenewal
from .subscription_service import compute_term_dates

logger = logging.getLogger(__name__)

# Subscription fields rewritten when a term is extended
EXTENDED_FIELDS = (
    "term_start_at",
    "term_end_at",
    "renewal_date",
    "next_billing_at",
    "price_cents",
    "status_reason",
)

# ===============================================================================
# TYPE DEFINITIONS
# ===============================================================================


@dataclass(frozen=True)
class RenewalOutcome:
    """What happened to one subscription in a renewal attempt"""

    subscription: Subscription
    status: str  # renewed | skipped
    renewal: SubscriptionRenewal | None = None
    transaction: CreditTransaction | None = None
    reason: str = ""


class RenewalRunResult(TypedDict):
    """Statistics of one renewal sweep"""

    processed: int
    renewed: int
    skipped: int
    failed: int
    errors: list[str]


# ===============================================================================
# RENEWAL SERVICE
# ===============================================================================


class RenewalService:
    """Credit-funded renewals, manual renewals and term expiry."""

    def __init__(self, using: str = "default", credit_service: CreditService | None = None):
        self.using = using
        self.credit_service = credit_service or CreditService(using=using)

    # ===============================================================================
    # CANDIDATES
    # ===============================================================================

    def find_due_renewals(self, now: datetime | None = None, limit: int | None = None) -> list[Subscription]:
        """
        Active auto-renewing credit subscriptions that are due.

        Due means ``next_billing_at`` has passed, or no billing date is set and
        the term ends within the lookahead window.
        """
        now = now or timezone.now()
        limit = limit or get_renewal_batch_size()
        horizon = now + timedelta(minutes=get_renewal_lookahead_minutes())

        return list(
            Subscription.objects.using(self.using)
            .filter(
                status="active",
                auto_renew=True,
                renewal_method="credits",
                cancellation_requested_at__isnull=True,
            )
            .filter(Q(next_billing_at__lte=now) | Q(next_billing_at__isnull=True, term_end_at__lte=horizon))
            .select_related("user", "product")
            .order_by(Coalesce("next_billing_at", "term_end_at"), "id")[:limit]
        )

    # ===============================================================================
    # CYCLE LOCK
    # ===============================================================================

    def acquire_renewal_lock(
        self,
        subscription: Subscription,
        cycle_end_date: datetime,
        amount_cents: int,
        method: str = "credits",
    ) -> SubscriptionRenewal | None:
        """
        Claim the renewal of one cycle.

        A new row, or a failed/canceled one, is claimed and moved to
        ``processing``. A row that is pending, processing or succeeded belongs
        to someone else and ``None`` is returned.
        """
        with transaction.atomic(using=self.using):
            renewal, created = (
                SubscriptionRenewal.objects.using(self.using)
                .select_for_update()
                .get_or_create(
                    subscription=subscription,
                    cycle_end_date=cycle_end_date,
                    defaults={
                        "status": "processing",
                        "method": method,
                        "amount_cents": amount_cents,
                        "currency": subscription.currency,
                        "attempts": 1,
                    },
                )
            )
            if created:
                return renewal

            if renewal.status not in SubscriptionRenewal.RETRYABLE_STATUSES:
                logger.info(
                    f"⏭️ [Renewal] Cycle {cycle_end_date:%Y-%m-%d} of {subscription.id} already {renewal.status}"
                )
                return None

            renewal.status = "processing"
            renewal.amount_cents = amount_cents
            renewal.attempts += 1
            renewal.last_error = ""
            renewal.save(
                using=self.using,
                update_fields=["status", "amount_cents", "attempts", "last_error", "updated_at"],
            )
            return renewal

    def _release_renewal(self, renewal: SubscriptionRenewal, status: str, error: str = "") -> None:
        """Mark the cycle lock as finished; a failed write leaves it in processing for a manual reset."""
        renewal.status = status
        renewal.last_error = error[:200]
        try:
            renewal.save(using=self.using, update_fields=["status", "last_error", "updated_at"])
        except DatabaseError:
            logger.exception(f"🔥 [Renewal] Could not release cycle lock {renewal.id} as {status}")

    # ===============================================================================
    # AUTOMATIC RENEWAL
    # ===============================================================================

    def renew_automatically(
        self, subscription: Subscription, now: datetime | None = None
    ) -> Result[RenewalOutcome, BusinessError]:
        """
        Renew one due subscription with credits.

        Returns ``Ok`` with status ``renewed`` or ``skipped``; ``Err`` when the
        debit failed, in which case the cycle is marked failed and retried later.
        """
        now = now or timezone.now()

        if subscription.renewal_method != "credits":
            return Ok(RenewalOutcome(subscription, "skipped", reason="renewal_method_not_credits"))
        if not subscription.is_active or not subscription.auto_renew or subscription.is_cancellation_requested:
            return Ok(RenewalOutcome(subscription, "skipped", reason="not_renewable"))

        result = self._charge_and_extend(subscription, now, status_reason=REASON_AUTO_RENEWED_CREDITS)
        if result.is_ok() or isinstance(result.unwrap_err(), InfrastructureError):
            return result

        error = result.unwrap_err()
        retry_at = now + timedelta(minutes=get_renewal_retry_minutes())
        Subscription.objects.using(self.using).filter(pk=subscription.pk).update(
            status_reason=REASON_AUTO_RENEW_CREDIT_FAILED,
            next_billing_at=retry_at,
            updated_at=now,
        )
        subscription.status_reason = REASON_AUTO_RENEW_CREDIT_FAILED
        subscription.next_billing_at = retry_at
        logger.warning(
            f"⚠️ [Renewal] Auto-renew of {subscription.id} failed ({error.code}), retry at {retry_at:%Y-%m-%d %H:%M}"
        )
        return result

    # ===============================================================================
    # MANUAL RENEWAL
    # ===============================================================================

    def check_manual_renewal(
        self, subscription: Subscription | None, now: datetime | None = None
    ) -> Result[None, EligibilityError]:
        """Whether the owner may renew this subscription by hand right now."""
        now = now or timezone.now()

        def _deny(message: str) -> Result[None, EligibilityError]:
            return Err(EligibilityError(PURCHASE_NOT_ALLOWED, message))

        if subscription is None or not subscription.is_active:
            return _deny("Subscription is not active")
        if subscription.is_cancellation_requested:
            return _deny("Subscription is scheduled for cancellation")
        if subscription.auto_renew:
            return _deny("Subscription renews automatically")
        if subscription.renewal_method != "credits":
            return _deny("Subscription is not renewed with credits")

        days_left = subscription.days_until_expiry(now)
        if days_left < 0 or days_left > get_manual_renewal_window_days():
            return _deny(f"Renewal opens {get_manual_renewal_window_days()} days before expiry")

        has_open_task = (
            FulfillmentTask.objects.using(self.using)
            .filter(subscription=subscription, task_type="renewal", status__in=FulfillmentTask.OPEN_STATUSES)
            .exists()
        )
        if has_open_task:
            return _deny("A renewal is already being fulfilled")
        return Ok(None)

    def renew_manually(
        self, user: Any, subscription_id: Any, now: datetime | None = None
    ) -> Result[RenewalOutcome, BusinessError]:
        """User-initiated renewal of a non-auto-renewing subscription, paid with credits."""
        now = now or timezone.now()
        subscription = (
            Subscription.objects.using(self.using)
            .select_related("user", "product")
            .filter(pk=subscription_id, user=user)
            .first()
        )

        eligibility = self.check_manual_renewal(subscription, now)
        if eligibility.is_err():
            return eligibility

        result = self._charge_and_extend(subscription, now, status_reason=REASON_MANUAL_RENEWED_CREDITS)
        if result.is_ok() and result.unwrap().status == "skipped":
            return Err(EligibilityError(PURCHASE_NOT_ALLOWED, "This renewal is already in progress"))
        return result

    # ===============================================================================
    # SHARED CHARGE → EXTEND STEP
    # ===============================================================================

    def _charge_and_extend(
        self, subscription: Subscription, now: datetime, *, status_reason: str
    ) -> Result[RenewalOutcome, BusinessError]:
        pricing = subscription.compute_renewal_pricing()
        cycle_end = subscription.term_end_at

        if subscription.currency.upper() != get_credits_currency():
            return Err(
                ValidationError(INVALID_CURRENCY, f"Credits cannot pay for a {subscription.currency} subscription")
            )

        try:
            renewal = self.acquire_renewal_lock(subscription, cycle_end, pricing.total_price_cents)
        except DatabaseError:
            logger.exception(f"🔥 [Renewal] Could not take the cycle lock for {subscription.id}")
            return Err(InfrastructureError())
        if renewal is None:
            return Ok(RenewalOutcome(subscription, "skipped", reason="cycle_locked"))

        debit = None
        if pricing.total_price_cents > 0:
            spend_result = self.credit_service.spend(
                subscription.user,
                pricing.total_price_cents,
                f"Renewal: {subscription.product.name} ({pricing.term_months} months)",
                metadata={
                    "subscription_id": str(subscription.id),
                    "renewal_id": str(renewal.id),
                    "cycle_end_date": cycle_end.isoformat(),
                    "pricing": pricing.as_snapshot(),
                    "currency": subscription.currency,
                },
                subscription=subscription,
            )
            if spend_result.is_err():
                error = spend_result.unwrap_err()
                self._release_renewal(renewal, "failed", error.code)
                return Err(error)
            debit = spend_result.unwrap().transaction

        try:
            with transaction.atomic(using=self.using):
                locked = Subscription.objects.using(self.using).select_for_update().get(pk=subscription.pk)
                new_start = max(locked.term_end_at, now)
                dates = compute_term_dates(new_start, locked.term_months)

                locked.term_start_at = dates.term_start_at
                locked.term_end_at = dates.term_end_at
                locked.renewal_date = dates.renewal_date
                locked.next_billing_at = dates.renewal_date if locked.auto_renew else None
                locked.price_cents = pricing.total_price_cents
                locked.status_reason = status_reason
                locked.save(using=self.using, update_fields=[*EXTENDED_FIELDS, "updated_at"])

                renewal.status = "succeeded"
                renewal.credit_transaction = debit
                renewal.last_error = ""
                renewal.save(
                    using=self.using, update_fields=["status", "credit_transaction", "last_error", "updated_at"]
                )

                self.ensure_fulfillment_task(locked, now)
        except DatabaseError:
            logger.exception(f"🔥 [Renewal] Extending {subscription.id} failed after debit, refunding")
            self._compensate_debit(subscription, debit)
            self._release_renewal(renewal, "failed", "extend_failed")
            return Err(InfrastructureError())

        for field_name in EXTENDED_FIELDS:
            setattr(subscription, field_name, getattr(locked, field_name))

        log_security_event(
            "subscription_renewed",
            {
                "subscription_id": str(subscription.id),
                "user_id": subscription.user_id,
                "amount_cents": pricing.total_price_cents,
                "new_term_end": subscription.term_end_at.isoformat(),
                "reason": status_reason,
            },
        )
        logger.info(
            f"🔄 [Renewal] Renewed {subscription.id} until {subscription.term_end_at:%Y-%m-%d} "
            f"for {pricing.total_price_cents} cents"
        )
        return Ok(RenewalOutcome(subscription, "renewed", renewal=renewal, transaction=debit))

    def _compensate_debit(self, subscription: Subscription, debit: CreditTransaction | None) -> None:
        if debit is None:
            return
        refund = self.credit_service.refund(
            subscription.user,
            -debit.amount_cents,
            f"Refund: renewal of {subscription.product.name} failed",
            original_transaction_id=debit.id,
            metadata={"subscription_id": str(subscription.id), "reason": "renewal_extend_failed"},
            subscription=subscription,
        )
        if refund.is_err():
            logger.error(
                f"🔥 [Renewal] Refund of {debit.id} failed for subscription {subscription.id}: "
                f"{refund.unwrap_err().code}"
            )

    def ensure_fulfillment_task(self, subscription: Subscription, now: datetime | None = None) -> FulfillmentTask:
        """Open renewal task for the subscription, creating one if none is open."""
        now = now or timezone.now()
        task = (
            FulfillmentTask.objects.using(self.using)
            .filter(subscription=subscription, task_type="renewal", status__in=FulfillmentTask.OPEN_STATUSES)
            .first()
        )
        if task is not None:
            return task
        return FulfillmentTask.objects.using(self.using).create(
            subscription=subscription,
            user_id=subscription.user_id,
            task_type="renewal",
            due_at=now + timedelta(hours=get_fulfillment_due_hours()),
            notes=f"Extend shared access until {subscription.term_end_at:%Y-%m-%d}",
        )

    # ===============================================================================
    # SWEEPS
    # ===============================================================================

    def process_due_renewals(self, now: datetime | None = None, limit: int | None = None) -> RenewalRunResult:
        """Renew every due subscription; one failure never stops the batch."""
        now = now or timezone.now()
        result = RenewalRunResult(processed=0, renewed=0, skipped=0, failed=0, errors=[])

        for subscription in self.find_due_renewals(now, limit):
            result["processed"] += 1
            outcome = self.renew_automatically(subscription, now)
            if outcome.is_err():
                result["failed"] += 1
                result["errors"].append(f"{subscription.id}: {outcome.unwrap_err().code}")
            elif outcome.unwrap().status == "renewed":
                result["renewed"] += 1
            else:
                result["skipped"] += 1

        logger.info(
            f"🔄 [Renewal] Sweep done: {result['renewed']} renewed, {result['failed']} failed, "
            f"{result['skipped']} skipped of {result['processed']}"
        )
        return result

    def expire_lapsed_subscriptions(self, now: datetime | None = None) -> int:
        """Mark active subscriptions whose term has ended as expired."""
        now = now or timezone.now()
        count = (
            Subscription.objects.using(self.using)
            .filter(status="active", term_end_at__lte=now)
            .update(status="expired", status_reason=REASON_TERM_EXPIRED, next_billing_at=None, updated_at=now)
        )
        if count:
            logger.info(f"⌛ [Renewal] Expired {count} lapsed subscriptions")
        return count
