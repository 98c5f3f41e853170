"""
Credit purchase orchestration for SubShare Platform.

One purchase moves through:

    Validating → (CouponReserved) → OrderCreated → CreditsDebited
        → SubscriptionCreated → Finalized

or ends ``Cancelled``. The order and the coupon slot commit together; the
debit is its own transaction. Every failure after the order exists is
compensated: the order is cancelled with the cause in ``status_reason``, the
coupon slot is voided and a debit that already happened is refunded. Per
order there is either no credit movement, or one debit with an active
subscription, or one debit and its matching refund.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from django.db import DatabaseError, transaction
from django.utils import timezone

from apps.billing.config import get_credits_currency
from apps.billing.credit_service import CreditService
from apps.billing.models import CreditTransaction, Subscription
from apps.billing.subscription_service import SubscriptionService
from apps.common.constants import (
    COUPON_INVALID,
    INSUFFICIENT_CREDITS,
    INTERNAL_ERROR,
    MAX_REDEMPTIONS,
    PAYMENT_PROVIDER_CREDITS,
    PRICE_UNAVAILABLE,
    PURCHASE_NOT_ALLOWED,
    REASON_PAID_WITH_CREDITS,
    REASON_PURCHASE_STARTED,
    SUBSCRIPTION_CREATE_FAILED,
    TERM_UNAVAILABLE,
)
from apps.common.logging import StructuredLogAdapter, clear_request_context, get_logger, set_request_context
from apps.common.types import (
    BusinessError,
    CompensationError,
    EligibilityError,
    Err,
    InfrastructureError,
    InsufficientFundsError,
    Ok,
    Result,
)
from apps.common.validators import log_security_event
from apps.products.services import VariantPricing, VariantPricingService
from apps.promotions.services import CouponQuote, CouponService

from .models import Order
from .services import OrderCreateData, OrderItemData, OrderService, PaymentUpdateData
from .signals import purchase_completed

GENERIC_FAILURE_MESSAGE = "An internal error occurred. Please try again later."

# ===============================================================================
# PURCHASE TYPES
# ===============================================================================


@dataclass(frozen=True)
class PurchaseRequest:
    """What the user asked to buy."""

    user: Any
    variant_id: Any
    term_months: int = 1
    currency: str = "USD"
    coupon_code: str | None = None
    auto_renew: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PurchaseResult:
    order: Order
    subscription: Subscription
    transaction: CreditTransaction | None


@dataclass(frozen=True)
class PurchaseFailure:
    """
    Why a purchase did not complete.

    ``code`` is one of insufficient_credits, coupon_invalid, max_redemptions,
    term_unavailable, purchase_not_allowed, subscription_create_failed or
    internal_error. ``order`` is set when the order was created and then
    cancelled.
    """

    code: str
    message: str
    order: Order | None = None


# ===============================================================================
# PURCHASE ORCHESTRATOR
# ===============================================================================


class PurchaseOrchestrator:
    """
    Runs a credit purchase to success or full compensation.

    Collaborators are injected so callers and tests can share one database
    alias or swap a store.
    """

    def __init__(  # noqa: PLR0913
        self,
        using: str = "default",
        *,
        credit_service: CreditService | None = None,
        coupon_service: CouponService | None = None,
        order_service: OrderService | None = None,
        subscription_service: SubscriptionService | None = None,
        pricing_service: VariantPricingService | None = None,
    ):
        self.using = using
        self.credit_service = credit_service or CreditService(using)
        self.coupon_service = coupon_service or CouponService(using)
        self.order_service = order_service or OrderService(using)
        self.subscription_service = subscription_service or SubscriptionService(using)
        self.pricing_service = pricing_service or VariantPricingService(using)

    def purchase(self, request: PurchaseRequest, now: datetime | None = None) -> Result[PurchaseResult, PurchaseFailure]:
        purchase_id = uuid.uuid4().hex
        # RequestIDFilter tags service log records with this purchase
        set_request_context(purchase_id=purchase_id, user_id=request.user.pk)
        try:
            return self._run_purchase(request, now or timezone.now(), purchase_id)
        finally:
            clear_request_context()

    def _run_purchase(
        self, request: PurchaseRequest, now: datetime, purchase_id: str
    ) -> Result[PurchaseResult, PurchaseFailure]:
        log = get_logger(__name__, purchase_id=purchase_id, user_id=request.user.pk)
        log.info(f"🛒 [Purchase] Started for variant {request.variant_id} ({request.term_months}m)")

        # Validating
        validation = self._validate(request, now)
        if validation.is_err():
            failure = validation.unwrap_err()
            log.info(f"🛒 [Purchase] Rejected: {failure.code}")
            return validation
        quote, coupon_quote = validation.unwrap()

        # OrderCreated (+ CouponReserved)
        order_result = self._create_order(request, quote, coupon_quote, purchase_id, now, log)
        if order_result.is_err():
            return order_result
        order = order_result.unwrap()
        log.info(f"🛒 [Purchase] Order {order.order_number} created", order_id=str(order.id))

        # CreditsDebited
        debit: CreditTransaction | None = None
        if order.total_cents > 0:
            spend_result = self.credit_service.spend(
                request.user,
                order.total_cents,
                f"Subscription purchase: {quote.product.name} {quote.variant.name} ({quote.pricing.term_months}m)",
                self._debit_metadata(order, quote, coupon_quote, purchase_id),
                order=order,
            )
            if spend_result.is_err():
                error = spend_result.unwrap_err()
                log.warning(f"⚠️ [Purchase] Debit failed for {order.order_number}: {error.code}")
                self._cancel(order, error.code, log)
                return Err(self._debit_failure(error, order))
            debit = spend_result.unwrap().transaction

        # SubscriptionCreated
        subscription_result = self.subscription_service.create(
            request.user,
            product=quote.product,
            variant=quote.variant,
            pricing=quote.pricing,
            currency=quote.currency,
            order=order,
            auto_renew=request.auto_renew,
            renewal_method=PAYMENT_PROVIDER_CREDITS,
            status_reason=REASON_PAID_WITH_CREDITS,
            now=now,
        )
        if subscription_result.is_err():
            log.error(
                f"🔥 [Purchase] Subscription creation failed for {order.order_number}, refunding credits",
                error_code=subscription_result.unwrap_err().code,
            )
            if debit is not None:
                self._refund_debit(request.user, order, debit, log)
            self._cancel(order, SUBSCRIPTION_CREATE_FAILED, log)
            return Err(
                PurchaseFailure(SUBSCRIPTION_CREATE_FAILED, "Subscription creation failed, credits refunded", order)
            )
        subscription = subscription_result.unwrap()

        # Finalized
        order = self._finalize(order, subscription, debit, request, log)
        log.info(
            f"✅ [Purchase] {order.order_number} completed",
            subscription_id=str(subscription.id),
            transaction_id=str(debit.id) if debit else None,
        )
        return Ok(PurchaseResult(order=order, subscription=subscription, transaction=debit))

    # ===============================================================================
    # STEPS
    # ===============================================================================

    def _validate(
        self, request: PurchaseRequest, now: datetime
    ) -> Result[tuple[VariantPricing, CouponQuote | None], PurchaseFailure]:
        """Re-check catalog pricing, eligibility and the coupon at execution time."""
        pricing_result = self.pricing_service.resolve_variant_pricing(
            request.variant_id, request.term_months, request.currency
        )
        if pricing_result.is_err():
            error = pricing_result.unwrap_err()
            if error.code in (TERM_UNAVAILABLE, PRICE_UNAVAILABLE):
                return Err(PurchaseFailure(TERM_UNAVAILABLE, "Selected duration is not available for this plan"))
            return Err(PurchaseFailure(PURCHASE_NOT_ALLOWED, "Subscription plan is not available"))
        quote = pricing_result.unwrap()

        credits_currency = get_credits_currency()
        if quote.currency != credits_currency:
            return Err(
                PurchaseFailure(
                    PURCHASE_NOT_ALLOWED, f"Credit purchases are only supported for {credits_currency} pricing"
                )
            )

        eligibility = self.subscription_service.can_purchase_subscription(request.user, quote.product, quote.variant)
        if eligibility.is_err():
            return Err(PurchaseFailure(PURCHASE_NOT_ALLOWED, eligibility.unwrap_err().message))

        coupon_quote = None
        if self.coupon_service.normalize_code(request.coupon_code):
            coupon_result = self.coupon_service.validate_coupon_for_order(
                request.coupon_code,
                request.user,
                quote.product,
                quote.total_price_cents,
                quote.pricing.term_months,
                now,
            )
            if coupon_result.is_err():
                return Err(self._coupon_failure(coupon_result.unwrap_err()))
            coupon_quote = coupon_result.unwrap()

        return Ok((quote, coupon_quote))

    def _create_order(  # noqa: PLR0913
        self,
        request: PurchaseRequest,
        quote: VariantPricing,
        coupon_quote: CouponQuote | None,
        purchase_id: str,
        now: datetime,
        log: StructuredLogAdapter,
    ) -> Result[Order, PurchaseFailure]:
        data = self._order_data(request, quote, coupon_quote, purchase_id)

        if coupon_quote is None:
            result = self.order_service.create_with_items(data)
            if result.is_err():
                return Err(PurchaseFailure(INTERNAL_ERROR, GENERIC_FAILURE_MESSAGE))
            return Ok(result.unwrap())

        # Order and coupon slot commit or roll back together
        try:
            with transaction.atomic(using=self.using):
                order = self.order_service.create_with_items_in_transaction(data)
                reservation = self.coupon_service.reserve_coupon_redemption(
                    coupon_quote.coupon.pk,
                    request.user,
                    order,
                    quote.product,
                    quote.total_price_cents,
                    quote.pricing.term_months,
                    quote.currency,
                    now,
                )
                if reservation.is_err():
                    raise reservation.unwrap_err()
        except EligibilityError as e:
            log.info(f"🎟️ [Purchase] Coupon reservation refused: {e.code}")
            return Err(self._coupon_failure(e))
        except BusinessError as e:
            log.warning(f"⚠️ [Purchase] Order creation rejected: {e.code}")
            return Err(PurchaseFailure(INTERNAL_ERROR, GENERIC_FAILURE_MESSAGE))
        except DatabaseError:
            log.exception("🔥 [Purchase] Failed to create order with coupon reservation")
            return Err(PurchaseFailure(INTERNAL_ERROR, GENERIC_FAILURE_MESSAGE))
        return Ok(order)

    def _finalize(
        self,
        order: Order,
        subscription: Subscription,
        debit: CreditTransaction | None,
        request: PurchaseRequest,
        log: StructuredLogAdapter,
    ) -> Order:
        payment = self.order_service.update_payment(
            order.pk,
            PaymentUpdateData(
                payment_provider=PAYMENT_PROVIDER_CREDITS,
                payment_reference=str(debit.id) if debit else "",
                status="in_process",
                status_reason=REASON_PAID_WITH_CREDITS,
                paid_with_credits=True,
                auto_renew=request.auto_renew,
            ),
        )
        if payment.is_ok():
            order = payment.unwrap()
        else:
            # Subscription and debit stand; only the order bookkeeping lags
            log.error(f"🔥 [Purchase] Could not record payment on {order.order_number}: {payment.unwrap_err().code}")

        if order.coupon_id is not None:
            try:
                self.coupon_service.finalize_redemption_for_order(order.pk)
            except DatabaseError:
                log.exception(f"🔥 [Purchase] Could not finalize coupon redemption for {order.order_number}")

        for receiver, response in purchase_completed.send_robust(
            sender=self.__class__, order=order, subscription=subscription, transaction=debit
        ):
            if isinstance(response, Exception):
                log.warning(f"⚠️ [Purchase] purchase_completed receiver {receiver!r} failed: {response}")
        return order

    # ===============================================================================
    # COMPENSATION
    # ===============================================================================

    def _cancel(self, order: Order, reason: str, log: StructuredLogAdapter) -> None:
        """Cancel the order and give back its coupon slot."""
        result = self.order_service.update_status(order.pk, "cancelled", reason)
        if result.is_ok():
            order.status = "cancelled"
            order.status_reason = reason
        else:
            self._report_compensation_failure("order_cancel", order, result.unwrap_err(), log)

        if order.coupon_id is None:
            return
        try:
            self.coupon_service.void_redemption_for_order(order.pk, reason=reason)
        except DatabaseError as e:
            log.exception(f"🔥 [Purchase] Could not void coupon reservation for {order.order_number}")
            self._report_compensation_failure("coupon_void", order, e, log)

    def _refund_debit(self, user: Any, order: Order, debit: CreditTransaction, log: StructuredLogAdapter) -> None:
        result = self.credit_service.refund(
            user,
            -debit.amount_cents,
            "Subscription creation failed - automatic refund",
            original_transaction_id=debit.pk,
            metadata={"reason": "automatic_rollback", "order_id": str(order.id)},
            order=order,
        )
        if result.is_err():
            self._report_compensation_failure("credit_refund", order, result.unwrap_err(), log)
            return
        log_security_event(
            "purchase_compensated",
            {
                "order_id": str(order.id),
                "user_id": user.pk,
                "debit_transaction_id": str(debit.pk),
                "refund_transaction_id": str(result.unwrap().transaction.pk),
                "amount_cents": -debit.amount_cents,
            },
        )

    def _report_compensation_failure(
        self, step: str, order: Order, cause: Exception, log: StructuredLogAdapter
    ) -> None:
        error = CompensationError(message=f"{step} failed for order {order.pk}: {cause}", step=step)
        log.error(f"🔥 [Purchase] {error}", order_id=str(order.id), compensation_step=step)
        log_security_event(
            "purchase_compensation_failed",
            {"order_id": str(order.id), "user_id": order.user_id, "step": step, "cause": str(cause)},
        )

    # ===============================================================================
    # HELPERS
    # ===============================================================================

    def _order_data(
        self,
        request: PurchaseRequest,
        quote: VariantPricing,
        coupon_quote: CouponQuote | None,
        purchase_id: str,
    ) -> OrderCreateData:
        pricing = quote.pricing
        coupon_discount = coupon_quote.discount_cents if coupon_quote else 0
        item_coupon_discounts = list(coupon_quote.item_discounts) if coupon_quote else [0]
        metadata: dict[str, Any] = {
            **request.metadata,
            **pricing.as_snapshot(),
            "purchase_id": purchase_id,
            "product_id": str(quote.product.id),
            "variant_id": str(quote.variant.id),
            "total_price_cents": pricing.total_price_cents - coupon_discount,
        }
        if coupon_quote:
            metadata.update(
                coupon_code=coupon_quote.coupon.code,
                coupon_percent_off=str(coupon_quote.coupon.percent_off),
                coupon_discount_cents=coupon_discount,
            )

        item = OrderItemData(
            product_id=quote.product.id,
            variant_id=quote.variant.id,
            product_name=quote.product.name,
            variant_name=quote.variant.name,
            quantity=1,
            term_months=pricing.term_months,
            base_price_cents=pricing.base_price_cents,
            discount_percent=pricing.discount_percent,
            unit_price_cents=pricing.total_price_cents,
            coupon_discount_cents=item_coupon_discounts[0],
        )
        return OrderCreateData(
            user=request.user,
            items=[item],
            currency=quote.currency,
            status="pending_payment",
            status_reason=REASON_PURCHASE_STARTED,
            term_months=pricing.term_months,
            auto_renew=request.auto_renew,
            coupon=coupon_quote.coupon if coupon_quote else None,
            coupon_code=coupon_quote.coupon.code if coupon_quote else "",
            payment_provider=PAYMENT_PROVIDER_CREDITS,
            metadata=metadata,
        )

    @staticmethod
    def _debit_metadata(
        order: Order, quote: VariantPricing, coupon_quote: CouponQuote | None, purchase_id: str
    ) -> dict[str, Any]:
        metadata = {
            **quote.pricing.as_snapshot(),
            "purchase_type": "subscription",
            "purchase_id": purchase_id,
            "order_id": str(order.id),
            "product_id": str(quote.product.id),
            "variant_id": str(quote.variant.id),
            "currency": quote.currency,
            "charged_cents": order.total_cents,
        }
        if coupon_quote:
            metadata["coupon_code"] = coupon_quote.coupon.code
            metadata["coupon_discount_cents"] = coupon_quote.discount_cents
        return metadata

    @staticmethod
    def _coupon_failure(error: BusinessError) -> PurchaseFailure:
        if error.code == MAX_REDEMPTIONS:
            return PurchaseFailure(MAX_REDEMPTIONS, error.message)
        return PurchaseFailure(COUPON_INVALID, "Coupon not valid for this order.")

    @staticmethod
    def _debit_failure(error: BusinessError, order: Order) -> PurchaseFailure:
        if isinstance(error, InsufficientFundsError):
            return PurchaseFailure(INSUFFICIENT_CREDITS, error.message, order)
        if isinstance(error, InfrastructureError):
            return PurchaseFailure(INTERNAL_ERROR, GENERIC_FAILURE_MESSAGE, order)
        return PurchaseFailure(PURCHASE_NOT_ALLOWED, error.message, order)
