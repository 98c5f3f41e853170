"""
Order Management Services for SubShare Platform
Order creation with line items, the status workflow and payment recording.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, TypedDict

from django.db import DatabaseError, transaction
from django.db.transaction import TransactionManagementError
from django.utils import timezone

from apps.common.constants import PAID_ORDER_STATUSES
from apps.common.types import BusinessError, Err, InfrastructureError, Ok, Result, ValidationError
from apps.common.validators import log_security_event

from .models import Order, OrderItem, OrderStatusHistory

logger = logging.getLogger(__name__)

# ===============================================================================
# ORDER SERVICE PARAMETER OBJECTS
# ===============================================================================


class OrderItemData(TypedDict, total=False):
    """Type definition for order item data"""

    product_id: uuid.UUID
    variant_id: uuid.UUID | None
    product_name: str
    variant_name: str
    quantity: int
    term_months: int
    base_price_cents: int
    discount_percent: Decimal
    unit_price_cents: int
    coupon_discount_cents: int


@dataclass
class OrderCreateData:
    """Parameter object for order creation"""

    user: Any
    items: list[OrderItemData]
    currency: str = "USD"
    status: str = "pending_payment"
    status_reason: str = ""
    term_months: int = 1
    auto_renew: bool = False
    coupon: Any = None
    coupon_code: str = ""
    payment_provider: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class PaymentUpdateData:
    """Parameter object for recording a payment on an order"""

    payment_provider: str
    payment_reference: str
    status: str = "in_process"
    status_reason: str = ""
    paid_with_credits: bool = False
    auto_renew: bool | None = None


class OrderFilters(TypedDict, total=False):
    """Type definition for order filtering parameters"""

    status: str
    order_number: str


# ===============================================================================
# MAIN ORDER SERVICE
# ===============================================================================


class OrderService:
    """
    Order store for the purchase orchestrator.

    The orchestrator owns the lifecycle; this service enforces the transition
    table and keeps the status history.
    """

    def __init__(self, using: str = "default"):
        self.using = using

    def create_with_items(self, data: OrderCreateData) -> Result[Order, BusinessError]:
        """Create an order and its line items in one transaction."""
        try:
            with transaction.atomic(using=self.using):
                order = self.create_with_items_in_transaction(data)
        except BusinessError as e:
            return Err(e)
        except DatabaseError:
            logger.exception(f"🔥 [Order] Failed to create order for user {data.user.pk}")
            return Err(InfrastructureError())
        return Ok(order)

    def create_with_items_in_transaction(self, data: OrderCreateData) -> Order:
        """
        Create an order inside the caller's open transaction.

        Raises instead of returning a Result so the caller's ``atomic()`` block
        rolls back everything it did alongside the order.
        """
        if not transaction.get_connection(self.using).in_atomic_block:
            raise TransactionManagementError("create_with_items_in_transaction requires an open transaction")
        if not data.items:
            raise ValidationError("empty_order", "An order needs at least one item")

        order = Order(
            user=data.user,
            status=data.status,
            status_reason=data.status_reason,
            currency=data.currency,
            term_months=data.term_months,
            auto_renew=data.auto_renew,
            coupon=data.coupon,
            coupon_code=data.coupon_code,
            payment_provider=data.payment_provider,
            metadata=dict(data.metadata),
        )
        order.save(using=self.using)

        for item in data.items:
            OrderItem(
                order=order,
                product_id=item["product_id"],
                variant_id=item.get("variant_id"),
                product_name=item.get("product_name", ""),
                variant_name=item.get("variant_name", ""),
                quantity=item.get("quantity", 1),
                term_months=item.get("term_months", data.term_months),
                base_price_cents=item.get("base_price_cents", 0),
                discount_percent=item.get("discount_percent", Decimal("0.00")),
                unit_price_cents=item.get("unit_price_cents", 0),
                coupon_discount_cents=item.get("coupon_discount_cents", 0),
                currency=data.currency,
            ).save(using=self.using)

        order.calculate_totals()
        order.save(
            using=self.using,
            update_fields=["subtotal_cents", "discount_cents", "coupon_discount_cents", "total_cents", "updated_at"],
        )
        self._create_status_history(order, "", order.status, data.status_reason or "Order created")

        logger.info(f"🛒 [Order] Created {order.order_number} for user {data.user.pk} ({order.total_cents} cents)")
        return order

    def update_status(  # noqa: PLR0913
        self,
        order_id: Any,
        new_status: str,
        reason: str = "",
        *,
        notes: str = "",
        changed_by: Any = None,
    ) -> Result[Order, BusinessError]:
        """Move an order along the workflow; terminal orders never change."""
        try:
            with transaction.atomic(using=self.using):
                order = Order.objects.using(self.using).select_for_update().filter(pk=order_id).first()
                if order is None:
                    raise ValidationError("order_not_found", "Order not found")

                old_status = order.status
                if not order.can_transition_to(new_status):
                    raise ValidationError(
                        "invalid_status_transition",
                        f"Invalid status transition from {old_status} to {new_status}",
                    )

                order.status = new_status
                order.status_reason = reason
                update_fields = ["status", "status_reason", "updated_at"]
                if new_status == "cancelled":
                    order.cancelled_at = timezone.now()
                    update_fields.append("cancelled_at")
                order.save(using=self.using, update_fields=update_fields)

                self._create_status_history(
                    order, old_status, new_status, reason, notes=notes, changed_by=changed_by
                )
        except BusinessError as e:
            logger.warning(f"⚠️ [Order] Status change to {new_status} rejected for {order_id}: {e.code}")
            return Err(e)
        except DatabaseError:
            logger.exception(f"🔥 [Order] Failed to update status of {order_id}")
            return Err(InfrastructureError())

        log_security_event(
            "order_status_changed",
            {
                "order_id": str(order.id),
                "order_number": order.order_number,
                "old_status": old_status,
                "new_status": new_status,
                "reason": reason,
            },
        )
        return Ok(order)

    def update_payment(self, order_id: Any, payment: PaymentUpdateData) -> Result[Order, BusinessError]:
        """Record how an order was paid and move it to the paid status."""
        try:
            with transaction.atomic(using=self.using):
                order = Order.objects.using(self.using).select_for_update().filter(pk=order_id).first()
                if order is None:
                    raise ValidationError("order_not_found", "Order not found")

                old_status = order.status
                if old_status != payment.status and not order.can_transition_to(payment.status):
                    raise ValidationError(
                        "invalid_status_transition",
                        f"Cannot record payment on a {old_status} order",
                    )

                order.payment_provider = payment.payment_provider
                order.payment_reference = payment.payment_reference
                order.paid_with_credits = payment.paid_with_credits
                order.status = payment.status
                order.status_reason = payment.status_reason
                order.paid_at = order.paid_at or timezone.now()
                if payment.auto_renew is not None:
                    order.auto_renew = payment.auto_renew
                order.save(using=self.using)

                if old_status != payment.status:
                    self._create_status_history(order, old_status, payment.status, payment.status_reason)
        except BusinessError as e:
            logger.warning(f"⚠️ [Order] Payment update rejected for {order_id}: {e.code}")
            return Err(e)
        except DatabaseError:
            logger.exception(f"🔥 [Order] Failed to record payment for {order_id}")
            return Err(InfrastructureError())

        logger.info(f"💰 [Order] {order.order_number} paid via {payment.payment_provider} ({payment.payment_reference})")
        return Ok(order)

    def has_paid_order(self, user: Any) -> bool:
        return Order.objects.using(self.using).filter(user=user, status__in=PAID_ORDER_STATUSES).exists()

    def get_order(self, user: Any, order_id: Any) -> Order | None:
        """Order with items and history, scoped to its owner"""
        return (
            Order.objects.using(self.using)
            .prefetch_related("items", "status_history")
            .filter(pk=order_id, user=user)
            .first()
        )

    def list_orders(
        self, user: Any, filters: OrderFilters | None = None, limit: int = 50, offset: int = 0
    ) -> list[Order]:
        queryset = Order.objects.using(self.using).filter(user=user)
        if filters:
            if status := filters.get("status"):
                queryset = queryset.filter(status=status)
            if order_number := filters.get("order_number"):
                queryset = queryset.filter(order_number__icontains=order_number)
        limit = min(max(1, limit), 500)
        offset = max(0, offset)
        return list(queryset.order_by("-created_at")[offset : offset + limit])

    def _create_status_history(  # noqa: PLR0913
        self,
        order: Order,
        old_status: str,
        new_status: str,
        reason: str,
        *,
        notes: str = "",
        changed_by: Any = None,
    ) -> None:
        OrderStatusHistory.objects.using(self.using).create(
            order=order,
            old_status=old_status,
            new_status=new_status,
            reason=reason[:255],
            notes=notes,
            changed_by=changed_by,
            is_automatic=changed_by is None,
        )
