"""
Order Management models for SubShare Platform
Orders for shared subscriptions, paid with credits, and their status trail.

Workflow: pending_payment → in_process → delivered, or → cancelled.
Cancelled and delivered orders are terminal.
"""

from __future__ import annotations

import secrets
import string
import uuid
from decimal import Decimal
from typing import Any, ClassVar

from django.conf import settings
from django.core.validators import MinValueValidator
from django.db import models
from django.utils import timezone
from django.utils.translation import gettext_lazy as _

ORDER_NUMBER_SUFFIX_CHARS = string.ascii_uppercase + string.digits
ORDER_NUMBER_SUFFIX_LENGTH = 6

# ===============================================================================
# ORDER MANAGEMENT MODELS
# ===============================================================================


class Order(models.Model):
    """
    A user's purchase of one or more subscription plans.
    Money fields are integer cents in ``currency``; ``metadata`` holds the
    pricing snapshot the order was charged at.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    # Order identification
    order_number = models.CharField(max_length=50, unique=True, help_text=_("Human-readable order number"))

    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="orders")

    # Order status workflow
    STATUS_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("pending_payment", _("Pending Payment")),  # Created, not yet paid
        ("in_process", _("In Process")),  # Paid, awaiting fulfillment
        ("delivered", _("Delivered")),  # Access handed over
        ("cancelled", _("Cancelled")),  # Failed or cancelled; never paid or fully refunded
    )
    TERMINAL_STATUSES: ClassVar[tuple[str, ...]] = ("cancelled", "delivered")
    ALLOWED_TRANSITIONS: ClassVar[dict[str, tuple[str, ...]]] = {
        "pending_payment": ("in_process", "cancelled"),
        "in_process": ("delivered", "cancelled"),
        "delivered": (),
        "cancelled": (),
    }

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="pending_payment")
    status_reason = models.CharField(max_length=100, blank=True, help_text=_("Machine-readable status reason"))

    # Financial information (all in cents)
    currency = models.CharField(max_length=3, default="USD")
    subtotal_cents = models.BigIntegerField(default=0, validators=[MinValueValidator(0)])
    discount_cents = models.BigIntegerField(default=0, validators=[MinValueValidator(0)])
    total_cents = models.BigIntegerField(default=0, validators=[MinValueValidator(0)])

    # Coupon
    coupon = models.ForeignKey(
        "promotions.Coupon",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="orders",
    )
    coupon_code = models.CharField(max_length=50, blank=True)
    coupon_discount_cents = models.BigIntegerField(default=0)

    # Purchase options
    term_months = models.PositiveIntegerField(default=1)
    auto_renew = models.BooleanField(default=False)

    # Payment
    paid_with_credits = models.BooleanField(default=False)
    payment_provider = models.CharField(max_length=30, blank=True)
    payment_reference = models.CharField(max_length=100, blank=True)

    metadata = models.JSONField(default=dict, blank=True, help_text=_("Pricing snapshot and purchase context"))

    # Timestamps
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    paid_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "orders"
        verbose_name = _("Order")
        verbose_name_plural = _("Orders")
        ordering: ClassVar[tuple[str, ...]] = ("-created_at",)
        indexes: ClassVar[tuple[models.Index, ...]] = (
            models.Index(fields=["user", "-created_at"]),
            models.Index(fields=["user", "status"]),
            models.Index(fields=["status", "-created_at"]),
        )

    def __str__(self) -> str:
        return f"Order {self.order_number} ({self.status})"

    def save(self, *args: Any, **kwargs: Any) -> None:
        """Auto-generate order number before saving"""
        if not self.order_number:
            self.order_number = generate_order_number()
        super().save(*args, **kwargs)

    @property
    def total(self) -> Decimal:
        """Return total in currency units"""
        return Decimal(self.total_cents) / 100

    @property
    def is_paid(self) -> bool:
        return self.status in ("in_process", "delivered")

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES

    def can_transition_to(self, new_status: str) -> bool:
        return new_status in self.ALLOWED_TRANSITIONS.get(self.status, ())

    def calculate_totals(self) -> None:
        """
        Recalculate order totals from line items (not saved).

        subtotal is the undiscounted term price, discount the term discount,
        and the coupon comes off after both.
        """
        items = list(self.items.all())
        self.subtotal_cents = sum(item.gross_price_cents for item in items)
        self.discount_cents = self.subtotal_cents - sum(item.unit_price_cents * item.quantity for item in items)
        self.coupon_discount_cents = sum(item.coupon_discount_cents for item in items)
        self.total_cents = max(0, self.subtotal_cents - self.discount_cents - self.coupon_discount_cents)


def generate_order_number() -> str:
    """Format: ORD-YYYYMMDD-XXXXXX with a random suffix"""
    date_part = timezone.now().strftime("%Y%m%d")
    suffix = "".join(secrets.choice(ORDER_NUMBER_SUFFIX_CHARS) for _ in range(ORDER_NUMBER_SUFFIX_LENGTH))
    return f"ORD-{date_part}-{suffix}"


class OrderItem(models.Model):
    """
    One purchased plan within an order, with its price snapshot.
    ``unit_price_cents`` is the term price after the term discount;
    ``total_price_cents`` additionally deducts the coupon share.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name="items")
    product = models.ForeignKey("products.Product", on_delete=models.PROTECT, related_name="order_items")
    variant = models.ForeignKey(
        "products.ProductVariant",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="order_items",
    )

    # Snapshots at time of order
    product_name = models.CharField(max_length=200)
    variant_name = models.CharField(max_length=200, blank=True)

    quantity = models.PositiveIntegerField(default=1, validators=[MinValueValidator(1)])
    term_months = models.PositiveIntegerField(default=1)
    base_price_cents = models.BigIntegerField(default=0, help_text=_("Monthly base price"))
    discount_percent = models.DecimalField(max_digits=5, decimal_places=2, default=Decimal("0.00"))
    unit_price_cents = models.BigIntegerField(default=0, help_text=_("Term price after the term discount"))
    coupon_discount_cents = models.BigIntegerField(default=0)
    total_price_cents = models.BigIntegerField(default=0, help_text=_("Line total after coupon"))
    currency = models.CharField(max_length=3, default="USD")

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "order_items"
        verbose_name = _("Order Item")
        verbose_name_plural = _("Order Items")
        ordering: ClassVar[tuple[str, ...]] = ("created_at",)

    def __str__(self) -> str:
        return f"{self.product_name} {self.variant_name} x{self.quantity}".strip()

    @property
    def gross_price_cents(self) -> int:
        """Undiscounted term price of the line"""
        return self.base_price_cents * self.term_months * self.quantity

    def save(self, *args: Any, **kwargs: Any) -> None:
        """Derive the line total before saving"""
        self.total_price_cents = max(0, self.unit_price_cents * self.quantity - self.coupon_discount_cents)
        super().save(*args, **kwargs)


class OrderStatusHistory(models.Model):
    """
    Track order status changes for audit trail.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name="status_history")

    old_status = models.CharField(max_length=20, blank=True, help_text=_("Previous status"))
    new_status = models.CharField(max_length=20, help_text=_("New status"))

    changed_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
        help_text=_("User who made the change"),
    )
    reason = models.CharField(max_length=255, blank=True, help_text=_("Reason for status change"))
    notes = models.TextField(blank=True)
    is_automatic = models.BooleanField(default=True, help_text=_("Whether this was an automatic system change"))

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "order_status_history"
        verbose_name = _("Order Status History")
        verbose_name_plural = _("Order Status Histories")
        ordering: ClassVar[tuple[str, ...]] = ("-created_at",)
        indexes: ClassVar[tuple[models.Index, ...]] = (models.Index(fields=["order", "-created_at"]),)

    def __str__(self) -> str:
        return f"{self.order.order_number}: {self.old_status} → {self.new_status}"
