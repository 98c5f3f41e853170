"""
Subscription models for SubShare Platform
Term-based shared subscriptions paid with credits, their per-cycle renewal
locks and the operator fulfillment work created after each paid renewal.

Lifecycle: Active → Expired (term lapsed) or Cancelled.
"""

from __future__ import annotations

import math
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, ClassVar

from django.conf import settings
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.db.models import Q
from django.utils import timezone
from django.utils.translation import gettext_lazy as _

from .pricing import TermPricing, compute_term_pricing

# ===============================================================================
# SUBSCRIPTION
# ===============================================================================


class Subscription(models.Model):
    """
    A user's access to a shared product for a fixed term.

    The price snapshot (base price, term, discount) is what renewals bill from;
    later catalog price changes never affect an existing subscription.
    """

    STATUS_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("active", _("Active")),
        ("expired", _("Expired")),
        ("cancelled", _("Cancelled")),
    )

    RENEWAL_METHOD_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("credits", _("Credits")),
        ("stripe", _("Card (Stripe)")),
        ("manual", _("Manual")),
    )

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    # Core relationships
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="subscriptions",
    )
    order = models.ForeignKey(
        "orders.Order",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="subscriptions",
        help_text=_("Order that created this subscription"),
    )
    product = models.ForeignKey("products.Product", on_delete=models.PROTECT, related_name="subscriptions")
    variant = models.ForeignKey(
        "products.ProductVariant",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="subscriptions",
    )

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="active")
    status_reason = models.CharField(max_length=100, blank=True)

    # Price snapshot
    currency = models.CharField(max_length=3, default="USD")
    base_price_cents = models.BigIntegerField(
        validators=[MinValueValidator(0)], help_text=_("Monthly base price at purchase time")
    )
    term_months = models.PositiveIntegerField(default=1, validators=[MinValueValidator(1), MaxValueValidator(60)])
    discount_percent = models.DecimalField(max_digits=5, decimal_places=2, default=Decimal("0.00"))
    price_cents = models.BigIntegerField(
        validators=[MinValueValidator(0)], help_text=_("Total charged for the term, after discounts")
    )

    # Term
    term_start_at = models.DateTimeField()
    term_end_at = models.DateTimeField()
    renewal_date = models.DateTimeField(null=True, blank=True)
    next_billing_at = models.DateTimeField(null=True, blank=True)

    # Renewal settings
    auto_renew = models.BooleanField(default=False)
    renewal_method = models.CharField(max_length=20, choices=RENEWAL_METHOD_CHOICES, default="credits")
    cancellation_requested_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "subscriptions"
        verbose_name = _("Subscription")
        verbose_name_plural = _("Subscriptions")
        ordering: ClassVar[tuple[str, ...]] = ("-created_at",)
        indexes: ClassVar[tuple[models.Index, ...]] = (
            models.Index(fields=["user", "status"]),
            models.Index(fields=["product", "status"]),
            models.Index(
                fields=["status", "next_billing_at"],
                condition=Q(status="active", auto_renew=True),
                name="idx_sub_due_renewal",
            ),
            models.Index(fields=["status", "term_end_at"]),
        )
        constraints: ClassVar[list[models.CheckConstraint]] = [
            models.CheckConstraint(condition=Q(price_cents__gte=0), name="subscription_price_non_negative"),
            models.CheckConstraint(
                condition=Q(term_end_at__gt=models.F("term_start_at")),
                name="subscription_term_end_after_start",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.product_id} for {self.user_id} until {self.term_end_at:%Y-%m-%d} ({self.status})"

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    @property
    def is_cancellation_requested(self) -> bool:
        return self.cancellation_requested_at is not None

    def days_until_expiry(self, now: datetime | None = None) -> int:
        """Days until the term ends, rounded up; zero or negative once lapsed."""
        now = now or timezone.now()
        return math.ceil((self.term_end_at - now).total_seconds() / 86400)

    def compute_renewal_pricing(self) -> TermPricing:
        """Price of the next term, recomputed from the stored snapshot."""
        return compute_term_pricing(self.base_price_cents, self.term_months, self.discount_percent)


# ===============================================================================
# RENEWAL CYCLE LOCK
# ===============================================================================


class SubscriptionRenewal(models.Model):
    """
    One renewal attempt per (subscription, cycle end date).

    The unique constraint is the lock: whichever worker inserts or claims the
    row owns the cycle. Succeeded cycles are never charged again.
    """

    STATUS_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("pending", _("Pending")),
        ("processing", _("Processing")),
        ("succeeded", _("Succeeded")),
        ("failed", _("Failed")),
        ("canceled", _("Canceled")),
    )

    RETRYABLE_STATUSES: ClassVar[tuple[str, ...]] = ("failed", "canceled")

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    subscription = models.ForeignKey(Subscription, on_delete=models.CASCADE, related_name="renewals")
    cycle_end_date = models.DateTimeField(help_text=_("Term end this renewal extends"))

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="pending")
    method = models.CharField(max_length=20, default="credits")
    amount_cents = models.BigIntegerField(default=0)
    currency = models.CharField(max_length=3, default="USD")
    credit_transaction = models.ForeignKey(
        "billing.CreditTransaction",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="renewals",
    )
    attempts = models.PositiveIntegerField(default=0)
    last_error = models.CharField(max_length=200, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "subscription_renewals"
        verbose_name = _("Subscription Renewal")
        verbose_name_plural = _("Subscription Renewals")
        ordering: ClassVar[tuple[str, ...]] = ("-created_at",)
        constraints: ClassVar[list[models.UniqueConstraint]] = [
            models.UniqueConstraint(fields=["subscription", "cycle_end_date"], name="unique_renewal_per_cycle"),
        ]

    def __str__(self) -> str:
        return f"Renewal {self.subscription_id} @ {self.cycle_end_date:%Y-%m-%d} ({self.status})"


# ===============================================================================
# FULFILLMENT TASKS
# ===============================================================================


class FulfillmentTask(models.Model):
    """Operator work item: extend the shared account after a paid renewal."""

    TASK_TYPE_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (("renewal", _("Renewal")),)

    STATUS_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("open", _("Open")),
        ("in_progress", _("In Progress")),
        ("done", _("Done")),
        ("cancelled", _("Cancelled")),
    )

    OPEN_STATUSES: ClassVar[tuple[str, ...]] = ("open", "in_progress")

    PRIORITY_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("low", _("Low")),
        ("normal", _("Normal")),
        ("high", _("High")),
    )

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    subscription = models.ForeignKey(Subscription, on_delete=models.CASCADE, related_name="fulfillment_tasks")
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="+")
    task_type = models.CharField(max_length=20, choices=TASK_TYPE_CHOICES, default="renewal")
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="open")
    priority = models.CharField(max_length=10, choices=PRIORITY_CHOICES, default="normal")
    due_at = models.DateTimeField()
    notes = models.TextField(blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "subscription_fulfillment_tasks"
        verbose_name = _("Fulfillment Task")
        verbose_name_plural = _("Fulfillment Tasks")
        ordering: ClassVar[tuple[str, ...]] = ("due_at",)
        indexes: ClassVar[tuple[models.Index, ...]] = (
            models.Index(fields=["subscription", "task_type", "status"]),
            models.Index(fields=["status", "due_at"]),
        )

    def __str__(self) -> str:
        return f"{self.task_type} task for {self.subscription_id} due {self.due_at:%Y-%m-%d %H:%M}"

    @property
    def is_open(self) -> bool:
        return self.status in self.OPEN_STATUSES
