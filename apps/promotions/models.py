"""
Promotions and Coupons models for SubShare Platform.

Supports:
- Percentage coupons scoped globally, to a catalog category or to one product
- Optional term restriction (e.g. only 12-month purchases)
- Total redemption limits enforced through reservation slots
- Personal coupons bound to one user, first-order-only coupons
"""

from __future__ import annotations

import secrets
import string
import uuid
from decimal import Decimal
from typing import Any, ClassVar

from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.db.models import F, Q
from django.utils import timezone
from django.utils.translation import gettext_lazy as _

# ===============================================================================
# Constants
# ===============================================================================

COUPON_CODE_LENGTH = 10
COUPON_CODE_CHARS = string.ascii_uppercase + string.digits
MAX_COUPON_CODE_LENGTH = 50

MAX_DISCOUNT_PERCENT = Decimal("100.00")


# ===============================================================================
# Coupon Model
# ===============================================================================


class Coupon(models.Model):
    """
    Coupon code granting a percentage discount on a purchase.
    """

    STATUS_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("active", _("Active")),
        ("inactive", _("Inactive")),
        ("archived", _("Archived")),
    )

    SCOPE_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("global", _("All Products")),
        ("category", _("Product Category")),
        ("product", _("Single Product")),
    )

    APPLY_SCOPE_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("highest_eligible_item", _("Highest Eligible Item")),
        ("order_total", _("Order Total")),
    )

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    # Coupon identification
    code = models.CharField(
        max_length=MAX_COUPON_CODE_LENGTH,
        unique=True,
        help_text=_("Unique coupon code, upper-case letters and digits"),
    )
    name = models.CharField(max_length=200, blank=True, help_text=_("Internal name for this coupon"))

    percent_off = models.DecimalField(
        max_digits=5,
        decimal_places=2,
        validators=[MinValueValidator(0), MaxValueValidator(100)],
        help_text=_("Percentage discount (0-100)"),
    )

    # Restrictions
    scope = models.CharField(max_length=20, choices=SCOPE_CHOICES, default="global")
    apply_scope = models.CharField(max_length=30, choices=APPLY_SCOPE_CHOICES, default="highest_eligible_item")
    category = models.CharField(max_length=100, blank=True, help_text=_("Category for category-scoped coupons"))
    product = models.ForeignKey(
        "products.Product",
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name="coupons",
        help_text=_("Product for product-scoped coupons"),
    )
    term_months = models.PositiveIntegerField(
        null=True, blank=True, help_text=_("Only valid for this term length (blank for any)")
    )

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="active")
    starts_at = models.DateTimeField(null=True, blank=True)
    ends_at = models.DateTimeField(null=True, blank=True)

    max_redemptions = models.PositiveIntegerField(
        null=True, blank=True, help_text=_("Total redemption slots (blank for unlimited)")
    )
    bound_user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name="personal_coupons",
        help_text=_("Only this user may redeem the coupon"),
    )
    first_order_only = models.BooleanField(default=False, help_text=_("Only for users without a paid order"))

    # Usage tracking (finalized redemptions only)
    total_uses = models.PositiveIntegerField(default=0)
    total_discount_cents = models.BigIntegerField(default=0)

    metadata = models.JSONField(default=dict, blank=True)

    # Audit
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="created_coupons",
    )

    class Meta:
        db_table = "promotion_coupons"
        verbose_name = _("Coupon")
        verbose_name_plural = _("Coupons")
        ordering: ClassVar[tuple[str, ...]] = ("-created_at",)
        indexes: ClassVar[tuple[models.Index, ...]] = (
            models.Index(fields=["status", "scope"]),
            models.Index(fields=["bound_user"]),
            models.Index(fields=["starts_at", "ends_at"]),
        )
        constraints: ClassVar[tuple[models.CheckConstraint, ...]] = (
            models.CheckConstraint(
                condition=Q(percent_off__gte=0) & Q(percent_off__lte=100),
                name="coupon_percent_off_range",
            ),
        )

    def __str__(self) -> str:
        return f"{self.code} (-{self.percent_off}%)"

    def save(self, *args: Any, **kwargs: Any) -> None:
        """Normalize code and category before saving."""
        if self.code:
            self.code = normalize_code(self.code)
        if self.category:
            self.category = self.category.strip().lower()
        super().save(*args, **kwargs)

    def clean(self) -> None:
        """Validate coupon configuration."""
        super().clean()
        self._validate_scope_target()
        if self.ends_at and self.starts_at and self.ends_at <= self.starts_at:
            raise ValidationError("ends_at must be after starts_at")

    def _validate_scope_target(self) -> None:
        """Global coupons name no target; category and product coupons name exactly theirs."""
        has_category = bool((self.category or "").strip())
        has_product = self.product_id is not None
        if self.scope == "global" and (has_category or has_product):
            raise ValidationError("Global coupons cannot target a category or product")
        if self.scope == "category" and (not has_category or has_product):
            raise ValidationError("Category coupons require a category and no product")
        if self.scope == "product" and (not has_product or has_category):
            raise ValidationError("Product coupons require a product and no category")

    def is_live(self, now: Any = None) -> bool:
        """Active status and inside the validity window."""
        now = now or timezone.now()
        if self.status != "active":
            return False
        if self.starts_at and now < self.starts_at:
            return False
        return not (self.ends_at and now >= self.ends_at)

    MAX_CODE_GENERATION_ATTEMPTS = 100

    @classmethod
    def generate_code(
        cls,
        length: int = COUPON_CODE_LENGTH,
        prefix: str = "",
        max_attempts: int | None = None,
    ) -> str:
        """
        Generate a unique coupon code.

        Raises:
            ValueError: If a unique code cannot be generated within max_attempts.
        """
        if max_attempts is None:
            max_attempts = cls.MAX_CODE_GENERATION_ATTEMPTS

        prefix = normalize_code(prefix)
        for _attempt in range(max_attempts):
            random_part = "".join(secrets.choice(COUPON_CODE_CHARS) for _ in range(length))
            code = f"{prefix}{random_part}"
            if not cls.objects.filter(code=code).exists():
                return code

        raise ValueError(f"Could not generate unique coupon code after {max_attempts} attempts.")


def normalize_code(raw: str | None) -> str:
    """Upper-case and strip everything outside A-Z and 0-9."""
    return "".join(ch for ch in (raw or "").upper() if ch in COUPON_CODE_CHARS)[:MAX_COUPON_CODE_LENGTH]


# ===============================================================================
# Coupon Redemption Model
# ===============================================================================


class CouponRedemption(models.Model):
    """
    A redemption slot of a coupon, held by one order.

    reserved → redeemed (purchase completed)
    reserved → voided   (purchase failed, slot released)
    reserved → expired  (reservation outlived its TTL, slot released)
    """

    STATUS_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("reserved", _("Reserved")),
        ("redeemed", _("Redeemed")),
        ("voided", _("Voided")),
        ("expired", _("Expired")),
    )

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    # Relationships
    coupon = models.ForeignKey(
        Coupon,
        on_delete=models.PROTECT,
        related_name="redemptions",
        help_text=_("The coupon that was redeemed"),
    )
    order = models.ForeignKey(
        "orders.Order",
        on_delete=models.CASCADE,
        related_name="coupon_redemptions",
        help_text=_("The order holding this slot"),
    )
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="coupon_redemptions",
    )

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="reserved")

    # Discount calculation snapshot
    subtotal_cents = models.BigIntegerField(help_text=_("Order subtotal before the coupon"))
    discount_cents = models.BigIntegerField(default=0, help_text=_("Coupon discount in cents"))
    currency = models.CharField(max_length=3, default="USD")

    # Timestamps
    created_at = models.DateTimeField(auto_now_add=True)
    expires_at = models.DateTimeField(null=True, blank=True, help_text=_("Reservation is released after this"))
    redeemed_at = models.DateTimeField(null=True, blank=True)
    voided_at = models.DateTimeField(null=True, blank=True)
    void_reason = models.CharField(max_length=100, blank=True)

    class Meta:
        db_table = "promotion_coupon_redemptions"
        verbose_name = _("Coupon Redemption")
        verbose_name_plural = _("Coupon Redemptions")
        ordering: ClassVar[tuple[str, ...]] = ("-created_at",)
        indexes: ClassVar[tuple[models.Index, ...]] = (
            models.Index(fields=["coupon", "status"]),
            models.Index(fields=["user", "status"]),
            models.Index(fields=["status", "expires_at"]),
        )
        constraints: ClassVar[tuple[models.UniqueConstraint, ...]] = (
            # Prevent same coupon being applied to same order twice
            models.UniqueConstraint(
                fields=["coupon", "order"],
                name="unique_coupon_per_order",
            ),
        )

    def __str__(self) -> str:
        return f"{self.coupon.code} on {self.order_id} ({self.status})"

    @classmethod
    def live_filter(cls, now: Any = None) -> Q:
        """Rows that occupy a slot: redeemed, or reserved and not yet expired."""
        now = now or timezone.now()
        return Q(status="redeemed") | (Q(status="reserved") & (Q(expires_at__isnull=True) | Q(expires_at__gt=now)))

    def mark_redeemed(self, using: str = "default") -> None:
        """Finalize the slot and count the use on the coupon."""
        self.status = "redeemed"
        self.redeemed_at = timezone.now()
        self.save(using=using, update_fields=["status", "redeemed_at"])

        Coupon.objects.using(using).filter(pk=self.coupon_id).update(
            total_uses=F("total_uses") + 1,
            total_discount_cents=F("total_discount_cents") + self.discount_cents,
        )
