"""
Product Catalog models for SubShare Platform
Shared-subscription products, their purchasable variants, the term options
each variant offers and per-currency monthly prices.
"""

from __future__ import annotations

import uuid
from decimal import Decimal
from typing import Any, ClassVar

from django.core.exceptions import ValidationError
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.db.models import F, Q
from django.utils import timezone
from django.utils.translation import gettext_lazy as _

MAX_PRICE_CENTS = 100_000_000  # Maximum price in cents (1M major units)
MAX_TERM_MONTHS = 60


class Product(models.Model):
    """
    A shared subscription service offered in the storefront (e.g. a streaming plan).
    ``category`` drives category-scoped coupons.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    slug = models.SlugField(unique=True, max_length=100, help_text=_("URL-friendly identifier"))
    name = models.CharField(max_length=200, help_text=_("Display name for customers"))
    category = models.CharField(max_length=100, blank=True, help_text=_("Catalog category (e.g. 'streaming')"))
    description = models.TextField(blank=True)

    is_active = models.BooleanField(default=True, help_text=_("Whether product is available for purchase"))
    max_subscriptions = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text=_("Maximum active subscriptions per user (blank for unlimited)"),
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "products"
        verbose_name = _("Product")
        verbose_name_plural = _("Products")
        ordering: ClassVar[tuple[str, ...]] = ("name",)
        indexes: ClassVar[tuple[models.Index, ...]] = (
            models.Index(fields=["slug"]),
            models.Index(fields=["category", "is_active"]),
        )

    def __str__(self) -> str:
        return self.name

    @property
    def normalized_category(self) -> str:
        """Category compared case-insensitively by coupon scope checks"""
        return (self.category or "").strip().lower()


class ProductVariant(models.Model):
    """A purchasable plan of a product (e.g. 'Premium 4 screens')."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    product = models.ForeignKey(Product, on_delete=models.CASCADE, related_name="variants")
    name = models.CharField(max_length=200)
    is_active = models.BooleanField(default=True)
    sort_order = models.PositiveIntegerField(default=0)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "product_variants"
        verbose_name = _("Product Variant")
        verbose_name_plural = _("Product Variants")
        ordering: ClassVar[tuple[str, ...]] = ("product", "sort_order", "name")
        indexes: ClassVar[tuple[models.Index, ...]] = (models.Index(fields=["product", "is_active"]),)

    def __str__(self) -> str:
        return f"{self.product.name} - {self.name}"


class VariantTerm(models.Model):
    """
    A billing term a variant can be bought for, with its term discount.
    The discount is applied once to the whole term (see apps.billing.pricing).
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    variant = models.ForeignKey(ProductVariant, on_delete=models.CASCADE, related_name="terms")
    months = models.PositiveIntegerField(validators=[MinValueValidator(1), MaxValueValidator(MAX_TERM_MONTHS)])
    discount_percent = models.DecimalField(
        max_digits=5,
        decimal_places=2,
        default=Decimal("0.00"),
        validators=[MinValueValidator(0), MaxValueValidator(100)],
        help_text=_("Percentage discount for the whole term (0-100)"),
    )
    is_active = models.BooleanField(default=True)

    class Meta:
        db_table = "product_variant_terms"
        verbose_name = _("Variant Term")
        verbose_name_plural = _("Variant Terms")
        ordering: ClassVar[tuple[str, ...]] = ("variant", "months")
        constraints: ClassVar[tuple[models.UniqueConstraint, ...]] = (
            models.UniqueConstraint(fields=["variant", "months"], name="unique_variant_term_months"),
        )

    def __str__(self) -> str:
        return f"{self.variant} / {self.months}m (-{self.discount_percent}%)"


class VariantPrice(models.Model):
    """
    Monthly base price of a variant in one currency, valid for a time window.
    The current price is the one whose window contains *now*; a null bound is open.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    variant = models.ForeignKey(ProductVariant, on_delete=models.CASCADE, related_name="prices")
    currency = models.CharField(max_length=3, help_text=_("ISO 4217 currency code"))
    price_cents = models.BigIntegerField(
        validators=[MinValueValidator(0), MaxValueValidator(MAX_PRICE_CENTS)],
        help_text=_("Monthly base price in cents"),
    )
    starts_at = models.DateTimeField(null=True, blank=True)
    ends_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "product_variant_prices"
        verbose_name = _("Variant Price")
        verbose_name_plural = _("Variant Prices")
        ordering: ClassVar[tuple[str, ...]] = ("-starts_at", "-created_at")
        indexes: ClassVar[tuple[models.Index, ...]] = (models.Index(fields=["variant", "currency"]),)

    def __str__(self) -> str:
        return f"{self.variant} {self.currency} {self.price_cents}"

    def save(self, *args: Any, **kwargs: Any) -> None:
        """Normalize currency to uppercase before saving."""
        if self.currency:
            self.currency = self.currency.strip().upper()
        super().save(*args, **kwargs)

    def clean(self) -> None:
        super().clean()
        if self.starts_at and self.ends_at and self.ends_at <= self.starts_at:
            raise ValidationError("ends_at must be after starts_at")

    @classmethod
    def current_for(cls, variant: ProductVariant, currency: str, using: str = "default") -> VariantPrice | None:
        """Price whose validity window contains now, most recent first."""
        now = timezone.now()
        return (
            cls.objects.using(using)
            .filter(variant=variant, currency=currency.upper())
            .filter(Q(starts_at__isnull=True) | Q(starts_at__lte=now))
            .filter(Q(ends_at__isnull=True) | Q(ends_at__gt=now))
            .order_by(F("starts_at").desc(nulls_last=True), "-created_at")
            .first()
        )
