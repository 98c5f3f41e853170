"""
Catalog pricing services for SubShare Platform.
Resolves a (variant, term, currency) choice into a term price snapshot.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from django.core.exceptions import ValidationError as DjangoValidationError

from apps.billing.pricing import TermPricing, compute_effective_monthly_cents, compute_term_pricing
from apps.common.constants import (
    PRICE_UNAVAILABLE,
    TERM_UNAVAILABLE,
    VARIANT_INACTIVE,
    VARIANT_NOT_FOUND,
)
from apps.common.types import EligibilityError, Err, Ok, Result, ValidationError
from apps.common.validators import normalize_currency

from .models import Product, ProductVariant, VariantPrice, VariantTerm

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VariantPricing:
    """Everything a checkout needs to price one variant for one term."""

    product: Product
    variant: ProductVariant
    term: VariantTerm
    currency: str
    pricing: TermPricing

    @property
    def total_price_cents(self) -> int:
        return self.pricing.total_price_cents

    @property
    def effective_monthly_cents(self) -> int:
        return compute_effective_monthly_cents(self.pricing.total_price_cents, self.pricing.term_months)


class VariantPricingService:
    """
    Price lookups against the live catalog.

    Only purchases read live prices; renewals recompute from the snapshot stored
    on the subscription.
    """

    def __init__(self, using: str = "default"):
        self.using = using

    def resolve_variant_pricing(
        self, variant_id: Any, term_months: int, currency: str
    ) -> Result[VariantPricing, ValidationError | EligibilityError]:
        """
        Resolve the term pricing for a variant.

        Error codes: ``invalid_currency``, ``variant_not_found``, ``inactive``,
        ``term_unavailable``, ``price_unavailable``.
        """
        currency_result = normalize_currency(currency)
        if currency_result.is_err():
            return currency_result
        currency_code = currency_result.unwrap()

        try:
            variant = ProductVariant.objects.using(self.using).select_related("product").get(pk=variant_id)
        except (ProductVariant.DoesNotExist, DjangoValidationError, ValueError, TypeError):
            return Err(EligibilityError(VARIANT_NOT_FOUND, "Product variant not found"))

        if not variant.is_active or not variant.product.is_active:
            return Err(EligibilityError(VARIANT_INACTIVE, "Product variant is not available"))

        term = (
            VariantTerm.objects.using(self.using)
            .filter(variant=variant, months=term_months, is_active=True)
            .first()
        )
        if term is None:
            return Err(EligibilityError(TERM_UNAVAILABLE, f"{term_months}-month term is not offered for this plan"))

        price = VariantPrice.current_for(variant, currency_code, using=self.using)
        if price is None:
            logger.warning(
                f"⚠️ [Catalog] No current {currency_code} price for variant {variant.id}",
                extra={"variant_id": str(variant.id), "currency": currency_code},
            )
            return Err(EligibilityError(PRICE_UNAVAILABLE, f"Plan is not priced in {currency_code}"))

        pricing = compute_term_pricing(price.price_cents, term.months, term.discount_percent)
        return Ok(
            VariantPricing(
                product=variant.product,
                variant=variant,
                term=term,
                currency=currency_code,
                pricing=pricing,
            )
        )

    def list_term_options(self, variant: ProductVariant, currency: str) -> list[dict[str, Any]]:
        """Active terms of a variant with totals and per-month equivalents, for plan comparison."""
        currency_result = normalize_currency(currency)
        if currency_result.is_err():
            return []
        price = VariantPrice.current_for(variant, currency_result.unwrap(), using=self.using)
        if price is None:
            return []

        options = []
        terms = VariantTerm.objects.using(self.using).filter(variant=variant, is_active=True).order_by("months")
        for term in terms:
            pricing = compute_term_pricing(price.price_cents, term.months, term.discount_percent)
            options.append(
                {
                    "term_months": term.months,
                    "discount_percent": str(pricing.discount_percent),
                    "total_price_cents": pricing.total_price_cents,
                    "effective_monthly_cents": compute_effective_monthly_cents(
                        pricing.total_price_cents, pricing.term_months
                    ),
                    "currency": price.currency,
                }
            )
        return options
