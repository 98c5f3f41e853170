# ===============================================================================
# TEST FACTORIES FOR THE PRODUCT CATALOG
# ===============================================================================

from dataclasses import dataclass
from decimal import Decimal

from apps.products.models import Product, ProductVariant, VariantPrice, VariantTerm


@dataclass
class CatalogFixture:
    """A product with one priced variant and its terms"""

    product: Product
    variant: ProductVariant
    terms: dict[int, VariantTerm]
    price: VariantPrice


def create_product(
    slug: str = "netflix-premium",
    name: str = "Netflix Premium",
    category: str = "Streaming",
    max_subscriptions: int | None = None,
    is_active: bool = True,
) -> Product:
    return Product.objects.create(
        slug=slug,
        name=name,
        category=category,
        max_subscriptions=max_subscriptions,
        is_active=is_active,
    )


def create_catalog(  # noqa: PLR0913
    slug: str = "netflix-premium",
    name: str = "Netflix Premium",
    category: str = "Streaming",
    price_cents: int = 1000,
    currency: str = "USD",
    term_discounts: dict[int, str] | None = None,
    max_subscriptions: int | None = None,
) -> CatalogFixture:
    """
    Create a product, an active variant, a monthly price and its terms.

    Default terms: 1 month (0%), 3 months (5%), 12 months (10%).
    """
    if term_discounts is None:
        term_discounts = {1: "0", 3: "5", 12: "10"}

    product = create_product(slug=slug, name=name, category=category, max_subscriptions=max_subscriptions)
    variant = ProductVariant.objects.create(product=product, name="4 screens")
    terms = {
        months: VariantTerm.objects.create(variant=variant, months=months, discount_percent=Decimal(discount))
        for months, discount in term_discounts.items()
    }
    price = VariantPrice.objects.create(variant=variant, currency=currency, price_cents=price_cents)
    return CatalogFixture(product=product, variant=variant, terms=terms, price=price)
