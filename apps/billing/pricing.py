"""
Term pricing for SubShare Platform.

Pure functions, no database access. All inputs and outputs are integer minor
units; percentages are Decimal. Rounding happens exactly once, on the term
total, using ROUND_HALF_UP on exact decimal arithmetic. Per-month rounding
would compound the error over long terms.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

HUNDRED = Decimal("100")


@dataclass(frozen=True)
class TermPricing:
    """Price snapshot persisted on orders and subscriptions."""

    base_price_cents: int
    term_months: int
    discount_percent: Decimal
    total_price_cents: int
    discount_cents: int

    @property
    def gross_price_cents(self) -> int:
        """Undiscounted term price"""
        return self.base_price_cents * self.term_months

    def as_snapshot(self) -> dict[str, Any]:
        """JSON-safe representation for order/transaction metadata"""
        return {
            "base_price_cents": self.base_price_cents,
            "term_months": self.term_months,
            "discount_percent": str(self.discount_percent),
            "total_price_cents": self.total_price_cents,
            "discount_cents": self.discount_cents,
        }


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def clamp_percent(value: Any) -> Decimal:
    """Coerce to a Decimal percentage within [0, 100]; garbage becomes 0."""
    try:
        percent = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return Decimal("0")
    if not percent.is_finite() or percent < 0:
        return Decimal("0")
    return min(percent, HUNDRED)


def compute_term_pricing(base_price_cents: int, term_months: int, discount_percent: Any) -> TermPricing:
    """
    Total price of a multi-month term after a percentage discount.

    total = round(base * term * (1 - discount/100)), rounded once at the end.

    >>> compute_term_pricing(1000, 12, 10).total_price_cents
    10800
    """
    base = max(0, int(base_price_cents))
    term = max(1, int(term_months))
    percent = clamp_percent(discount_percent)

    gross = base * term
    total = _round_half_up(Decimal(gross) * (HUNDRED - percent) / HUNDRED)
    total = max(0, total)

    return TermPricing(
        base_price_cents=base,
        term_months=term,
        discount_percent=percent,
        total_price_cents=total,
        discount_cents=gross - total,
    )


def compute_effective_monthly_cents(total_price_cents: int, term_months: int) -> int:
    """Per-month equivalent for plan comparison. Never used for billing."""
    term = max(1, int(term_months))
    return _round_half_up(Decimal(int(total_price_cents)) / Decimal(term))


def compute_percent_discount(amount_cents: int, percent_off: Any) -> int:
    """Discount of ``percent_off`` on ``amount_cents``, never more than the amount."""
    amount = max(0, int(amount_cents))
    percent = clamp_percent(percent_off)
    return min(amount, _round_half_up(Decimal(amount) * percent / HUNDRED))
