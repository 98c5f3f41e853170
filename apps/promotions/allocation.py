"""
Coupon discount allocation across order lines.

- ``highest_eligible_item``: the whole discount goes to the most expensive
  eligible line (first one on ties)
- ``order_total``: the discount on the eligible subtotal is spread over the
  eligible lines in proportion to their totals; leftover cents go to the lines
  with the largest remainders, lower index first on ties

All arithmetic is on integers, so allocations always sum to the total.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from apps.billing.pricing import clamp_percent, compute_percent_discount

APPLY_SCOPES = ("highest_eligible_item", "order_total")


@dataclass(frozen=True)
class AllocationItem:
    total_cents: int
    eligible: bool = True


@dataclass
class CouponAllocation:
    item_discounts: list[int] = field(default_factory=list)
    total_discount_cents: int = 0
    eligible_total_cents: int = 0


def normalize_apply_scope(value: str | None) -> str:
    return "order_total" if value == "order_total" else "highest_eligible_item"


def allocate_coupon_discount(
    items: list[AllocationItem], percent_off: Any, apply_scope: str | None = None
) -> CouponAllocation:
    """Split a percentage coupon over ``items``; returns one discount per item."""
    scope = normalize_apply_scope(apply_scope)
    percent = clamp_percent(percent_off)
    discounts = [0] * len(items)

    eligible = [(index, max(0, int(item.total_cents))) for index, item in enumerate(items) if item.eligible]
    eligible = [(index, total) for index, total in eligible if total > 0]
    eligible_total = sum(total for _, total in eligible)

    if not eligible or eligible_total <= 0 or percent <= 0:
        return CouponAllocation(discounts, 0, eligible_total)

    if scope == "highest_eligible_item":
        selected_index, highest_total = eligible[0]
        for index, total in eligible[1:]:
            if total > highest_total:
                selected_index, highest_total = index, total
        discounts[selected_index] = compute_percent_discount(highest_total, percent)
        return CouponAllocation(discounts, discounts[selected_index], eligible_total)

    total_discount = compute_percent_discount(eligible_total, percent)

    # (index, floor share, remainder numerator over eligible_total)
    shares = []
    for index, total in eligible:
        base, remainder = divmod(total_discount * total, eligible_total)
        shares.append([index, base, remainder])

    remaining = total_discount - sum(share[1] for share in shares)
    for share in sorted(shares, key=lambda s: (-s[2], s[0])):
        if remaining <= 0:
            break
        share[1] += 1
        remaining -= 1

    for index, base, _remainder in shares:
        discounts[index] = min(base, max(0, int(items[index].total_cents)))

    return CouponAllocation(discounts, sum(discounts), eligible_total)
