# ===============================================================================
# COUPON ALLOCATION TESTS
# ===============================================================================

import pytest

from apps.promotions.allocation import AllocationItem, allocate_coupon_discount, normalize_apply_scope


class TestHighestEligibleItem:
    def test_discount_goes_to_most_expensive_line(self):
        items = [AllocationItem(500), AllocationItem(800), AllocationItem(300)]
        allocation = allocate_coupon_discount(items, "10", "highest_eligible_item")

        assert allocation.item_discounts == [0, 80, 0]
        assert allocation.total_discount_cents == 80
        assert allocation.eligible_total_cents == 1600

    def test_first_line_wins_ties(self):
        allocation = allocate_coupon_discount([AllocationItem(800), AllocationItem(800)], "10")
        assert allocation.item_discounts == [80, 0]

    def test_ineligible_lines_are_skipped(self):
        items = [AllocationItem(900, eligible=False), AllocationItem(100)]
        allocation = allocate_coupon_discount(items, "10")

        assert allocation.item_discounts == [0, 10]
        assert allocation.eligible_total_cents == 100


class TestOrderTotal:
    def test_even_split(self):
        items = [AllocationItem(1000)] * 3
        allocation = allocate_coupon_discount(items, "10", "order_total")
        assert allocation.item_discounts == [100, 100, 100]

    def test_leftover_cents_go_to_largest_remainders(self):
        # 50% of 3 cents rounds half-up to 2; equal remainders favour lower indexes
        items = [AllocationItem(1), AllocationItem(1), AllocationItem(1)]
        allocation = allocate_coupon_discount(items, "50", "order_total")

        assert allocation.item_discounts == [1, 1, 0]
        assert allocation.total_discount_cents == 2

    @pytest.mark.parametrize(
        "totals",
        [[333, 333, 334], [1, 999, 7, 12345], [10800, 2850, 1000]],
    )
    def test_allocations_sum_to_discount_and_stay_within_lines(self, totals):
        items = [AllocationItem(total) for total in totals]
        allocation = allocate_coupon_discount(items, "17.5", "order_total")

        assert sum(allocation.item_discounts) == allocation.total_discount_cents
        assert all(0 <= d <= t for d, t in zip(allocation.item_discounts, totals, strict=True))


class TestEdgeCases:
    def test_no_eligible_items(self):
        allocation = allocate_coupon_discount([AllocationItem(500, eligible=False)], "10")
        assert allocation.item_discounts == [0]
        assert allocation.total_discount_cents == 0

    def test_zero_percent(self):
        allocation = allocate_coupon_discount([AllocationItem(500)], "0", "order_total")
        assert allocation.total_discount_cents == 0

    def test_unknown_apply_scope_falls_back(self):
        assert normalize_apply_scope("whatever") == "highest_eligible_item"
        assert normalize_apply_scope(None) == "highest_eligible_item"
        assert normalize_apply_scope("order_total") == "order_total"
