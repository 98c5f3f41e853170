# ===============================================================================
# COUPON SLOT CONCURRENCY TESTS
# ===============================================================================
"""
The last redemption slot must go to exactly one purchase, and parallel reward
claims must issue one coupon. Threaded runs need PostgreSQL row locks
(USE_POSTGRES=true).
"""

import threading
import unittest

from django.contrib.auth import get_user_model
from django.db import close_old_connections, connection, transaction
from django.test import TestCase, TransactionTestCase

from apps.promotions.models import Coupon, CouponRedemption
from apps.promotions.services import CouponService
from tests.factories.catalog_factories import create_product
from tests.factories.promotion_factories import create_coupon, create_order

User = get_user_model()


class SequentialLastSlotTests(TestCase):
    def test_second_reservation_of_last_slot_fails(self):
        product = create_product()
        coupon = create_coupon("LASTONE", max_redemptions=1)
        service = CouponService()
        results = []
        for index in range(2):
            user = User.objects.create_user(username=f"buyer{index}", email=f"b{index}@subshare.test", password="x")
            order = create_order(user)
            results.append(service.reserve_coupon_redemption(coupon.pk, user, order, product, 1000, 1, "USD"))

        self.assertTrue(results[0].is_ok())
        self.assertEqual(results[1].unwrap_err().code, "max_redemptions")
        self.assertEqual(CouponRedemption.objects.filter(coupon=coupon).count(), 1)


@unittest.skipUnless(connection.vendor == "postgresql", "Row locks need PostgreSQL")
class ConcurrentLastSlotTests(TransactionTestCase):
    def test_one_winner_for_last_slot(self):
        workers = 6
        product = create_product()
        coupon = create_coupon("LASTONE", max_redemptions=1)
        buyers = []
        for index in range(workers):
            user = User.objects.create_user(username=f"racer{index}", email=f"r{index}@subshare.test", password="x")
            buyers.append((user, create_order(user)))

        barrier = threading.Barrier(workers)
        codes: list[str] = []
        lock = threading.Lock()

        def reserve(user, order) -> None:
            try:
                barrier.wait()
                with transaction.atomic():
                    result = CouponService().reserve_coupon_redemption(
                        coupon.pk, user, order, product, 1000, 1, "USD"
                    )
                with lock:
                    codes.append("ok" if result.is_ok() else result.unwrap_err().code)
            finally:
                close_old_connections()
                connection.close()

        threads = [threading.Thread(target=reserve, args=buyer) for buyer in buyers]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(codes.count("ok"), 1)
        self.assertEqual(codes.count("max_redemptions"), workers - 1)
        self.assertEqual(CouponRedemption.objects.filter(coupon=coupon, status="reserved").count(), 1)


@unittest.skipUnless(connection.vendor == "postgresql", "Row locks need PostgreSQL")
class ConcurrentRewardClaimTests(TransactionTestCase):
    def test_parallel_claims_issue_one_coupon(self):
        workers = 4
        user = User.objects.create_user(username="claimer", email="claimer@subshare.test", password="x")
        barrier = threading.Barrier(workers)
        coupon_ids: list = []
        lock = threading.Lock()

        def claim() -> None:
            try:
                barrier.wait()
                coupon = CouponService().claim_reward(user, "welcome").unwrap()
                with lock:
                    coupon_ids.append(coupon.pk)
            finally:
                close_old_connections()
                connection.close()

        threads = [threading.Thread(target=claim) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(len(coupon_ids), workers)
        self.assertEqual(len(set(coupon_ids)), 1)
        self.assertEqual(Coupon.objects.filter(bound_user=user).count(), 1)
