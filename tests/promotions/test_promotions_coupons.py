# ===============================================================================
# COUPON SERVICE TESTS
# ===============================================================================

from datetime import timedelta
from decimal import Decimal
from unittest import mock

from django.contrib.auth import get_user_model
from django.db import DatabaseError
from django.test import TestCase, override_settings
from django.utils import timezone

from apps.promotions.models import Coupon, CouponRedemption
from apps.promotions.services import CouponService
from apps.promotions.tasks import expire_coupon_reservations
from tests.factories.catalog_factories import create_catalog, create_product
from tests.factories.promotion_factories import create_coupon, create_order

User = get_user_model()


class CouponTestMixin:
    def setUp(self):
        self.user = User.objects.create_user(username="shopper", email="shopper@subshare.test", password="x")
        self.product = create_product(category="Streaming")
        self.service = CouponService()
        self.now = timezone.now()

    def validate(self, code, user=None, product=None, subtotal_cents=1000, term_months=1):
        return self.service.validate_coupon_for_order(
            code, user or self.user, product or self.product, subtotal_cents, term_months, now=self.now
        )

    def reserve(self, coupon, user=None, subtotal_cents=1000, term_months=1):
        user = user or self.user
        order = create_order(user, total_cents=subtotal_cents)
        result = self.service.reserve_coupon_redemption(
            coupon.pk, user, order, self.product, subtotal_cents, term_months, "USD", now=self.now
        )
        return order, result


class CouponValidationTests(CouponTestMixin, TestCase):
    def test_valid_coupon_quotes_discount(self):
        create_coupon("SPRING10", "10")

        quote = self.validate(" spring-10 ", subtotal_cents=10800).unwrap()

        self.assertEqual(quote.coupon.code, "SPRING10")
        self.assertEqual(quote.discount_cents, 1080)
        self.assertEqual(quote.total_cents, 9720)

    def test_quote_allocates_discount_per_line(self):
        for code, apply_scope in (("TOPITEM", "highest_eligible_item"), ("WHOLEORDER", "order_total")):
            with self.subTest(apply_scope=apply_scope):
                create_coupon(code, "15", apply_scope=apply_scope)
                quote = self.validate(code, subtotal_cents=999).unwrap()
                self.assertEqual(quote.discount_cents, 150)
                self.assertEqual(quote.item_discounts, (150,))

    def test_unknown_or_blank_code(self):
        self.assertEqual(self.validate("NOPE").unwrap_err().code, "coupon_invalid")
        self.assertEqual(self.validate("").unwrap_err().code, "coupon_invalid")

    def test_inactive_or_outside_window(self):
        create_coupon("PAUSED", status="inactive")
        create_coupon("LATER", starts_at=self.now + timedelta(days=1))
        create_coupon("OVER", ends_at=self.now)
        for code in ("PAUSED", "LATER", "OVER"):
            with self.subTest(code=code):
                self.assertEqual(self.validate(code).unwrap_err().code, "coupon_invalid")

    def test_personal_coupon_rejects_other_users(self):
        owner = User.objects.create_user(username="owner", email="owner@subshare.test", password="x")
        create_coupon("MINE", bound_user=owner)

        self.assertEqual(self.validate("MINE").unwrap_err().code, "coupon_invalid")
        self.assertTrue(self.validate("MINE", user=owner).is_ok())

    def test_category_scope_is_case_insensitive(self):
        create_coupon("STREAM", scope="category", category="STREAMING ")
        create_coupon("MUSIC", scope="category", category="music")

        self.assertTrue(self.validate("STREAM").is_ok())
        self.assertEqual(self.validate("MUSIC").unwrap_err().code, "scope_mismatch")

    def test_product_scope(self):
        other = create_product(slug="spotify", name="Spotify", category="Music")
        create_coupon("ONLYNETFLIX", scope="product", product=self.product)

        self.assertTrue(self.validate("ONLYNETFLIX").is_ok())
        self.assertEqual(self.validate("ONLYNETFLIX", product=other).unwrap_err().code, "scope_mismatch")

    def test_term_restriction(self):
        create_coupon("YEARLY", term_months=12)
        self.assertEqual(self.validate("YEARLY", term_months=3).unwrap_err().code, "term_mismatch")
        self.assertTrue(self.validate("YEARLY", term_months=12).is_ok())

    def test_scope_is_checked_before_term(self):
        create_coupon("BOTH", scope="category", category="music", term_months=12)
        self.assertEqual(self.validate("BOTH", term_months=1).unwrap_err().code, "scope_mismatch")

    def test_first_order_only(self):
        create_coupon("WELCOME", first_order_only=True)
        create_order(self.user, status="cancelled")
        self.assertTrue(self.validate("WELCOME").is_ok())

        create_order(self.user, status="delivered")
        self.assertEqual(self.validate("WELCOME").unwrap_err().code, "first_order_only")

    def test_user_cannot_hold_two_slots(self):
        coupon = create_coupon("ONCE")
        self.reserve(coupon)
        self.assertEqual(self.validate("ONCE").unwrap_err().code, "already_redeemed")

    def test_max_redemptions_counts_live_slots(self):
        coupon = create_coupon("LIMITED", max_redemptions=1)
        other = User.objects.create_user(username="first", email="first@subshare.test", password="x")
        self.reserve(coupon, user=other)

        self.assertEqual(self.validate("LIMITED").unwrap_err().code, "max_redemptions")

    def test_zero_total_is_rejected(self):
        create_coupon("FREE", "100")
        self.assertEqual(self.validate("FREE").unwrap_err().code, "zero_total")


class RedemptionSlotTests(CouponTestMixin, TestCase):
    def test_reserve_creates_reserved_slot_with_ttl(self):
        coupon = create_coupon("SPRING10", max_redemptions=5)

        order, result = self.reserve(coupon, subtotal_cents=3000)

        redemption = result.unwrap()
        self.assertEqual(redemption.status, "reserved")
        self.assertEqual(redemption.order, order)
        self.assertEqual(redemption.discount_cents, 300)
        self.assertEqual(redemption.expires_at, self.now + timedelta(minutes=30))

    def test_finalize_counts_the_use(self):
        coupon = create_coupon("SPRING10")
        order, _ = self.reserve(coupon)

        self.assertEqual(self.service.finalize_redemption_for_order(order.pk), 1)
        self.assertEqual(self.service.finalize_redemption_for_order(order.pk), 0)

        coupon.refresh_from_db()
        self.assertEqual(coupon.total_uses, 1)
        self.assertEqual(coupon.total_discount_cents, 100)
        self.assertEqual(CouponRedemption.objects.get(order=order).status, "redeemed")

    def test_void_releases_the_slot(self):
        coupon = create_coupon("LIMITED", max_redemptions=1)
        order, _ = self.reserve(coupon)
        other = User.objects.create_user(username="next", email="next@subshare.test", password="x")
        self.assertEqual(self.reserve(coupon, user=other)[1].unwrap_err().code, "max_redemptions")

        self.assertEqual(self.service.void_redemption_for_order(order.pk, "purchase_failed"), 1)

        redemption = CouponRedemption.objects.get(order=order)
        self.assertEqual(redemption.status, "voided")
        self.assertEqual(redemption.void_reason, "purchase_failed")
        self.assertTrue(self.reserve(coupon, user=other)[1].is_ok())

    def test_void_does_not_touch_redeemed_slot(self):
        coupon = create_coupon("SPRING10")
        order, _ = self.reserve(coupon)
        self.service.finalize_redemption_for_order(order.pk)

        self.assertEqual(self.service.void_redemption_for_order(order.pk), 0)
        self.assertEqual(CouponRedemption.objects.get(order=order).status, "redeemed")

    @override_settings(COUPON_RESERVATION_MINUTES=10)
    def test_stale_reservation_expires_and_frees_slot(self):
        coupon = create_coupon("LIMITED", max_redemptions=1)
        order, _ = self.reserve(coupon)

        later = self.now + timedelta(minutes=11)
        self.assertEqual(self.service.expire_stale_reservations(now=later), 1)
        self.assertEqual(CouponRedemption.objects.get(order=order).status, "expired")

        other = User.objects.create_user(username="late", email="late@subshare.test", password="x")
        result = self.service.validate_coupon_for_order("LIMITED", other, self.product, 1000, 1, now=later)
        self.assertTrue(result.is_ok())

    def test_reserve_unknown_coupon(self):
        order = create_order(self.user)
        result = self.service.reserve_coupon_redemption(
            "00000000-0000-0000-0000-000000000000", self.user, order, self.product, 1000, 1, "USD"
        )
        self.assertEqual(result.unwrap_err().code, "coupon_invalid")
        self.assertFalse(CouponRedemption.objects.exists())


class CouponAdminTests(TestCase):
    def setUp(self):
        self.admin = User.objects.create_user(username="staff", email="staff@subshare.test", password="x")
        self.service = CouponService()

    def test_create_normalizes_code_and_category(self):
        coupon = self.service.create_coupon(
            {"code": "summer-25", "percent_off": "25", "scope": "category", "category": " Music "},
            created_by=self.admin,
        ).unwrap()

        self.assertEqual(coupon.code, "SUMMER25")
        self.assertEqual(coupon.category, "music")
        self.assertEqual(coupon.created_by, self.admin)

    def test_create_generates_code_when_missing(self):
        coupon = self.service.create_coupon({"percent_off": "5"}).unwrap()
        self.assertEqual(len(coupon.code), 10)

    def test_create_rejects_bad_configuration(self):
        cases = [
            {"code": "BADGLOBAL", "percent_off": "5", "category": "music"},
            {"code": "BADCAT", "percent_off": "5", "scope": "category"},
            {"code": "BADPERCENT", "percent_off": "150"},
            {
                "code": "BADWINDOW",
                "percent_off": "5",
                "starts_at": timezone.now(),
                "ends_at": timezone.now() - timedelta(days=1),
            },
        ]
        for data in cases:
            with self.subTest(code=data["code"]):
                self.assertEqual(self.service.create_coupon(data).unwrap_err().code, "invalid_coupon")
        self.assertFalse(Coupon.objects.exists())

    def test_duplicate_code(self):
        create_coupon("TAKEN")
        result = self.service.create_coupon({"code": "taken", "percent_off": "5"})
        self.assertEqual(result.unwrap_err().code, "duplicate_code")

    def test_update_coupon(self):
        coupon = create_coupon("EDITME")
        updated = self.service.update_coupon(coupon.pk, {"percent_off": "20", "status": "inactive"}).unwrap()
        self.assertEqual(updated.percent_off, Decimal("20"))
        self.assertEqual(updated.status, "inactive")

    def test_delete_unused_coupon(self):
        coupon = create_coupon("UNUSED")
        self.assertEqual(self.service.delete_coupon(coupon.pk).unwrap(), "deleted")
        self.assertFalse(Coupon.objects.filter(pk=coupon.pk).exists())

    def test_delete_used_coupon_archives(self):
        coupon = create_coupon("USED")
        catalog = create_catalog()
        order = create_order(self.admin)
        self.service.reserve_coupon_redemption(coupon.pk, self.admin, order, catalog.product, 1000, 1, "USD")

        self.assertEqual(self.service.delete_coupon(coupon.pk).unwrap(), "archived")
        coupon.refresh_from_db()
        self.assertEqual(coupon.status, "archived")

    def test_list_coupons_with_counts(self):
        coupon = create_coupon("COUNTED")
        create_coupon("OTHER", status="inactive")
        catalog = create_catalog()
        order = create_order(self.admin)
        self.service.reserve_coupon_redemption(coupon.pk, self.admin, order, catalog.product, 1000, 1, "USD")

        listed = self.service.list_coupons(status="active")

        self.assertEqual([c.code for c in listed], ["COUNTED"])
        self.assertEqual(listed[0].reserved_count, 1)
        self.assertEqual(listed[0].redeemed_count, 0)
        self.assertEqual(len(self.service.list_coupons(code="oth")), 1)


class RewardClaimTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(username="winner", email="winner@subshare.test", password="x")
        self.service = CouponService()

    def test_claim_issues_personal_category_coupon(self):
        coupon = self.service.claim_reward(self.user, "  Netflix   4K ").unwrap()

        self.assertTrue(coupon.code.startswith("RWD"))
        self.assertEqual(coupon.scope, "category")
        self.assertEqual(coupon.category, "streaming")
        self.assertEqual(coupon.percent_off, Decimal("15"))
        self.assertEqual(coupon.bound_user, self.user)
        self.assertEqual(coupon.max_redemptions, 1)
        self.assertEqual(coupon.metadata, {"reward_scope": "netflix 4k"})

    def test_claiming_twice_returns_same_coupon(self):
        first = self.service.claim_reward(self.user, "welcome").unwrap()
        second = self.service.claim_reward(self.user, "WELCOME").unwrap()
        self.assertEqual(first.pk, second.pk)
        self.assertEqual(Coupon.objects.count(), 1)

    def test_claim_database_failure_is_internal_error(self):
        with mock.patch.object(CouponService, "_issue_reward_coupon", side_effect=DatabaseError("locked")):
            result = self.service.claim_reward(self.user, "welcome")
        self.assertEqual(result.unwrap_err().code, "internal_error")
        self.assertFalse(Coupon.objects.exists())

    def test_choose_category(self):
        missing = self.service.claim_reward(self.user, "entertainment lane").unwrap_err()
        self.assertEqual(missing.code, "claim_category_required")
        self.assertEqual(missing.context["options"], ["streaming", "music", "gaming"])

        wrong = self.service.claim_reward(self.user, "entertainment lane", category="books")
        self.assertEqual(wrong.unwrap_err().code, "claim_category_required")

        coupon = self.service.claim_reward(self.user, "entertainment lane", category="Music").unwrap()
        self.assertEqual(coupon.category, "music")

    def test_unavailable_removed_and_unknown(self):
        self.assertEqual(self.service.claim_reward(self.user, "duolingo super").unwrap_err().code, "claim_unavailable")
        self.assertEqual(self.service.claim_reward(self.user, "christmas calendar").unwrap_err().code, "claim_removed")
        self.assertEqual(self.service.claim_reward(self.user, "mystery box").unwrap_err().code, "claim_unavailable")

    @override_settings(COUPON_CLAIM_RULES={"vip": {"type": "claim", "scope": "product", "product_slug": "gone"}})
    def test_product_reward_with_missing_product(self):
        self.assertEqual(self.service.claim_reward(self.user, "vip").unwrap_err().code, "claim_unavailable")
        self.assertFalse(Coupon.objects.exists())


class ReservationSweepTaskTests(CouponTestMixin, TestCase):
    def test_task_expires_stale_reservations(self):
        coupon = create_coupon("SWEEP")
        order, _ = self.reserve(coupon)
        CouponRedemption.objects.filter(order=order).update(expires_at=self.now - timedelta(minutes=1))

        self.assertEqual(expire_coupon_reservations(), {"success": True, "expired_count": 1})
        self.assertEqual(CouponRedemption.objects.get(order=order).status, "expired")
