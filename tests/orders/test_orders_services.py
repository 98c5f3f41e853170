# ===============================================================================
# ORDER SERVICE TESTS
# ===============================================================================

import re
from decimal import Decimal
from unittest import mock

from django.contrib.auth import get_user_model
from django.db.transaction import TransactionManagementError
from django.test import SimpleTestCase, TestCase

from apps.orders.models import Order, OrderStatusHistory
from apps.orders.services import OrderCreateData, OrderItemData, OrderService, PaymentUpdateData
from tests.factories.catalog_factories import create_catalog

User = get_user_model()


class OrderServiceTestMixin:
    def setUp(self):
        self.user = User.objects.create_user(username="buyer", email="buyer@subshare.test", password="x")
        self.catalog = create_catalog()
        self.service = OrderService()

    def order_data(self, **overrides) -> OrderCreateData:
        """One 12-month line: 12 x 10.00 at 10% off, minus a 10.80 coupon."""
        item = OrderItemData(
            product_id=self.catalog.product.id,
            variant_id=self.catalog.variant.id,
            product_name="Netflix Premium",
            variant_name="4 screens",
            quantity=1,
            term_months=12,
            base_price_cents=1000,
            discount_percent=Decimal("10"),
            unit_price_cents=10800,
            coupon_discount_cents=1080,
        )
        fields = {"user": self.user, "items": [item], "term_months": 12, "status_reason": "purchase_started"}
        fields.update(overrides)
        return OrderCreateData(**fields)


class OrderCreationTests(OrderServiceTestMixin, TestCase):
    def test_create_with_items_computes_totals(self):
        order = self.service.create_with_items(self.order_data()).unwrap()

        self.assertRegex(order.order_number, r"^ORD-\d{8}-[A-Z0-9]{6}$")
        self.assertEqual(order.subtotal_cents, 12000)
        self.assertEqual(order.discount_cents, 1200)
        self.assertEqual(order.coupon_discount_cents, 1080)
        self.assertEqual(order.total_cents, 9720)
        self.assertEqual(order.status, "pending_payment")

        item = order.items.get()
        self.assertEqual(item.gross_price_cents, 12000)
        self.assertEqual(item.total_price_cents, 9720)

        history = order.status_history.get()
        self.assertEqual((history.old_status, history.new_status), ("", "pending_payment"))
        self.assertTrue(history.is_automatic)

    def test_empty_order_is_rejected(self):
        result = self.service.create_with_items(self.order_data(items=[]))
        self.assertEqual(result.unwrap_err().code, "empty_order")
        self.assertFalse(Order.objects.exists())

    def test_order_numbers_are_unique(self):
        numbers = {self.service.create_with_items(self.order_data()).unwrap().order_number for _ in range(5)}
        self.assertEqual(len(numbers), 5)


class OutsideTransactionTests(SimpleTestCase):
    def test_in_transaction_variant_requires_open_transaction(self):
        data = OrderCreateData(user=mock.Mock(pk=1), items=[])
        with self.assertRaises(TransactionManagementError):
            OrderService().create_with_items_in_transaction(data)


class OrderStatusTests(OrderServiceTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.order = self.service.create_with_items(self.order_data()).unwrap()

    def test_allowed_transitions_write_history(self):
        self.service.update_status(self.order.id, "in_process", "paid_with_credits").unwrap()
        delivered = self.service.update_status(self.order.id, "delivered", "fulfilled", changed_by=self.user).unwrap()

        self.assertEqual(delivered.status, "delivered")
        self.assertTrue(delivered.is_terminal)
        statuses = list(
            OrderStatusHistory.objects.filter(order=self.order).order_by("created_at").values_list("new_status", flat=True)
        )
        self.assertEqual(statuses, ["pending_payment", "in_process", "delivered"])
        self.assertFalse(OrderStatusHistory.objects.get(new_status="delivered").is_automatic)

    def test_cancel_sets_timestamp_and_reason(self):
        cancelled = self.service.update_status(self.order.id, "cancelled", "insufficient_credits").unwrap()
        self.assertEqual(cancelled.status_reason, "insufficient_credits")
        self.assertIsNotNone(cancelled.cancelled_at)

    def test_terminal_orders_never_change(self):
        self.service.update_status(self.order.id, "cancelled", "user_request")
        for status in ("pending_payment", "in_process", "delivered"):
            with self.subTest(status=status):
                result = self.service.update_status(self.order.id, status)
                self.assertEqual(result.unwrap_err().code, "invalid_status_transition")
        self.assertEqual(Order.objects.get(pk=self.order.pk).status, "cancelled")

    def test_pending_cannot_skip_to_delivered(self):
        result = self.service.update_status(self.order.id, "delivered")
        self.assertEqual(result.unwrap_err().code, "invalid_status_transition")

    def test_unknown_order(self):
        result = self.service.update_status("00000000-0000-0000-0000-000000000000", "cancelled")
        self.assertEqual(result.unwrap_err().code, "order_not_found")


class OrderPaymentTests(OrderServiceTestMixin, TestCase):
    def test_update_payment_marks_order_paid(self):
        order = self.service.create_with_items(self.order_data()).unwrap()

        paid = self.service.update_payment(
            order.id,
            PaymentUpdateData(
                payment_provider="credits",
                payment_reference="tx-123",
                status_reason="paid_with_credits",
                paid_with_credits=True,
                auto_renew=True,
            ),
        ).unwrap()

        self.assertEqual(paid.status, "in_process")
        self.assertTrue(paid.is_paid)
        self.assertTrue(paid.paid_with_credits)
        self.assertTrue(paid.auto_renew)
        self.assertEqual(paid.payment_reference, "tx-123")
        self.assertIsNotNone(paid.paid_at)
        self.assertTrue(self.service.has_paid_order(self.user))

    def test_payment_on_cancelled_order_is_rejected(self):
        order = self.service.create_with_items(self.order_data()).unwrap()
        self.service.update_status(order.id, "cancelled", "user_request")

        result = self.service.update_payment(order.id, PaymentUpdateData("credits", "tx-1"))

        self.assertEqual(result.unwrap_err().code, "invalid_status_transition")
        self.assertFalse(self.service.has_paid_order(self.user))


class OrderReadTests(OrderServiceTestMixin, TestCase):
    def test_get_order_is_scoped_to_owner(self):
        order = self.service.create_with_items(self.order_data()).unwrap()
        other = User.objects.create_user(username="other", email="other@subshare.test", password="x")

        self.assertEqual(self.service.get_order(self.user, order.id), order)
        self.assertIsNone(self.service.get_order(other, order.id))

    def test_list_orders_filters(self):
        first = self.service.create_with_items(self.order_data()).unwrap()
        second = self.service.create_with_items(self.order_data()).unwrap()
        self.service.update_status(first.id, "cancelled", "user_request")

        self.assertEqual(self.service.list_orders(self.user, {"status": "cancelled"}), [first])
        suffix = re.sub(r"^ORD-\d{8}-", "", second.order_number)
        self.assertEqual(self.service.list_orders(self.user, {"order_number": suffix}), [second])
        self.assertEqual(len(self.service.list_orders(self.user, limit=1)), 1)
