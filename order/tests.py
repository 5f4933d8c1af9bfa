from decimal import Decimal

from django.test import TestCase

from .models import Order
from .services import OrderService, OrderStatusError


class OrderDeliveryStatusTests(TestCase):
    def setUp(self):
        self.order = Order.objects.create(
            order_number="ORD-1001",
            status=Order.Status.PROCESSING,
            total=Decimal("80.00"),
        )

    def test_sets_delivery_owned_status(self):
        OrderService.set_delivery_status(self.order, Order.Status.DISPATCHED_TO_RIDER)

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.DISPATCHED_TO_RIDER)

    def test_rejects_status_outside_delivery_subset(self):
        for blocked in (Order.Status.CANCELLED, Order.Status.REFUNDED, Order.Status.PAID, "lost"):
            with self.assertRaises(OrderStatusError):
                OrderService.set_delivery_status(self.order, blocked)

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PROCESSING)

    def test_same_status_is_a_no_op(self):
        before = self.order.updated_at

        OrderService.set_delivery_status(self.order, Order.Status.PROCESSING)

        self.order.refresh_from_db()
        self.assertEqual(self.order.updated_at, before)

    def test_lock_for_update_returns_none_for_unknown_order(self):
        self.assertIsNone(OrderService.lock_for_update("00000000-0000-0000-0000-000000000000"))
        self.assertEqual(OrderService.lock_for_update(self.order.id), self.order)
