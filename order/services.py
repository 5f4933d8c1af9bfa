import logging
from typing import Optional

from .models import Order

logger = logging.getLogger(__name__)


class OrderStatusError(ValueError):
    pass


class OrderService:
    # Statuses the delivery subsystem is allowed to write back to an order.
    DELIVERY_WRITABLE_STATUSES = frozenset(
        {
            Order.Status.PROCESSING,
            Order.Status.DISPATCHED_TO_RIDER,
            Order.Status.DELIVERED,
        }
    )

    @staticmethod
    def lock_for_update(order_id) -> Optional[Order]:
        """Row-locks the order for the rest of the surrounding transaction."""
        return Order.objects.select_for_update().filter(pk=order_id).first()

    @staticmethod
    def set_delivery_status(order: Order, new_status: str) -> Order:
        if new_status not in OrderService.DELIVERY_WRITABLE_STATUSES:
            raise OrderStatusError(f"Delivery cannot set order status to '{new_status}'")
        if order.status == new_status:
            return order

        previous = order.status
        order.status = new_status
        order.save(update_fields=["status", "updated_at"])
        logger.info("Order %s status %s -> %s", order.order_number, previous, new_status)
        return order
