from typing import Dict, List, Optional

from django.conf import settings
from django.utils import timezone

from order.models import Order

from .exceptions import DeliveryValidationError, InvalidAssignmentState
from .models import DeliveryAssignment

Status = DeliveryAssignment.Status

STAGE_TIMESTAMPS: Dict[str, str] = {
    Status.PICKED_UP: "picked_up_at",
    Status.IN_TRANSIT: "in_transit_at",
    Status.DELIVERED: "delivered_at",
    Status.FAILED: "failed_at",
}

# Only these targets touch the linked order.
ORDER_STATUS_FOR_TARGET: Dict[str, str] = {
    Status.DELIVERED: Order.Status.DELIVERED,
    Status.FAILED: Order.Status.PROCESSING,
}

STRICT_TRANSITIONS: Dict[str, set] = {
    Status.ASSIGNED: {Status.PICKED_UP, Status.FAILED, Status.RETURNED},
    Status.PICKED_UP: {Status.IN_TRANSIT, Status.FAILED, Status.RETURNED},
    Status.IN_TRANSIT: {Status.DELIVERED, Status.FAILED, Status.RETURNED},
    Status.DELIVERED: set(),
    Status.FAILED: set(),
    Status.RETURNED: set(),
}


class AssignmentStateMachine:
    """
    Lifecycle rules for a single delivery assignment.

    Side effects depend only on the target status, never on the path taken, so
    an out-of-order report (delivered without a recorded pickup) still lands in
    a consistent state. With ``strict=True`` only the edges in
    ``STRICT_TRANSITIONS`` are accepted.
    """

    def __init__(self, strict: Optional[bool] = None):
        if strict is None:
            strict = getattr(settings, "DELIVERY_STRICT_TRANSITIONS", False)
        self.strict = strict

    @staticmethod
    def is_valid_status(value) -> bool:
        return value in Status.values

    def validate(self, current: str, target: str) -> None:
        if not self.is_valid_status(target):
            raise DeliveryValidationError("Invalid status")
        if self.strict and target not in STRICT_TRANSITIONS.get(current, set()):
            raise InvalidAssignmentState(f"Cannot move assignment from {current} to {target}")

    def apply(
        self,
        assignment: DeliveryAssignment,
        target: str,
        *,
        failure_reason: Optional[str] = None,
        now=None,
    ) -> List[str]:
        """Mutates ``assignment`` in memory and returns the changed field names."""
        now = now or timezone.now()
        changed = ["status"]
        assignment.status = target

        stamp_field = STAGE_TIMESTAMPS.get(target)
        if stamp_field and getattr(assignment, stamp_field) is None:
            setattr(assignment, stamp_field, now)
            changed.append(stamp_field)

        if target == Status.FAILED and failure_reason:
            assignment.failure_reason = failure_reason
            changed.append("failure_reason")
        return changed

    @staticmethod
    def order_status_for(target: str) -> Optional[str]:
        return ORDER_STATUS_FOR_TARGET.get(target)

    @staticmethod
    def reactivates(current: str, target: str) -> bool:
        """True when a released assignment would become active again."""
        released = DeliveryAssignment.RELEASED_STATUSES
        return current in released and target not in released
