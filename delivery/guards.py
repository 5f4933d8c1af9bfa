from dataclasses import dataclass
from typing import Optional

from .models import DeliveryAssignment, Rider


@dataclass(frozen=True)
class ActiveAssignmentCheck:
    has_active: bool
    assignment_id: Optional[str] = None
    status: Optional[str] = None


def find_active_assignment(order_id, exclude_id=None) -> ActiveAssignmentCheck:
    """
    Reports whether ``order_id`` already has an assignment that is neither
    failed nor returned. The caller has already checked the order exists.
    """
    qs = DeliveryAssignment.objects.filter(order_id=order_id).exclude(
        status__in=DeliveryAssignment.RELEASED_STATUSES
    )
    if exclude_id is not None:
        qs = qs.exclude(pk=exclude_id)
    existing = qs.values("id", "status").first()
    if not existing:
        return ActiveAssignmentCheck(has_active=False)
    return ActiveAssignmentCheck(
        has_active=True,
        assignment_id=str(existing["id"]),
        status=existing["status"],
    )


def get_rider(rider_id) -> Optional[Rider]:
    return Rider.objects.filter(pk=rider_id).first()
