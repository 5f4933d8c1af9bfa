import logging
from typing import Optional

from django.db import DatabaseError, transaction

from .models import DeliveryStatusHistory

logger = logging.getLogger(__name__)


class StatusHistoryLogger:
    """Write-once log of assignment status transitions."""

    @staticmethod
    def record(
        *,
        assignment_id,
        new_status: str,
        changed_by=None,
        old_status: Optional[str] = None,
        notes: str = "",
    ) -> Optional[DeliveryStatusHistory]:
        # Savepoint: a failed audit write must not take the transition down with it.
        try:
            with transaction.atomic():
                return DeliveryStatusHistory.objects.create(
                    assignment_id=assignment_id,
                    old_status=old_status,
                    new_status=new_status,
                    changed_by=changed_by,
                    notes=notes or "",
                )
        except DatabaseError:
            logger.exception(
                "Failed to record status history for assignment=%s %s -> %s",
                assignment_id,
                old_status,
                new_status,
            )
            return None

    @staticmethod
    def for_assignment(assignment_id):
        return DeliveryStatusHistory.objects.filter(assignment_id=assignment_id).select_related("changed_by")
