import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import ProtectedError, Sum
from django.utils import timezone

from order.models import Order
from order.services import OrderService

from .exceptions import (
    AssignmentConflict,
    DeliveryConflict,
    DeliveryNotFound,
    InvalidAssignmentState,
)
from .guards import find_active_assignment, get_rider
from .history import StatusHistoryLogger
from .models import DeliveryAssignment, DeliveryZone, Rider
from .state_machine import AssignmentStateMachine

logger = logging.getLogger(__name__)


def _active_assignments():
    return DeliveryAssignment.objects.exclude(status__in=DeliveryAssignment.RELEASED_STATUSES)


class AssignmentService:

    @staticmethod
    def _page_size(limit: Optional[int]) -> int:
        default = getattr(settings, "DELIVERY_ASSIGNMENT_PAGE_SIZE", 50)
        cap = getattr(settings, "DELIVERY_ASSIGNMENT_MAX_PAGE_SIZE", 100)
        if not limit or limit < 1:
            limit = default
        return min(limit, cap)

    @staticmethod
    def list_assignments(
        *,
        status: Optional[str] = None,
        rider_id=None,
        date_from=None,
        date_to=None,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        page = max(page or 1, 1)
        limit = AssignmentService._page_size(limit)

        qs = DeliveryAssignment.objects.select_related("rider", "order").order_by("-assigned_at")
        if status and status != "all":
            qs = qs.filter(status=status)
        if rider_id:
            qs = qs.filter(rider_id=rider_id)
        if date_from:
            qs = qs.filter(assigned_at__gte=date_from)
        if date_to:
            qs = qs.filter(assigned_at__lte=date_to)

        offset = (page - 1) * limit
        return {
            "assignments": list(qs[offset:offset + limit]),
            "total": qs.count(),
            "page": page,
            "limit": limit,
        }

    @staticmethod
    @transaction.atomic
    def create_assignment(
        *,
        user,
        order_id,
        rider_id,
        priority: Optional[str] = None,
        delivery_notes: Optional[str] = None,
        estimated_delivery=None,
        delivery_fee: Optional[Decimal] = None,
    ) -> DeliveryAssignment:
        # 1. Lock the order row; concurrent creates for the same order queue up here
        order = OrderService.lock_for_update(order_id)
        if not order:
            raise DeliveryNotFound("Order not found")

        # 2. Conflict guard
        existing = find_active_assignment(order.id)
        if existing.has_active:
            logger.warning(
                "Rejected assignment for order=%s: active assignment=%s (%s)",
                order.order_number,
                existing.assignment_id,
                existing.status,
            )
            raise AssignmentConflict(
                f"This order already has an active delivery assignment "
                f"({existing.assignment_id}, status {existing.status})"
            )

        # 3. Rider availability
        rider = get_rider(rider_id)
        if not rider:
            raise DeliveryNotFound("Rider not found")
        if not rider.is_available:
            raise InvalidAssignmentState(f"Rider {rider.full_name} is currently {rider.status}")

        # 4. Insert; the partial unique constraint backs up the guard
        try:
            with transaction.atomic():
                assignment = DeliveryAssignment.objects.create(
                    order=order,
                    rider=rider,
                    priority=priority or DeliveryAssignment.Priority.NORMAL,
                    delivery_notes=delivery_notes or None,
                    estimated_delivery=estimated_delivery,
                    delivery_fee=delivery_fee or Decimal("0.00"),
                    assigned_by=user,
                    status=DeliveryAssignment.Status.ASSIGNED,
                )
        except IntegrityError:
            logger.warning("Concurrent assignment detected for order=%s", order.order_number)
            raise AssignmentConflict("This order already has an active delivery assignment")

        # 5. Order status + audit trail
        OrderService.set_delivery_status(order, Order.Status.DISPATCHED_TO_RIDER)
        StatusHistoryLogger.record(
            assignment_id=assignment.id,
            new_status=assignment.status,
            changed_by=user,
            notes=f"Assigned to {rider.full_name}",
        )
        logger.info("Assigned order=%s to rider=%s assignment=%s", order.order_number, rider.id, assignment.id)
        return assignment

    @staticmethod
    def _lock_assignment(assignment_id):
        """Locks the order first, then the assignment, so every writer takes locks in the same order."""
        order_id = (
            DeliveryAssignment.objects.filter(pk=assignment_id).values_list("order_id", flat=True).first()
        )
        if not order_id:
            raise DeliveryNotFound("Assignment not found")
        order = OrderService.lock_for_update(order_id)
        assignment = (
            DeliveryAssignment.objects.select_for_update()
            .select_related("rider")
            .filter(pk=assignment_id)
            .first()
        )
        if not order or not assignment:
            raise DeliveryNotFound("Assignment not found")
        assignment.order = order
        return assignment, order

    @staticmethod
    @transaction.atomic
    def update_assignment(
        *,
        user,
        assignment_id,
        status: str,
        delivery_notes: Optional[str] = None,
        failure_reason: Optional[str] = None,
        proof_of_delivery: Optional[str] = None,
        state_machine: Optional[AssignmentStateMachine] = None,
    ) -> DeliveryAssignment:
        machine = state_machine or AssignmentStateMachine()
        assignment, order = AssignmentService._lock_assignment(assignment_id)

        previous = assignment.status
        machine.validate(previous, status)

        if machine.reactivates(previous, status):
            existing = find_active_assignment(order.id, exclude_id=assignment.id)
            if existing.has_active:
                raise AssignmentConflict(
                    f"This order already has an active delivery assignment "
                    f"({existing.assignment_id}, status {existing.status})"
                )

        now = timezone.now()
        changed = machine.apply(assignment, status, failure_reason=failure_reason, now=now)
        if delivery_notes:
            assignment.delivery_notes = delivery_notes
            changed.append("delivery_notes")
        if proof_of_delivery:
            assignment.proof_of_delivery = proof_of_delivery
            changed.append("proof_of_delivery")
        changed.append("updated_at")

        try:
            with transaction.atomic():
                assignment.save(update_fields=changed)
        except IntegrityError:
            raise AssignmentConflict("This order already has an active delivery assignment")

        order_status = machine.order_status_for(status)
        if order_status and status in DeliveryAssignment.RELEASED_STATUSES:
            # The order follows its live replacement, not a stale assignment.
            if find_active_assignment(order.id, exclude_id=assignment.id).has_active:
                order_status = None
        if order_status:
            OrderService.set_delivery_status(order, order_status)

        StatusHistoryLogger.record(
            assignment_id=assignment.id,
            old_status=previous,
            new_status=status,
            changed_by=user,
            notes=delivery_notes or failure_reason or f"Status changed to {status}",
        )
        logger.info("Assignment %s status %s -> %s", assignment.id, previous, status)
        return assignment

    @staticmethod
    @transaction.atomic
    def delete_assignment(*, user, assignment_id) -> None:
        assignment, order = AssignmentService._lock_assignment(assignment_id)

        if assignment.status in DeliveryAssignment.UNDELETABLE_STATUSES:
            logger.warning("Refused to delete assignment=%s in status %s", assignment.id, assignment.status)
            raise InvalidAssignmentState("Cannot delete an in-progress or completed delivery")

        assignment.delete()
        # History rows are keyed by id only and stay behind as the audit trail.
        replacement = find_active_assignment(order.id)
        if replacement.has_active:
            logger.info(
                "Order %s keeps status %s: assignment=%s is still active",
                order.order_number,
                order.status,
                replacement.assignment_id,
            )
        else:
            OrderService.set_delivery_status(order, Order.Status.PROCESSING)
        logger.info(
            "Assignment %s for order=%s deleted by user=%s",
            assignment_id,
            order.order_number,
            getattr(user, "id", None),
        )

    @staticmethod
    def history(assignment_id):
        return StatusHistoryLogger.for_assignment(assignment_id)


class RiderService:
    UPDATABLE_FIELDS = ("full_name", "phone", "email", "vehicle_type", "license_plate", "status")

    @staticmethod
    def _resolve_zone(zone_id):
        if not zone_id:
            return None
        zone = DeliveryZone.objects.filter(pk=zone_id).first()
        if not zone:
            raise DeliveryNotFound("Zone not found")
        return zone

    @staticmethod
    def list_riders(status: Optional[str] = None):
        qs = Rider.objects.select_related("zone").order_by("-created_at")
        if status and status != "all":
            qs = qs.filter(status=status)
        return qs

    @staticmethod
    @transaction.atomic
    def create_rider(
        *, full_name, phone, email=None, vehicle_type=None, license_plate=None, zone_id=None
    ) -> Rider:
        zone = RiderService._resolve_zone(zone_id)
        if Rider.objects.filter(phone=phone).exists():
            raise DeliveryConflict("A rider with this phone number already exists")
        try:
            with transaction.atomic():
                rider = Rider.objects.create(
                    full_name=full_name,
                    phone=phone,
                    email=email or None,
                    vehicle_type=vehicle_type or Rider.VehicleType.MOTORCYCLE,
                    license_plate=license_plate or None,
                    zone=zone,
                    status=Rider.Status.ACTIVE,
                )
        except IntegrityError:
            raise DeliveryConflict("A rider with this phone number already exists")
        logger.info("Rider %s created (%s)", rider.id, rider.full_name)
        return rider

    @staticmethod
    @transaction.atomic
    def update_rider(rider_id, **fields) -> Rider:
        rider = Rider.objects.select_for_update().filter(pk=rider_id).first()
        if not rider:
            raise DeliveryNotFound("Rider not found")

        changed = []
        for name in RiderService.UPDATABLE_FIELDS:
            if name not in fields:
                continue
            value = fields[name]
            if name in {"email", "license_plate"}:
                value = value or None
            setattr(rider, name, value)
            changed.append(name)
        if "zone_id" in fields:
            rider.zone = RiderService._resolve_zone(fields["zone_id"])
            changed.append("zone")
        if not changed:
            return rider

        if "phone" in changed and Rider.objects.filter(phone=rider.phone).exclude(pk=rider.pk).exists():
            raise DeliveryConflict("A rider with this phone number already exists")
        rider.save(update_fields=changed + ["updated_at"])
        return rider

    @staticmethod
    @transaction.atomic
    def delete_rider(rider_id) -> None:
        rider = Rider.objects.filter(pk=rider_id).first()
        if not rider:
            raise DeliveryNotFound("Rider not found")
        if rider.assignments.filter(status__in=DeliveryAssignment.IN_PROGRESS_STATUSES).exists():
            raise InvalidAssignmentState("Cannot delete a rider with active deliveries. Set them inactive first.")
        try:
            with transaction.atomic():
                rider.delete()
        except ProtectedError:
            raise InvalidAssignmentState("Cannot delete a rider with delivery history. Set them inactive instead.")
        logger.info("Rider %s deleted", rider_id)


class ZoneService:
    UPDATABLE_FIELDS = ("name", "description", "regions", "base_fee", "express_fee", "estimated_days", "is_active")

    @staticmethod
    def list_zones():
        return DeliveryZone.objects.all().order_by("name")

    @staticmethod
    @transaction.atomic
    def create_zone(
        *,
        name,
        description=None,
        regions=None,
        base_fee=None,
        express_fee=None,
        estimated_days=None,
    ) -> DeliveryZone:
        zone = DeliveryZone.objects.create(
            name=name,
            description=description or None,
            regions=regions or [],
            base_fee=base_fee or Decimal("0.00"),
            express_fee=express_fee or Decimal("0.00"),
            estimated_days=estimated_days or "1-3 days",
            is_active=True,
        )
        logger.info("Delivery zone %s created (%s)", zone.id, zone.name)
        return zone

    @staticmethod
    @transaction.atomic
    def update_zone(zone_id, **fields) -> DeliveryZone:
        zone = DeliveryZone.objects.select_for_update().filter(pk=zone_id).first()
        if not zone:
            raise DeliveryNotFound("Zone not found")

        changed = []
        for name in ZoneService.UPDATABLE_FIELDS:
            if name not in fields:
                continue
            value = fields[name]
            if name == "description":
                value = value or None
            setattr(zone, name, value)
            changed.append(name)
        if changed:
            zone.save(update_fields=changed + ["updated_at"])
        return zone

    @staticmethod
    @transaction.atomic
    def delete_zone(zone_id) -> None:
        zone = DeliveryZone.objects.filter(pk=zone_id).first()
        if not zone:
            raise DeliveryNotFound("Zone not found")
        if zone.riders.exists():
            raise InvalidAssignmentState(
                "Cannot delete a zone with assigned riders. Reassign or remove riders first."
            )
        zone.delete()
        logger.info("Delivery zone %s deleted", zone_id)


class DeliveryDashboardService:
    RECENT_LIMIT = 20
    PENDING_ORDER_STATUSES = (Order.Status.PROCESSING, Order.Status.SHIPPED)
    UNASSIGNED_ORDER_STATUSES = (
        Order.Status.PROCESSING,
        Order.Status.SHIPPED,
        Order.Status.DISPATCHED_TO_RIDER,
    )

    @staticmethod
    def _start_of_today():
        return timezone.localtime().replace(hour=0, minute=0, second=0, microsecond=0)

    @staticmethod
    def _orders_without_active_assignment(statuses):
        return Order.objects.filter(status__in=statuses).exclude(
            id__in=_active_assignments().values("order_id")
        )

    @staticmethod
    def stats() -> Dict[str, Any]:
        today = DeliveryDashboardService._start_of_today()
        todays = DeliveryAssignment.objects.filter(assigned_at__gte=today)
        delivered_today = todays.filter(status=DeliveryAssignment.Status.DELIVERED)
        revenue = delivered_today.aggregate(total=Sum("delivery_fee"))["total"] or Decimal("0.00")

        return {
            "total_assignments": DeliveryAssignment.objects.count(),
            "active_deliveries": DeliveryAssignment.objects.filter(
                status__in=DeliveryAssignment.IN_PROGRESS_STATUSES
            ).count(),
            "delivered_today": delivered_today.count(),
            "failed_today": todays.filter(status=DeliveryAssignment.Status.FAILED).count(),
            "total_riders": Rider.objects.count(),
            "active_riders": Rider.objects.filter(status=Rider.Status.ACTIVE).count(),
            "on_delivery_riders": Rider.objects.filter(status=Rider.Status.ON_DELIVERY).count(),
            "active_zones": DeliveryZone.objects.filter(is_active=True).count(),
            "pending_orders": DeliveryDashboardService._orders_without_active_assignment(
                DeliveryDashboardService.PENDING_ORDER_STATUSES
            ).count(),
            "today_revenue": str(Decimal(revenue).quantize(Decimal("0.01"))),
        }

    @staticmethod
    def recent():
        return list(
            DeliveryAssignment.objects.select_related("rider", "order").order_by("-assigned_at")[
                : DeliveryDashboardService.RECENT_LIMIT
            ]
        )

    @staticmethod
    def unassigned_orders():
        return DeliveryDashboardService._orders_without_active_assignment(
            DeliveryDashboardService.UNASSIGNED_ORDER_STATUSES
        ).order_by("created_at")
