import uuid
from django.conf import settings
from django.db import models
from django.db.models import Q

from order.models import Order


class DeliveryZone(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=120)
    description = models.TextField(blank=True, null=True)
    regions = models.JSONField(default=list, blank=True)
    base_fee = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    express_fee = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    estimated_days = models.CharField(max_length=30, default="1-3 days")
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]

    def __str__(self):
        return self.name


class Rider(models.Model):
    class Status(models.TextChoices):
        ACTIVE = "active", "Active"
        ON_DELIVERY = "on_delivery", "On Delivery"
        OFF_DUTY = "off_duty", "Off Duty"
        INACTIVE = "inactive", "Inactive"

    class VehicleType(models.TextChoices):
        MOTORCYCLE = "motorcycle", "Motorcycle"
        BICYCLE = "bicycle", "Bicycle"
        CAR = "car", "Car"
        VAN = "van", "Van"

    UNAVAILABLE_STATUSES = {Status.OFF_DUTY, Status.INACTIVE}

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    full_name = models.CharField(max_length=120)
    phone = models.CharField(max_length=20, unique=True)
    email = models.EmailField(blank=True, null=True)
    vehicle_type = models.CharField(max_length=20, choices=VehicleType.choices, default=VehicleType.MOTORCYCLE)
    license_plate = models.CharField(max_length=30, blank=True, null=True)
    zone = models.ForeignKey(
        DeliveryZone,
        null=True,
        blank=True,
        on_delete=models.PROTECT,
        related_name="riders",
    )
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.ACTIVE)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return f"{self.full_name} ({self.status})"

    @property
    def is_available(self) -> bool:
        return self.status not in self.UNAVAILABLE_STATUSES


class DeliveryAssignment(models.Model):
    class Status(models.TextChoices):
        ASSIGNED = "assigned", "Assigned"
        PICKED_UP = "picked_up", "Picked Up"
        IN_TRANSIT = "in_transit", "In Transit"
        DELIVERED = "delivered", "Delivered"
        FAILED = "failed", "Failed"
        RETURNED = "returned", "Returned"

    class Priority(models.TextChoices):
        LOW = "low", "Low"
        NORMAL = "normal", "Normal"
        HIGH = "high", "High"
        URGENT = "urgent", "Urgent"

    # An order may be reassigned once its previous assignment ended in one of these.
    RELEASED_STATUSES = {Status.FAILED, Status.RETURNED}
    TERMINAL_STATUSES = {Status.DELIVERED, Status.FAILED, Status.RETURNED}
    IN_PROGRESS_STATUSES = {Status.ASSIGNED, Status.PICKED_UP, Status.IN_TRANSIT}
    UNDELETABLE_STATUSES = {Status.IN_TRANSIT, Status.DELIVERED}

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order = models.ForeignKey(Order, related_name="delivery_assignments", on_delete=models.CASCADE)
    rider = models.ForeignKey(Rider, related_name="assignments", on_delete=models.PROTECT)

    status = models.CharField(max_length=20, choices=Status.choices, default=Status.ASSIGNED)
    priority = models.CharField(max_length=10, choices=Priority.choices, default=Priority.NORMAL)
    delivery_notes = models.TextField(blank=True, null=True)
    delivery_fee = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    estimated_delivery = models.DateTimeField(blank=True, null=True)
    proof_of_delivery = models.TextField(blank=True, null=True)
    failure_reason = models.TextField(blank=True, null=True)

    assigned_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="delivery_assignments_made",
    )

    assigned_at = models.DateTimeField(auto_now_add=True)
    picked_up_at = models.DateTimeField(blank=True, null=True)
    in_transit_at = models.DateTimeField(blank=True, null=True)
    delivered_at = models.DateTimeField(blank=True, null=True)
    failed_at = models.DateTimeField(blank=True, null=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-assigned_at"]
        indexes = [
            models.Index(fields=["status"], name="delivery_assign_status_idx"),
            models.Index(fields=["rider", "status"], name="delivery_assign_rider_idx"),
            models.Index(fields=["assigned_at"], name="delivery_assign_at_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["order"],
                condition=~Q(status__in=["failed", "returned"]),
                name="one_active_assignment_per_order",
            ),
        ]

    def __str__(self):
        return f"{self.order.order_number} -> {self.rider.full_name} ({self.status})"


class DeliveryStatusHistory(models.Model):
    """
    Append-only audit record of one assignment status transition.

    ``assignment_id`` is a plain UUID rather than a foreign key: entries outlive the
    assignment they describe when it is deleted.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    assignment_id = models.UUIDField(db_index=True)
    old_status = models.CharField(max_length=20, choices=DeliveryAssignment.Status.choices, blank=True, null=True)
    new_status = models.CharField(max_length=20, choices=DeliveryAssignment.Status.choices)
    changed_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="delivery_status_changes",
    )
    notes = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["created_at"]
        verbose_name_plural = "Delivery status history"

    def __str__(self):
        return f"{self.assignment_id}: {self.old_status or '-'} -> {self.new_status}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValueError("Status history entries are immutable")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValueError("Status history entries cannot be deleted")
