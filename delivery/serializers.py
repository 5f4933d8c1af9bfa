from datetime import datetime, time

from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime
from rest_framework import serializers

from order.serializers import OrderSummarySerializer

from .models import DeliveryAssignment, DeliveryStatusHistory, DeliveryZone, Rider


class RiderSummarySerializer(serializers.ModelSerializer):
    class Meta:
        model = Rider
        fields = ["id", "full_name", "phone", "vehicle_type", "status"]


class DeliveryAssignmentSerializer(serializers.ModelSerializer):
    order_id = serializers.UUIDField(read_only=True)
    rider_id = serializers.UUIDField(read_only=True)
    assigned_by = serializers.PrimaryKeyRelatedField(read_only=True)
    rider = RiderSummarySerializer(read_only=True)
    order = OrderSummarySerializer(read_only=True)

    class Meta:
        model = DeliveryAssignment
        fields = [
            "id",
            "order_id",
            "rider_id",
            "status",
            "priority",
            "delivery_notes",
            "delivery_fee",
            "estimated_delivery",
            "proof_of_delivery",
            "failure_reason",
            "assigned_by",
            "assigned_at",
            "picked_up_at",
            "in_transit_at",
            "delivered_at",
            "failed_at",
            "updated_at",
            "rider",
            "order",
        ]
        read_only_fields = fields


class DeliveryStatusHistorySerializer(serializers.ModelSerializer):
    changed_by = serializers.PrimaryKeyRelatedField(read_only=True)

    class Meta:
        model = DeliveryStatusHistory
        fields = ["id", "assignment_id", "old_status", "new_status", "changed_by", "notes", "created_at"]
        read_only_fields = fields


def _parse_boundary(value: str, end_of_day: bool):
    parsed = parse_datetime(value)
    if parsed is None:
        day = parse_date(value)
        if day is None:
            raise serializers.ValidationError("Enter an ISO-8601 date or datetime.")
        parsed = datetime.combine(day, time.max if end_of_day else time.min)
    if timezone.is_naive(parsed):
        parsed = timezone.make_aware(parsed)
    return parsed


class AssignmentListQuerySerializer(serializers.Serializer):
    status = serializers.ChoiceField(
        choices=["all"] + list(DeliveryAssignment.Status.values),
        required=False,
    )
    rider_id = serializers.UUIDField(required=False)
    date_from = serializers.CharField(required=False)
    date_to = serializers.CharField(required=False)
    page = serializers.IntegerField(required=False, min_value=1, default=1)
    limit = serializers.IntegerField(required=False, min_value=1)

    def validate_date_from(self, value):
        return _parse_boundary(value, end_of_day=False)

    def validate_date_to(self, value):
        return _parse_boundary(value, end_of_day=True)


class AssignmentCreateSerializer(serializers.Serializer):
    order_id = serializers.UUIDField()
    rider_id = serializers.UUIDField()
    priority = serializers.ChoiceField(
        choices=DeliveryAssignment.Priority.choices,
        required=False,
        allow_null=True,
        allow_blank=True,
    )
    delivery_notes = serializers.CharField(required=False, allow_null=True, allow_blank=True)
    estimated_delivery = serializers.DateTimeField(required=False, allow_null=True)
    delivery_fee = serializers.DecimalField(
        max_digits=12,
        decimal_places=2,
        min_value=0,
        required=False,
        allow_null=True,
    )


class AssignmentUpdateSerializer(serializers.Serializer):
    id = serializers.UUIDField()
    # Checked against the lifecycle by the state machine, not here.
    status = serializers.CharField()
    delivery_notes = serializers.CharField(required=False, allow_null=True, allow_blank=True)
    failure_reason = serializers.CharField(required=False, allow_null=True, allow_blank=True)
    proof_of_delivery = serializers.CharField(required=False, allow_null=True, allow_blank=True)


class ZoneSummarySerializer(serializers.ModelSerializer):
    class Meta:
        model = DeliveryZone
        fields = ["id", "name"]


class DeliveryZoneSerializer(serializers.ModelSerializer):
    class Meta:
        model = DeliveryZone
        fields = [
            "id",
            "name",
            "description",
            "regions",
            "base_fee",
            "express_fee",
            "estimated_days",
            "is_active",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class RiderSerializer(serializers.ModelSerializer):
    zone_id = serializers.UUIDField(read_only=True)
    zone = ZoneSummarySerializer(read_only=True)

    class Meta:
        model = Rider
        fields = [
            "id",
            "full_name",
            "phone",
            "email",
            "vehicle_type",
            "license_plate",
            "zone_id",
            "zone",
            "status",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class RiderCreateSerializer(serializers.Serializer):
    full_name = serializers.CharField(max_length=120)
    phone = serializers.CharField(max_length=20)
    email = serializers.EmailField(required=False, allow_null=True, allow_blank=True)
    vehicle_type = serializers.ChoiceField(choices=Rider.VehicleType.choices, required=False)
    license_plate = serializers.CharField(max_length=30, required=False, allow_null=True, allow_blank=True)
    zone_id = serializers.UUIDField(required=False, allow_null=True)


class RiderUpdateSerializer(serializers.Serializer):
    id = serializers.UUIDField()
    full_name = serializers.CharField(max_length=120, required=False)
    phone = serializers.CharField(max_length=20, required=False)
    email = serializers.EmailField(required=False, allow_null=True, allow_blank=True)
    vehicle_type = serializers.ChoiceField(choices=Rider.VehicleType.choices, required=False)
    license_plate = serializers.CharField(max_length=30, required=False, allow_null=True, allow_blank=True)
    zone_id = serializers.UUIDField(required=False, allow_null=True)
    status = serializers.ChoiceField(choices=Rider.Status.choices, required=False)


class RiderListQuerySerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=["all"] + list(Rider.Status.values), required=False)


class ObjectIdQuerySerializer(serializers.Serializer):
    id = serializers.UUIDField()


class ZoneCreateSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=120)
    description = serializers.CharField(required=False, allow_null=True, allow_blank=True)
    regions = serializers.ListField(child=serializers.CharField(max_length=120), required=False)
    base_fee = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0, required=False)
    express_fee = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0, required=False)
    estimated_days = serializers.CharField(max_length=30, required=False, allow_blank=True)


class ZoneUpdateSerializer(serializers.Serializer):
    id = serializers.UUIDField()
    name = serializers.CharField(max_length=120, required=False)
    description = serializers.CharField(required=False, allow_null=True, allow_blank=True)
    regions = serializers.ListField(child=serializers.CharField(max_length=120), required=False)
    base_fee = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0, required=False)
    express_fee = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0, required=False)
    estimated_days = serializers.CharField(max_length=30, required=False)
    is_active = serializers.BooleanField(required=False)
