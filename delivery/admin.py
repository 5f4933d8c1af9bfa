from django.contrib import admin

from .models import DeliveryAssignment, DeliveryStatusHistory, DeliveryZone, Rider


@admin.register(DeliveryZone)
class DeliveryZoneAdmin(admin.ModelAdmin):
    list_display = ("name", "base_fee", "express_fee", "estimated_days", "is_active")
    list_filter = ("is_active",)
    search_fields = ("name", "description")


@admin.register(Rider)
class RiderAdmin(admin.ModelAdmin):
    list_display = ("full_name", "phone", "vehicle_type", "zone", "status", "created_at")
    list_filter = ("status", "vehicle_type", "zone")
    search_fields = ("full_name", "phone", "email", "license_plate")


@admin.register(DeliveryAssignment)
class DeliveryAssignmentAdmin(admin.ModelAdmin):
    list_display = ("id", "order", "rider", "status", "priority", "assigned_at", "updated_at")
    list_filter = ("status", "priority")
    search_fields = ("order__order_number", "rider__full_name", "rider__phone")
    readonly_fields = (
        "assigned_by",
        "assigned_at",
        "picked_up_at",
        "in_transit_at",
        "delivered_at",
        "failed_at",
        "updated_at",
    )


@admin.register(DeliveryStatusHistory)
class DeliveryStatusHistoryAdmin(admin.ModelAdmin):
    list_display = ("assignment_id", "old_status", "new_status", "changed_by", "created_at")
    list_filter = ("new_status",)
    search_fields = ("assignment_id", "notes")

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
