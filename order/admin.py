from django.contrib import admin

from .models import Order


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ("order_number", "status", "email", "total", "created_at")
    list_filter = ("status", "shipping_method")
    search_fields = ("order_number", "email", "phone")
