from rest_framework import serializers

from .models import Order


class OrderSummarySerializer(serializers.ModelSerializer):
    class Meta:
        model = Order
        fields = [
            "id",
            "order_number",
            "email",
            "phone",
            "shipping_address",
            "shipping_method",
            "total",
            "status",
            "created_at",
            "metadata",
        ]
        read_only_fields = fields
