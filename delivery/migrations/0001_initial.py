from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion
import uuid


ASSIGNMENT_STATUS_CHOICES = [
    ("assigned", "Assigned"),
    ("picked_up", "Picked Up"),
    ("in_transit", "In Transit"),
    ("delivered", "Delivered"),
    ("failed", "Failed"),
    ("returned", "Returned"),
]


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("order", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Rider",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("full_name", models.CharField(max_length=120)),
                ("phone", models.CharField(max_length=20, unique=True)),
                ("email", models.EmailField(blank=True, max_length=254, null=True)),
                ("vehicle_type", models.CharField(choices=[("motorcycle", "Motorcycle"), ("bicycle", "Bicycle"), ("car", "Car"), ("van", "Van")], default="motorcycle", max_length=20)),
                ("license_plate", models.CharField(blank=True, max_length=30, null=True)),
                ("status", models.CharField(choices=[("active", "Active"), ("on_delivery", "On Delivery"), ("off_duty", "Off Duty"), ("inactive", "Inactive")], default="active", max_length=20)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={"ordering": ["-created_at"]},
        ),
        migrations.CreateModel(
            name="DeliveryStatusHistory",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("assignment_id", models.UUIDField(db_index=True)),
                ("old_status", models.CharField(blank=True, choices=ASSIGNMENT_STATUS_CHOICES, max_length=20, null=True)),
                ("new_status", models.CharField(choices=ASSIGNMENT_STATUS_CHOICES, max_length=20)),
                ("notes", models.TextField(blank=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("changed_by", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="delivery_status_changes", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "ordering": ["created_at"],
                "verbose_name_plural": "Delivery status history",
            },
        ),
        migrations.CreateModel(
            name="DeliveryAssignment",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("status", models.CharField(choices=ASSIGNMENT_STATUS_CHOICES, default="assigned", max_length=20)),
                ("priority", models.CharField(choices=[("low", "Low"), ("normal", "Normal"), ("high", "High"), ("urgent", "Urgent")], default="normal", max_length=10)),
                ("delivery_notes", models.TextField(blank=True, null=True)),
                ("delivery_fee", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("estimated_delivery", models.DateTimeField(blank=True, null=True)),
                ("proof_of_delivery", models.TextField(blank=True, null=True)),
                ("failure_reason", models.TextField(blank=True, null=True)),
                ("assigned_at", models.DateTimeField(auto_now_add=True)),
                ("picked_up_at", models.DateTimeField(blank=True, null=True)),
                ("in_transit_at", models.DateTimeField(blank=True, null=True)),
                ("delivered_at", models.DateTimeField(blank=True, null=True)),
                ("failed_at", models.DateTimeField(blank=True, null=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("assigned_by", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="delivery_assignments_made", to=settings.AUTH_USER_MODEL)),
                ("order", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="delivery_assignments", to="order.order")),
                ("rider", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="assignments", to="delivery.rider")),
            ],
            options={"ordering": ["-assigned_at"]},
        ),
        migrations.AddIndex(
            model_name="deliveryassignment",
            index=models.Index(fields=["status"], name="delivery_assign_status_idx"),
        ),
        migrations.AddIndex(
            model_name="deliveryassignment",
            index=models.Index(fields=["rider", "status"], name="delivery_assign_rider_idx"),
        ),
        migrations.AddIndex(
            model_name="deliveryassignment",
            index=models.Index(fields=["assigned_at"], name="delivery_assign_at_idx"),
        ),
        migrations.AddConstraint(
            model_name="deliveryassignment",
            constraint=models.UniqueConstraint(
                condition=models.Q(("status__in", ["failed", "returned"]), _negated=True),
                fields=("order",),
                name="one_active_assignment_per_order",
            ),
        ),
    ]
