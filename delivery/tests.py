import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

from django.db import DatabaseError, IntegrityError, close_old_connections, transaction
from django.test import TestCase, TransactionTestCase, override_settings
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APITestCase

from account.models import User
from delivery.exceptions import AssignmentConflict, InvalidAssignmentState
from delivery.guards import ActiveAssignmentCheck, find_active_assignment
from delivery.models import DeliveryAssignment, DeliveryStatusHistory, DeliveryZone, Rider
from delivery.services import AssignmentService
from delivery.state_machine import AssignmentStateMachine
from order.models import Order

ASSIGNMENTS_URL = "/delivery/assignments/"
RIDERS_URL = "/delivery/riders/"
ZONES_URL = "/delivery/zones/"
DASHBOARD_URL = "/delivery/"


class DeliveryFixturesMixin:
    def make_fixtures(self):
        self.operator = User.objects.create_user(
            email="dispatch@example.com",
            password="Pass123!",
            role="STAFF",
            first_name="Dana",
        )
        self.order = Order.objects.create(
            order_number="O1",
            status=Order.Status.PROCESSING,
            email="customer@example.com",
            phone="0244000000",
            shipping_address={"city": "Accra", "line1": "12 Ring Road"},
            total=Decimal("250.00"),
        )
        self.rider = Rider.objects.create(full_name="R1", phone="0200000001")
        self.rider_two = Rider.objects.create(full_name="R2", phone="0200000002", vehicle_type="car")

    def make_order(self, number, order_status=Order.Status.PROCESSING):
        return Order.objects.create(order_number=number, status=order_status, total=Decimal("100.00"))

    def history_for(self, assignment_id):
        return DeliveryStatusHistory.objects.filter(assignment_id=assignment_id)


class AssignmentScenarioTests(DeliveryFixturesMixin, APITestCase):
    def setUp(self):
        self.make_fixtures()
        self.client.force_authenticate(user=self.operator)

    def _create(self, order=None, rider=None, **extra):
        payload = {
            "order_id": str((order or self.order).id),
            "rider_id": str((rider or self.rider).id),
        }
        payload.update(extra)
        return self.client.post(ASSIGNMENTS_URL, payload, format="json")

    def _patch(self, assignment_id, new_status, **extra):
        payload = {"id": str(assignment_id), "status": new_status}
        payload.update(extra)
        return self.client.patch(ASSIGNMENTS_URL, payload, format="json")

    def test_create_assigns_order_and_logs_history(self):
        response = self._create(priority="high", delivery_fee="12.50", delivery_notes="Call on arrival")

        self.assertEqual(response.status_code, status.HTTP_201_CREATED, response.data)
        body = response.data["assignment"]
        self.assertEqual(body["status"], "assigned")
        self.assertEqual(body["priority"], "high")
        self.assertEqual(body["delivery_fee"], "12.50")

        assignment = DeliveryAssignment.objects.get(id=body["id"])
        self.assertEqual(assignment.assigned_by_id, self.operator.id)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.DISPATCHED_TO_RIDER)

        history = list(self.history_for(assignment.id))
        self.assertEqual(len(history), 1)
        self.assertIsNone(history[0].old_status)
        self.assertEqual(history[0].new_status, "assigned")
        self.assertEqual(history[0].changed_by_id, self.operator.id)
        self.assertEqual(history[0].notes, "Assigned to R1")

    def test_create_defaults_priority_and_fee(self):
        response = self._create()

        self.assertEqual(response.status_code, status.HTTP_201_CREATED, response.data)
        self.assertEqual(response.data["assignment"]["priority"], "normal")
        self.assertEqual(response.data["assignment"]["delivery_fee"], "0.00")

    def test_second_create_for_active_order_conflicts(self):
        first = self._create()
        second = self._create(rider=self.rider_two)

        self.assertEqual(first.status_code, status.HTTP_201_CREATED, first.data)
        self.assertEqual(second.status_code, status.HTTP_409_CONFLICT, second.data)
        self.assertIn(str(first.data["assignment"]["id"]), second.data["detail"])
        self.assertIn("assigned", second.data["detail"])
        self.assertEqual(DeliveryAssignment.objects.filter(order=self.order).count(), 1)

    def test_update_to_delivered_sets_timestamp_and_delivers_order(self):
        assignment_id = self._create().data["assignment"]["id"]

        response = self._patch(assignment_id, "delivered", proof_of_delivery="signed:K. Mensah")

        self.assertEqual(response.status_code, status.HTTP_200_OK, response.data)
        assignment = DeliveryAssignment.objects.get(id=assignment_id)
        self.assertIsNotNone(assignment.delivered_at)
        self.assertEqual(assignment.proof_of_delivery, "signed:K. Mensah")
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.DELIVERED)

        self.assertEqual(self.history_for(assignment_id).count(), 2)
        entry = self.history_for(assignment_id).get(new_status="delivered")
        self.assertEqual(entry.old_status, "assigned")

    def test_update_to_failed_stores_reason_and_reverts_order(self):
        assignment_id = self._create().data["assignment"]["id"]

        response = self._patch(assignment_id, "failed", failure_reason="rider unreachable")

        self.assertEqual(response.status_code, status.HTTP_200_OK, response.data)
        assignment = DeliveryAssignment.objects.get(id=assignment_id)
        self.assertIsNotNone(assignment.failed_at)
        self.assertEqual(assignment.failure_reason, "rider unreachable")
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PROCESSING)
        self.assertEqual(self.history_for(assignment_id).get(new_status="failed").notes, "rider unreachable")

    def test_create_rejects_off_duty_rider_by_name(self):
        off_duty = Rider.objects.create(full_name="R3", phone="0200000003", status=Rider.Status.OFF_DUTY)

        response = self._create(rider=off_duty)

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST, response.data)
        self.assertIn("R3", response.data["detail"])
        self.assertIn("off_duty", response.data["detail"])
        self.assertFalse(DeliveryAssignment.objects.exists())
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PROCESSING)

    def test_create_rejects_inactive_rider(self):
        inactive = Rider.objects.create(full_name="R4", phone="0200000004", status=Rider.Status.INACTIVE)

        response = self._create(rider=inactive)

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST, response.data)
        self.assertIn("inactive", response.data["detail"])

    def test_create_accepts_rider_already_on_delivery(self):
        busy = Rider.objects.create(full_name="R5", phone="0200000005", status=Rider.Status.ON_DELIVERY)

        response = self._create(rider=busy)

        self.assertEqual(response.status_code, status.HTTP_201_CREATED, response.data)

    def test_create_with_unknown_rider_is_not_found(self):
        response = self.client.post(
            ASSIGNMENTS_URL,
            {"order_id": str(self.order.id), "rider_id": str(uuid.uuid4())},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND, response.data)
        self.assertEqual(response.data["detail"], "Rider not found")

    def test_create_with_unknown_order_is_not_found(self):
        response = self.client.post(
            ASSIGNMENTS_URL,
            {"order_id": str(uuid.uuid4()), "rider_id": str(self.rider.id)},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND, response.data)

    def test_create_requires_order_and_rider(self):
        response = self.client.post(ASSIGNMENTS_URL, {"rider_id": str(self.rider.id)}, format="json")

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("order_id", response.data)

    def test_conflict_is_checked_before_rider_availability(self):
        self._create()
        off_duty = Rider.objects.create(full_name="R6", phone="0200000006", status=Rider.Status.OFF_DUTY)

        response = self._create(rider=off_duty)

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT, response.data)

    def test_delete_rejects_in_transit_and_allows_assigned(self):
        in_flight = self._create().data["assignment"]["id"]
        self._patch(in_flight, "picked_up")
        self._patch(in_flight, "in_transit")

        rejected = self.client.delete(f"{ASSIGNMENTS_URL}?id={in_flight}")
        self.assertEqual(rejected.status_code, status.HTTP_400_BAD_REQUEST, rejected.data)
        self.assertTrue(DeliveryAssignment.objects.filter(id=in_flight).exists())

        other_order = self.make_order("O2")
        removable = self._create(order=other_order, rider=self.rider_two).data["assignment"]["id"]
        accepted = self.client.delete(f"{ASSIGNMENTS_URL}?id={removable}")

        self.assertEqual(accepted.status_code, status.HTTP_200_OK, accepted.data)
        self.assertEqual(accepted.data, {"success": True})
        self.assertFalse(DeliveryAssignment.objects.filter(id=removable).exists())
        other_order.refresh_from_db()
        self.assertEqual(other_order.status, Order.Status.PROCESSING)
        self.assertEqual(self.history_for(removable).count(), 1)

    def test_delete_rejects_delivered(self):
        assignment_id = self._create().data["assignment"]["id"]
        self._patch(assignment_id, "delivered")

        response = self.client.delete(f"{ASSIGNMENTS_URL}?id={assignment_id}")

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST, response.data)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.DELIVERED)

    def test_delete_requires_existing_id(self):
        missing_param = self.client.delete(ASSIGNMENTS_URL)
        unknown = self.client.delete(f"{ASSIGNMENTS_URL}?id={uuid.uuid4()}")

        self.assertEqual(missing_param.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(unknown.status_code, status.HTTP_404_NOT_FOUND)

    def test_update_rejects_unknown_status(self):
        assignment_id = self._create().data["assignment"]["id"]

        response = self._patch(assignment_id, "teleported")

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST, response.data)
        self.assertEqual(response.data["detail"], "Invalid status")
        self.assertEqual(self.history_for(assignment_id).count(), 1)

    def test_update_unknown_assignment_is_not_found(self):
        response = self._patch(uuid.uuid4(), "picked_up")
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND, response.data)

    def test_stage_timestamps_are_never_overwritten(self):
        assignment_id = self._create().data["assignment"]["id"]
        self._patch(assignment_id, "delivered")
        delivered_at = DeliveryAssignment.objects.get(id=assignment_id).delivered_at

        self._patch(assignment_id, "delivered")
        self._patch(assignment_id, "picked_up")

        assignment = DeliveryAssignment.objects.get(id=assignment_id)
        self.assertEqual(assignment.delivered_at, delivered_at)
        self.assertIsNotNone(assignment.picked_up_at)

    def test_history_has_one_row_per_transition(self):
        assignment_id = self._create().data["assignment"]["id"]
        for step in ("picked_up", "in_transit", "delivered"):
            response = self._patch(assignment_id, step)
            self.assertEqual(response.status_code, status.HTTP_200_OK, response.data)

        self.assertEqual(self.history_for(assignment_id).count(), 4)
        transitions = set(self.history_for(assignment_id).values_list("old_status", "new_status"))
        self.assertEqual(
            transitions,
            {(None, "assigned"), ("assigned", "picked_up"), ("picked_up", "in_transit"), ("in_transit", "delivered")},
        )

    def test_order_can_be_reassigned_after_failure(self):
        first = self._create().data["assignment"]["id"]
        self._patch(first, "failed", failure_reason="bike broke down")

        response = self._create(rider=self.rider_two)

        self.assertEqual(response.status_code, status.HTTP_201_CREATED, response.data)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.DISPATCHED_TO_RIDER)

    def test_returned_assignment_leaves_order_status_alone(self):
        assignment_id = self._create().data["assignment"]["id"]

        response = self._patch(assignment_id, "returned")

        self.assertEqual(response.status_code, status.HTTP_200_OK, response.data)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.DISPATCHED_TO_RIDER)

    def test_reactivating_failed_assignment_conflicts_with_replacement(self):
        original = self._create().data["assignment"]["id"]
        self._patch(original, "failed")
        self._create(rider=self.rider_two)

        response = self._patch(original, "assigned")

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT, response.data)
        self.assertEqual(DeliveryAssignment.objects.get(id=original).status, "failed")
        active = DeliveryAssignment.objects.filter(order=self.order).exclude(status__in=["failed", "returned"])
        self.assertEqual(active.count(), 1)

    def test_reactivating_failed_assignment_without_replacement_is_allowed(self):
        assignment_id = self._create().data["assignment"]["id"]
        self._patch(assignment_id, "failed")

        response = self._patch(assignment_id, "in_transit")

        self.assertEqual(response.status_code, status.HTTP_200_OK, response.data)
        self.assertEqual(DeliveryAssignment.objects.get(id=assignment_id).status, "in_transit")

    def test_stale_assignment_does_not_revert_order_held_by_replacement(self):
        stale = self._create().data["assignment"]["id"]
        self._patch(stale, "failed")
        self._create(rider=self.rider_two)

        refailed = self._patch(stale, "failed", failure_reason="late report")
        self.order.refresh_from_db()
        self.assertEqual(refailed.status_code, status.HTTP_200_OK, refailed.data)
        self.assertEqual(self.order.status, Order.Status.DISPATCHED_TO_RIDER)

        deleted = self.client.delete(f"{ASSIGNMENTS_URL}?id={stale}")
        self.order.refresh_from_db()
        self.assertEqual(deleted.status_code, status.HTTP_200_OK, deleted.data)
        self.assertEqual(self.order.status, Order.Status.DISPATCHED_TO_RIDER)

    def test_delete_rejects_malformed_id(self):
        response = self.client.delete(f"{ASSIGNMENTS_URL}?id=not-a-uuid")

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("id", response.data)

    def test_history_survives_deletion_and_is_readable(self):
        assignment_id = self._create().data["assignment"]["id"]
        self._patch(assignment_id, "picked_up", delivery_notes="Collected at counter")
        self.client.delete(f"{ASSIGNMENTS_URL}?id={assignment_id}")

        response = self.client.get(f"{ASSIGNMENTS_URL}{assignment_id}/history/")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([h["new_status"] for h in response.data["history"]], ["assigned", "picked_up"])
        self.assertEqual(response.data["history"][1]["notes"], "Collected at counter")

    @override_settings(DELIVERY_STRICT_TRANSITIONS=True)
    def test_strict_mode_rejects_skipped_stages(self):
        assignment_id = self._create().data["assignment"]["id"]

        skipped = self._patch(assignment_id, "delivered")
        forward = self._patch(assignment_id, "picked_up")

        self.assertEqual(skipped.status_code, status.HTTP_400_BAD_REQUEST, skipped.data)
        self.assertEqual(forward.status_code, status.HTTP_200_OK, forward.data)
        self.assertEqual(self.history_for(assignment_id).count(), 2)

    def test_history_write_failure_does_not_undo_transition(self):
        with patch.object(DeliveryStatusHistory.objects, "create", side_effect=DatabaseError("audit down")):
            with self.assertLogs("delivery.history", level="ERROR"):
                response = self._create()

        self.assertEqual(response.status_code, status.HTTP_201_CREATED, response.data)
        self.assertTrue(DeliveryAssignment.objects.filter(order=self.order).exists())
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.DISPATCHED_TO_RIDER)
        self.assertFalse(DeliveryStatusHistory.objects.exists())

    def test_persistence_failure_is_500_and_rolls_back(self):
        with patch(
            "delivery.services.OrderService.set_delivery_status",
            side_effect=DatabaseError("disk full"),
        ):
            with self.assertLogs("delivery.views", level="ERROR"):
                response = self._create()

        self.assertEqual(response.status_code, status.HTTP_500_INTERNAL_SERVER_ERROR)
        self.assertEqual(response.data["detail"], "Internal server error")
        self.assertFalse(DeliveryAssignment.objects.exists())


class AssignmentListTests(DeliveryFixturesMixin, APITestCase):
    def setUp(self):
        self.make_fixtures()
        self.client.force_authenticate(user=self.operator)
        self.first = AssignmentService.create_assignment(
            user=self.operator, order_id=self.order.id, rider_id=self.rider.id
        )
        self.second = AssignmentService.create_assignment(
            user=self.operator, order_id=self.make_order("O2").id, rider_id=self.rider_two.id
        )
        self.third = AssignmentService.create_assignment(
            user=self.operator, order_id=self.make_order("O3").id, rider_id=self.rider.id
        )
        AssignmentService.update_assignment(user=self.operator, assignment_id=self.third.id, status="delivered")

    def test_list_returns_joined_summaries(self):
        response = self.client.get(ASSIGNMENTS_URL)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["total"], 3)
        self.assertEqual(response.data["page"], 1)
        self.assertEqual(response.data["limit"], 50)
        item = next(a for a in response.data["assignments"] if str(a["id"]) == str(self.first.id))
        self.assertEqual(item["rider"]["full_name"], "R1")
        self.assertEqual(item["order"]["order_number"], "O1")
        self.assertEqual(item["order"]["shipping_address"]["city"], "Accra")

    def test_filters_by_status_and_rider(self):
        delivered = self.client.get(ASSIGNMENTS_URL, {"status": "delivered"})
        for_rider = self.client.get(ASSIGNMENTS_URL, {"rider_id": str(self.rider.id)})
        everything = self.client.get(ASSIGNMENTS_URL, {"status": "all"})

        self.assertEqual(delivered.data["total"], 1)
        self.assertEqual(str(delivered.data["assignments"][0]["id"]), str(self.third.id))
        self.assertEqual(for_rider.data["total"], 2)
        self.assertEqual(everything.data["total"], 3)

    def test_limit_is_capped_and_pages_slice(self):
        capped = self.client.get(ASSIGNMENTS_URL, {"limit": 500})
        second_page = self.client.get(ASSIGNMENTS_URL, {"limit": 2, "page": 2})

        self.assertEqual(capped.data["limit"], 100)
        self.assertEqual(second_page.data["total"], 3)
        self.assertEqual(len(second_page.data["assignments"]), 1)

    def test_filters_by_assigned_date_range(self):
        last_week = timezone.now() - timedelta(days=7)
        DeliveryAssignment.objects.filter(id=self.first.id).update(assigned_at=last_week)
        today = timezone.localdate().isoformat()

        recent = self.client.get(ASSIGNMENTS_URL, {"date_from": today})
        older = self.client.get(ASSIGNMENTS_URL, {"date_to": (last_week + timedelta(days=1)).isoformat()})

        self.assertEqual(recent.data["total"], 2)
        self.assertEqual(older.data["total"], 1)

    def test_rejects_bad_query_values(self):
        self.assertEqual(
            self.client.get(ASSIGNMENTS_URL, {"date_from": "last tuesday"}).status_code,
            status.HTTP_400_BAD_REQUEST,
        )
        self.assertEqual(
            self.client.get(ASSIGNMENTS_URL, {"page": "zero"}).status_code,
            status.HTTP_400_BAD_REQUEST,
        )


class AssignmentAccessTests(DeliveryFixturesMixin, APITestCase):
    def setUp(self):
        self.make_fixtures()

    def test_anonymous_caller_is_unauthorized(self):
        response = self.client.get(ASSIGNMENTS_URL)
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_customer_is_unauthorized(self):
        customer = User.objects.create_user(email="shopper@example.com", password="Pass123!")
        self.client.force_authenticate(user=customer)

        response = self.client.post(
            ASSIGNMENTS_URL,
            {"order_id": str(self.order.id), "rider_id": str(self.rider.id)},
            format="json",
        )

        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)
        self.assertFalse(DeliveryAssignment.objects.exists())

    def test_admin_role_is_allowed(self):
        admin = User.objects.create_user(email="admin@example.com", password="Pass123!", role="ADMIN")
        self.client.force_authenticate(user=admin)

        self.assertEqual(self.client.get(ASSIGNMENTS_URL).status_code, status.HTTP_200_OK)

    @override_settings(ENABLED_MODULES=["support"])
    def test_disabled_delivery_module_denies_staff(self):
        self.client.force_authenticate(user=self.operator)
        self.assertEqual(self.client.get(ASSIGNMENTS_URL).status_code, status.HTTP_401_UNAUTHORIZED)

    @override_settings(DISABLED_ROLES=["STAFF"])
    def test_disabled_role_is_denied(self):
        self.client.force_authenticate(user=self.operator)
        self.assertEqual(self.client.get(DASHBOARD_URL).status_code, status.HTTP_401_UNAUTHORIZED)


class AssignmentServiceTests(DeliveryFixturesMixin, TestCase):
    def setUp(self):
        self.make_fixtures()

    def test_guard_reports_conflicting_assignment(self):
        self.assertFalse(find_active_assignment(self.order.id).has_active)
        assignment = AssignmentService.create_assignment(
            user=self.operator, order_id=self.order.id, rider_id=self.rider.id
        )

        check = find_active_assignment(self.order.id)

        self.assertTrue(check.has_active)
        self.assertEqual(check.assignment_id, str(assignment.id))
        self.assertEqual(check.status, "assigned")
        self.assertFalse(find_active_assignment(self.order.id, exclude_id=assignment.id).has_active)

    def test_guard_ignores_failed_and_returned(self):
        DeliveryAssignment.objects.create(order=self.order, rider=self.rider, status="failed")
        DeliveryAssignment.objects.create(order=self.order, rider=self.rider_two, status="returned")

        self.assertFalse(find_active_assignment(self.order.id).has_active)

    def test_unique_constraint_blocks_second_active_row(self):
        DeliveryAssignment.objects.create(order=self.order, rider=self.rider)

        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                DeliveryAssignment.objects.create(order=self.order, rider=self.rider_two)

    def test_insert_race_past_guard_becomes_conflict(self):
        AssignmentService.create_assignment(user=self.operator, order_id=self.order.id, rider_id=self.rider.id)

        with patch("delivery.services.find_active_assignment", return_value=ActiveAssignmentCheck(has_active=False)):
            with self.assertRaises(AssignmentConflict):
                AssignmentService.create_assignment(
                    user=self.operator, order_id=self.order.id, rider_id=self.rider_two.id
                )

        self.assertEqual(DeliveryAssignment.objects.filter(order=self.order).count(), 1)

    def test_delete_guard_statuses(self):
        for index, current in enumerate(["assigned", "picked_up", "failed", "returned"]):
            order = self.make_order(f"DG-{index}", Order.Status.DISPATCHED_TO_RIDER)
            assignment = DeliveryAssignment.objects.create(order=order, rider=self.rider, status=current)
            AssignmentService.delete_assignment(user=self.operator, assignment_id=assignment.id)
            order.refresh_from_db()
            self.assertEqual(order.status, Order.Status.PROCESSING, current)

        for index, current in enumerate(["in_transit", "delivered"]):
            order = self.make_order(f"DK-{index}")
            assignment = DeliveryAssignment.objects.create(order=order, rider=self.rider, status=current)
            with self.assertRaises(InvalidAssignmentState):
                AssignmentService.delete_assignment(user=self.operator, assignment_id=assignment.id)

    def test_history_rows_are_immutable(self):
        assignment = AssignmentService.create_assignment(
            user=self.operator, order_id=self.order.id, rider_id=self.rider.id
        )
        entry = DeliveryStatusHistory.objects.get(assignment_id=assignment.id)

        entry.notes = "rewritten"
        with self.assertRaises(ValueError):
            entry.save()
        with self.assertRaises(ValueError):
            entry.delete()
        self.assertEqual(DeliveryStatusHistory.objects.get(id=entry.id).notes, "Assigned to R1")


class AssignmentStateMachineTests(TestCase):
    def setUp(self):
        self.assignment = DeliveryAssignment(status="assigned")

    def test_permissive_machine_accepts_any_known_status(self):
        machine = AssignmentStateMachine(strict=False)
        for target in DeliveryAssignment.Status.values:
            machine.validate("delivered", target)

    def test_strict_machine_follows_graph(self):
        machine = AssignmentStateMachine(strict=True)
        machine.validate("assigned", "picked_up")
        machine.validate("picked_up", "in_transit")
        machine.validate("in_transit", "delivered")
        machine.validate("picked_up", "failed")
        machine.validate("assigned", "returned")
        for current, target in [("assigned", "delivered"), ("delivered", "failed"), ("failed", "assigned")]:
            with self.assertRaises(InvalidAssignmentState):
                machine.validate(current, target)

    def test_apply_sets_stage_timestamp_once(self):
        machine = AssignmentStateMachine(strict=False)
        first = timezone.now()

        changed = machine.apply(self.assignment, "picked_up", now=first)
        machine.apply(self.assignment, "picked_up", now=first + timedelta(hours=1))

        self.assertIn("picked_up_at", changed)
        self.assertEqual(self.assignment.picked_up_at, first)

    def test_apply_failed_keeps_reason(self):
        machine = AssignmentStateMachine(strict=False)

        machine.apply(self.assignment, "failed", failure_reason="address not found")

        self.assertEqual(self.assignment.status, "failed")
        self.assertIsNotNone(self.assignment.failed_at)
        self.assertEqual(self.assignment.failure_reason, "address not found")

    def test_order_side_effects_only_for_delivered_and_failed(self):
        self.assertEqual(AssignmentStateMachine.order_status_for("delivered"), Order.Status.DELIVERED)
        self.assertEqual(AssignmentStateMachine.order_status_for("failed"), Order.Status.PROCESSING)
        for target in ("assigned", "picked_up", "in_transit", "returned"):
            self.assertIsNone(AssignmentStateMachine.order_status_for(target))

    @override_settings(DELIVERY_STRICT_TRANSITIONS=True)
    def test_default_mode_comes_from_settings(self):
        self.assertTrue(AssignmentStateMachine().strict)


class RiderDirectoryTests(DeliveryFixturesMixin, APITestCase):
    def setUp(self):
        self.make_fixtures()
        self.client.force_authenticate(user=self.operator)

    def test_create_rider_defaults(self):
        response = self.client.post(RIDERS_URL, {"full_name": "Kojo", "phone": "0200000010"}, format="json")

        self.assertEqual(response.status_code, status.HTTP_201_CREATED, response.data)
        self.assertEqual(response.data["rider"]["status"], "active")
        self.assertEqual(response.data["rider"]["vehicle_type"], "motorcycle")

    def test_duplicate_phone_conflicts(self):
        response = self.client.post(RIDERS_URL, {"full_name": "Copy", "phone": self.rider.phone}, format="json")
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT, response.data)

    def test_list_filters_by_status(self):
        Rider.objects.create(full_name="Resting", phone="0200000011", status=Rider.Status.OFF_DUTY)

        response = self.client.get(RIDERS_URL, {"status": "off_duty"})

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([r["full_name"] for r in response.data["riders"]], ["Resting"])

    def test_patch_updates_status(self):
        response = self.client.patch(RIDERS_URL, {"id": str(self.rider.id), "status": "off_duty"}, format="json")

        self.assertEqual(response.status_code, status.HTTP_200_OK, response.data)
        self.rider.refresh_from_db()
        self.assertEqual(self.rider.status, Rider.Status.OFF_DUTY)

    def test_patch_unknown_rider_is_not_found(self):
        response = self.client.patch(RIDERS_URL, {"id": str(uuid.uuid4()), "full_name": "Ghost"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_delete_rules(self):
        AssignmentService.create_assignment(user=self.operator, order_id=self.order.id, rider_id=self.rider.id)
        DeliveryAssignment.objects.create(order=self.make_order("O9"), rider=self.rider_two, status="failed")
        idle = Rider.objects.create(full_name="Idle", phone="0200000012")

        busy = self.client.delete(f"{RIDERS_URL}?id={self.rider.id}")
        with_history = self.client.delete(f"{RIDERS_URL}?id={self.rider_two.id}")
        free = self.client.delete(f"{RIDERS_URL}?id={idle.id}")

        self.assertEqual(busy.status_code, status.HTTP_400_BAD_REQUEST, busy.data)
        self.assertIn("active deliveries", busy.data["detail"])
        self.assertEqual(with_history.status_code, status.HTTP_400_BAD_REQUEST, with_history.data)
        self.assertEqual(free.status_code, status.HTTP_200_OK, free.data)
        self.assertFalse(Rider.objects.filter(id=idle.id).exists())

    def test_delete_rejects_malformed_id(self):
        response = self.client.delete(f"{RIDERS_URL}?id=not-a-uuid")

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertTrue(Rider.objects.filter(id=self.rider.id).exists())

    def test_rider_zone_is_set_and_listed(self):
        zone = DeliveryZone.objects.create(name="Osu")

        created = self.client.post(
            RIDERS_URL,
            {"full_name": "Ama", "phone": "0200000013", "zone_id": str(zone.id)},
            format="json",
        )
        listed = self.client.get(RIDERS_URL)
        cleared = self.client.patch(RIDERS_URL, {"id": str(self.rider.id), "zone_id": None}, format="json")

        self.assertEqual(created.status_code, status.HTTP_201_CREATED, created.data)
        self.assertEqual(created.data["rider"]["zone"]["name"], "Osu")
        ama = next(r for r in listed.data["riders"] if r["full_name"] == "Ama")
        self.assertEqual(str(ama["zone_id"]), str(zone.id))
        self.assertEqual(cleared.status_code, status.HTTP_200_OK, cleared.data)
        self.assertIsNone(cleared.data["rider"]["zone"])

    def test_rider_with_unknown_zone_is_not_found(self):
        response = self.client.post(
            RIDERS_URL,
            {"full_name": "Kofi", "phone": "0200000014", "zone_id": str(uuid.uuid4())},
            format="json",
        )

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND, response.data)
        self.assertFalse(Rider.objects.filter(phone="0200000014").exists())


class DeliveryZoneTests(DeliveryFixturesMixin, APITestCase):
    def setUp(self):
        self.make_fixtures()
        self.client.force_authenticate(user=self.operator)

    def test_create_zone_defaults(self):
        response = self.client.post(ZONES_URL, {"name": "Tema"}, format="json")

        self.assertEqual(response.status_code, status.HTTP_201_CREATED, response.data)
        zone = response.data["zone"]
        self.assertEqual(zone["regions"], [])
        self.assertEqual(zone["base_fee"], "0.00")
        self.assertEqual(zone["estimated_days"], "1-3 days")
        self.assertTrue(zone["is_active"])

    def test_create_requires_name(self):
        response = self.client.post(ZONES_URL, {"base_fee": "5.00"}, format="json")

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("name", response.data)

    def test_list_is_ordered_by_name(self):
        DeliveryZone.objects.create(name="Tema")
        DeliveryZone.objects.create(name="Accra Central", regions=["Greater Accra"])

        response = self.client.get(ZONES_URL)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([z["name"] for z in response.data["zones"]], ["Accra Central", "Tema"])

    def test_patch_updates_fees_and_deactivates(self):
        zone = DeliveryZone.objects.create(name="Kumasi")

        response = self.client.patch(
            ZONES_URL,
            {"id": str(zone.id), "express_fee": "25.00", "is_active": False},
            format="json",
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK, response.data)
        zone.refresh_from_db()
        self.assertEqual(zone.express_fee, Decimal("25.00"))
        self.assertFalse(zone.is_active)

    def test_patch_unknown_zone_is_not_found(self):
        response = self.client.patch(ZONES_URL, {"id": str(uuid.uuid4()), "name": "Nowhere"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_delete_refused_while_riders_in_zone(self):
        staffed = DeliveryZone.objects.create(name="Osu")
        empty = DeliveryZone.objects.create(name="Labadi")
        Rider.objects.filter(id=self.rider.id).update(zone=staffed)

        refused = self.client.delete(f"{ZONES_URL}?id={staffed.id}")
        accepted = self.client.delete(f"{ZONES_URL}?id={empty.id}")

        self.assertEqual(refused.status_code, status.HTTP_400_BAD_REQUEST, refused.data)
        self.assertIn("assigned riders", refused.data["detail"])
        self.assertTrue(DeliveryZone.objects.filter(id=staffed.id).exists())
        self.assertEqual(accepted.status_code, status.HTTP_200_OK, accepted.data)
        self.assertFalse(DeliveryZone.objects.filter(id=empty.id).exists())

    def test_delete_rejects_malformed_id(self):
        response = self.client.delete(f"{ZONES_URL}?id=not-a-uuid")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)


class DeliveryDashboardTests(DeliveryFixturesMixin, APITestCase):
    def setUp(self):
        self.make_fixtures()
        self.client.force_authenticate(user=self.operator)
        delivered = AssignmentService.create_assignment(
            user=self.operator,
            order_id=self.order.id,
            rider_id=self.rider.id,
            delivery_fee=Decimal("15.50"),
        )
        AssignmentService.update_assignment(user=self.operator, assignment_id=delivered.id, status="delivered")

        self.failed_order = self.make_order("O2")
        failed = AssignmentService.create_assignment(
            user=self.operator, order_id=self.failed_order.id, rider_id=self.rider_two.id
        )
        AssignmentService.update_assignment(user=self.operator, assignment_id=failed.id, status="failed")

        self.waiting_order = self.make_order("O3")
        self.dispatched_order = self.make_order("O4")
        AssignmentService.create_assignment(
            user=self.operator, order_id=self.dispatched_order.id, rider_id=self.rider.id
        )
        Rider.objects.create(full_name="Busy", phone="0200000020", status=Rider.Status.ON_DELIVERY)
        DeliveryZone.objects.create(name="Osu")
        DeliveryZone.objects.create(name="Retired", is_active=False)

    def test_stats(self):
        response = self.client.get(DASHBOARD_URL, {"action": "stats"})

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        stats = response.data["stats"]
        self.assertEqual(stats["total_assignments"], 3)
        self.assertEqual(stats["active_deliveries"], 1)
        self.assertEqual(stats["delivered_today"], 1)
        self.assertEqual(stats["failed_today"], 1)
        self.assertEqual(stats["total_riders"], 3)
        self.assertEqual(stats["active_riders"], 2)
        self.assertEqual(stats["on_delivery_riders"], 1)
        self.assertEqual(stats["active_zones"], 1)
        self.assertEqual(stats["pending_orders"], 2)
        self.assertEqual(stats["today_revenue"], "15.50")

    def test_unassigned_orders_exclude_active_assignments(self):
        response = self.client.get(DASHBOARD_URL, {"action": "unassigned"})

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        numbers = [o["order_number"] for o in response.data["orders"]]
        self.assertEqual(sorted(numbers), ["O2", "O3"])

    def test_recent_and_default_action(self):
        recent = self.client.get(DASHBOARD_URL, {"action": "recent"})
        default = self.client.get(DASHBOARD_URL)

        self.assertEqual(len(recent.data["assignments"]), 3)
        self.assertIn("stats", default.data)

    def test_invalid_action(self):
        response = self.client.get(DASHBOARD_URL, {"action": "explode"})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)


class AssignmentConcurrencyTests(DeliveryFixturesMixin, TransactionTestCase):
    reset_sequences = True

    def setUp(self):
        self.make_fixtures()

    def _attempt_create(self, barrier, rider_id):
        close_old_connections()
        try:
            barrier.wait(timeout=5)
            assignment = AssignmentService.create_assignment(
                user=self.operator,
                order_id=self.order.id,
                rider_id=rider_id,
            )
            return ("ok", str(assignment.id))
        except Exception as exc:
            return ("err", str(exc))
        finally:
            close_old_connections()

    def test_parallel_creates_leave_at_most_one_active_assignment(self):
        barrier = threading.Barrier(2)

        with ThreadPoolExecutor(max_workers=2) as executor:
            futures = [
                executor.submit(self._attempt_create, barrier, rider_id)
                for rider_id in (self.rider.id, self.rider_two.id)
            ]
            results = [f.result(timeout=20) for f in futures]

        success_count = len([r for r in results if r[0] == "ok"])
        self.assertLessEqual(success_count, 1, results)
        active = DeliveryAssignment.objects.filter(order=self.order).exclude(status__in=["failed", "returned"])
        self.assertEqual(active.count(), success_count, results)
        for outcome, message in results:
            if outcome == "err":
                lowered = message.lower()
                self.assertTrue(
                    "active delivery assignment" in lowered or "locked" in lowered,
                    results,
                )
