import logging

from django.db import DatabaseError
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from account.permissions import DELIVERY_MANAGE, HasCapability
from order.serializers import OrderSummarySerializer

from .exceptions import DeliveryError, DeliveryValidationError
from .serializers import (
    AssignmentCreateSerializer,
    AssignmentListQuerySerializer,
    AssignmentUpdateSerializer,
    DeliveryAssignmentSerializer,
    DeliveryStatusHistorySerializer,
    DeliveryZoneSerializer,
    ObjectIdQuerySerializer,
    RiderCreateSerializer,
    RiderListQuerySerializer,
    RiderSerializer,
    RiderUpdateSerializer,
    ZoneCreateSerializer,
    ZoneUpdateSerializer,
)
from .services import AssignmentService, DeliveryDashboardService, RiderService, ZoneService

logger = logging.getLogger(__name__)


class DeliveryAPIView(APIView):
    permission_classes = [HasCapability]
    required_capability = DELIVERY_MANAGE

    def handle_exception(self, exc):
        if isinstance(exc, DeliveryError):
            return Response({"detail": str(exc)}, status=exc.status_code)
        if isinstance(exc, DatabaseError):
            logger.exception("Delivery persistence failure on %s %s", self.request.method, self.request.path)
            return Response({"detail": "Internal server error"}, status=status.HTTP_500_INTERNAL_SERVER_ERROR)
        return super().handle_exception(exc)

    @staticmethod
    def _require_id(request):
        if not request.query_params.get("id"):
            raise DeliveryValidationError("id is required")
        query = ObjectIdQuerySerializer(data=request.query_params)
        query.is_valid(raise_exception=True)
        return query.validated_data["id"]


class AssignmentCollectionView(DeliveryAPIView):

    def get(self, request):
        query = AssignmentListQuerySerializer(data=request.query_params)
        query.is_valid(raise_exception=True)
        result = AssignmentService.list_assignments(**query.validated_data)
        return Response({
            "assignments": DeliveryAssignmentSerializer(result["assignments"], many=True).data,
            "total": result["total"],
            "page": result["page"],
            "limit": result["limit"],
        })

    def post(self, request):
        serializer = AssignmentCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        assignment = AssignmentService.create_assignment(user=request.user, **serializer.validated_data)
        return Response(
            {"assignment": DeliveryAssignmentSerializer(assignment).data},
            status=status.HTTP_201_CREATED,
        )

    def patch(self, request):
        serializer = AssignmentUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = dict(serializer.validated_data)
        assignment = AssignmentService.update_assignment(
            user=request.user,
            assignment_id=data.pop("id"),
            **data,
        )
        return Response({"assignment": DeliveryAssignmentSerializer(assignment).data})

    def delete(self, request):
        AssignmentService.delete_assignment(user=request.user, assignment_id=self._require_id(request))
        return Response({"success": True})


class AssignmentHistoryView(DeliveryAPIView):

    def get(self, request, pk):
        history = AssignmentService.history(pk)
        return Response({"history": DeliveryStatusHistorySerializer(history, many=True).data})


class RiderCollectionView(DeliveryAPIView):

    def get(self, request):
        query = RiderListQuerySerializer(data=request.query_params)
        query.is_valid(raise_exception=True)
        riders = RiderService.list_riders(query.validated_data.get("status"))
        return Response({"riders": RiderSerializer(riders, many=True).data})

    def post(self, request):
        serializer = RiderCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        rider = RiderService.create_rider(**serializer.validated_data)
        return Response({"rider": RiderSerializer(rider).data}, status=status.HTTP_201_CREATED)

    def patch(self, request):
        serializer = RiderUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = dict(serializer.validated_data)
        rider = RiderService.update_rider(data.pop("id"), **data)
        return Response({"rider": RiderSerializer(rider).data})

    def delete(self, request):
        RiderService.delete_rider(self._require_id(request))
        return Response({"success": True})


class ZoneCollectionView(DeliveryAPIView):

    def get(self, request):
        return Response({"zones": DeliveryZoneSerializer(ZoneService.list_zones(), many=True).data})

    def post(self, request):
        serializer = ZoneCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        zone = ZoneService.create_zone(**serializer.validated_data)
        return Response({"zone": DeliveryZoneSerializer(zone).data}, status=status.HTTP_201_CREATED)

    def patch(self, request):
        serializer = ZoneUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = dict(serializer.validated_data)
        zone = ZoneService.update_zone(data.pop("id"), **data)
        return Response({"zone": DeliveryZoneSerializer(zone).data})

    def delete(self, request):
        ZoneService.delete_zone(self._require_id(request))
        return Response({"success": True})


class DeliveryDashboardView(DeliveryAPIView):

    def get(self, request):
        action = request.query_params.get("action") or "stats"

        if action == "stats":
            return Response({"stats": DeliveryDashboardService.stats()})
        if action == "recent":
            assignments = DeliveryDashboardService.recent()
            return Response({"assignments": DeliveryAssignmentSerializer(assignments, many=True).data})
        if action == "unassigned":
            orders = DeliveryDashboardService.unassigned_orders()
            return Response({"orders": OrderSummarySerializer(orders, many=True).data})

        return Response({"detail": "Invalid action"}, status=status.HTTP_400_BAD_REQUEST)
