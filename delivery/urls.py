from django.urls import path

from .views import (
    AssignmentCollectionView,
    AssignmentHistoryView,
    DeliveryDashboardView,
    RiderCollectionView,
    ZoneCollectionView,
)


urlpatterns = [
    path("", DeliveryDashboardView.as_view(), name="delivery-dashboard"),
    path("assignments/", AssignmentCollectionView.as_view(), name="delivery-assignments"),
    path("assignments/<uuid:pk>/history/", AssignmentHistoryView.as_view(), name="delivery-assignment-history"),
    path("riders/", RiderCollectionView.as_view(), name="delivery-riders"),
    path("zones/", ZoneCollectionView.as_view(), name="delivery-zones"),
]
