from django.urls import path
from rest_framework.routers import DefaultRouter

from .views import (
    DispatchCsvView,
    DispatchRecordsView,
    DispatchStatsView,
    EntryViewSet,
    LockerAvailabilityView,
    OtpIssueView,
    OtpVerifyView,
)

router = DefaultRouter()
router.register(r"entries", EntryViewSet, basename="entries")

urlpatterns = [
    *router.urls,
    path("otp/issue/", OtpIssueView.as_view(), name="otp-issue"),
    path("otp/verify/", OtpVerifyView.as_view(), name="otp-verify"),
    path("dispatches/", DispatchRecordsView.as_view(), name="dispatches"),
    path("dispatches/stats/", DispatchStatsView.as_view(), name="dispatches-stats"),
    path("dispatches/csv/", DispatchCsvView.as_view(), name="dispatches-csv"),
    path("lockers/availability/", LockerAvailabilityView.as_view(), name="lockers-availability"),
]
