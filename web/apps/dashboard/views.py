"""Admin dashboard endpoints (admin role only)."""

from django.conf import settings
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from apps.orders import providers
from apps.orders.domain import OrderError
from apps.orders.views import error_response
from gateway.authentication import IsAdmin

from .aggregator import DashboardAggregator


def get_aggregator() -> DashboardAggregator:
    return DashboardAggregator(
        providers.get_inventory(),
        low_stock_threshold=getattr(settings, "DASHBOARD_LOW_STOCK_THRESHOLD", 10),
    )


def _limit(request, default: int = 10) -> int:
    try:
        return max(1, min(100, int(request.GET.get("limit", default))))
    except (TypeError, ValueError):
        return default


class DashboardView(APIView):
    permission_classes = [IsAdmin]
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "dashboard"


class DashboardStatsView(DashboardView):
    def get(self, request):
        try:
            return Response(get_aggregator().stats())
        except OrderError as e:
            return error_response(e)


class RecentOrdersView(DashboardView):
    def get(self, request):
        return Response(get_aggregator().recent_orders(_limit(request)))


class ActivitiesView(DashboardView):
    def get(self, request):
        try:
            return Response(get_aggregator().activities(_limit(request)))
        except OrderError as e:
            return error_response(e)
