from django.urls import path

from .views import ActivitiesView, DashboardStatsView, RecentOrdersView

app_name = "dashboard"

urlpatterns = [
    path("stats/", DashboardStatsView.as_view(), name="stats"),
    path("recent-orders/", RecentOrdersView.as_view(), name="recent-orders"),
    path("activities/", ActivitiesView.as_view(), name="activities"),
]
