from django.urls import include, path

urlpatterns = [
    path("", include("apps.monitoring.urls")),
    path("api/orders/", include("apps.orders.urls")),
    path("api/payments/", include("apps.orders.payment_urls")),
    path("api/admin/dashboard/", include("apps.dashboard.urls")),
]
