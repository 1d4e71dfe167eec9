from django.urls import path

from .views import (
    CancelOrderView,
    CheckoutView,
    DeliverOrderView,
    OrderPaymentView,
    OrdersCollectionView,
    RetrieveOrderView,
    ShipOrderView,
)

app_name = "orders"

urlpatterns = [
    path("", OrdersCollectionView.as_view(), name="orders-collection"),
    path("checkout/", CheckoutView.as_view(), name="orders-checkout"),
    path("<uuid:oid>/", RetrieveOrderView.as_view(), name="orders-detail"),
    path("<uuid:oid>/payment/", OrderPaymentView.as_view(), name="orders-payment"),
    path("<uuid:oid>/cancel/", CancelOrderView.as_view(), name="orders-cancel"),
    path("<uuid:oid>/ship/", ShipOrderView.as_view(), name="orders-ship"),
    path("<uuid:oid>/deliver/", DeliverOrderView.as_view(), name="orders-deliver"),
]
