from django.urls import path

from .views import ConfirmPaymentView, StripeWebhookView

app_name = "payments"

urlpatterns = [
    path("confirm/", ConfirmPaymentView.as_view(), name="payments-confirm"),
    path("webhook/", StripeWebhookView.as_view(), name="payments-webhook"),
]
