import uuid
from django.db import models

from .domain import OrderStatus, ReservationState


class CustomerModel(models.Model):
    # id issued by the identity provider
    id = models.CharField(primary_key=True, max_length=64)
    email = models.CharField(max_length=255, blank=True, default="")
    name = models.CharField(max_length=255, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)  # first seen

    class Meta:
        db_table = "customers"


class OrderModel(models.Model):
    # UUID PK used internally and in the API
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    # human-shareable number, e.g. ORD-20240115-A1B2C3
    order_number = models.CharField(max_length=32, unique=True)

    class Status(models.TextChoices):
        PENDING_PAYMENT = OrderStatus.PENDING_PAYMENT.value
        CONFIRMED = OrderStatus.CONFIRMED.value
        SHIPPED = OrderStatus.SHIPPED.value
        DELIVERED = OrderStatus.DELIVERED.value
        CANCELLED = OrderStatus.CANCELLED.value

    customer_id = models.CharField(max_length=64, db_index=True)
    status = models.CharField(max_length=32, choices=Status.choices, default=Status.PENDING_PAYMENT, db_index=True)
    total_cents = models.PositiveIntegerField(default=0)
    currency = models.CharField(max_length=3, default="usd")
    payment_intent_id = models.CharField(max_length=255, null=True, blank=True, unique=True)
    cancel_reason = models.CharField(max_length=64, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "orders"
        ordering = ["-created_at"]


class OrderLineModel(models.Model):
    class ReservationStatus(models.TextChoices):
        HELD = ReservationState.HELD.value
        COMMITTED = ReservationState.COMMITTED.value
        RELEASED = ReservationState.RELEASED.value
        RESTOCKED = ReservationState.RESTOCKED.value

    order = models.ForeignKey(OrderModel, related_name="lines", on_delete=models.CASCADE)
    book_id = models.CharField(max_length=64)
    title = models.CharField(max_length=255)
    quantity = models.PositiveIntegerField()
    # captured at checkout; later catalog price changes never touch it
    unit_price_cents = models.PositiveIntegerField()
    reservation_token = models.CharField(max_length=64, unique=True)
    reservation_state = models.CharField(
        max_length=16, choices=ReservationStatus.choices, default=ReservationStatus.HELD
    )

    class Meta:
        db_table = "order_lines"
        ordering = ["id"]


class OrderStatusChange(models.Model):
    """Audit row written in the same transaction as each status change."""

    order = models.ForeignKey(OrderModel, related_name="history", on_delete=models.CASCADE)
    from_status = models.CharField(max_length=32, null=True, blank=True)
    to_status = models.CharField(max_length=32)
    reason = models.CharField(max_length=64, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "order_status_history"
        ordering = ["id"]


class ProcessedWebhookEvent(models.Model):
    event_id = models.CharField(primary_key=True, max_length=255)
    event_type = models.CharField(max_length=64)
    processed_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "processed_webhook_events"


class IdempotencyKey(models.Model):
    key = models.CharField(primary_key=True, max_length=255)
    request_hash = models.CharField(max_length=64)
    response_status = models.PositiveIntegerField(default=0)
    response_body = models.JSONField(default=dict)
    order_id = models.UUIDField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "idempotency_keys"
