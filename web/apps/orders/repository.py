"""Repository layer for persisting orders.

This module implements the order store port with the Django ORM. It keeps
a thin interface so the domain layer is not coupled to ORM details: every
method takes and returns domain objects.

Status changes and intent attachment are compare-and-set statements
(``UPDATE ... WHERE status = expected``); the audit row for a status
change is written in the same transaction as the change itself.
"""

import logging
from typing import List, Optional

from django.core.exceptions import ValidationError
from django.core.paginator import Paginator
from django.db import IntegrityError, transaction
from django.db.models import Q
from django.utils import timezone

from .domain import (
    PAID_STATUSES,
    Order,
    OrderLine,
    OrderNotFound,
    OrderStatus,
    OrderStorePort,
    Principal,
    ReservationState,
    generate_order_number,
)
from .models import (
    CustomerModel,
    OrderLineModel,
    OrderModel,
    OrderStatusChange,
    ProcessedWebhookEvent,
)

logger = logging.getLogger("orders")

ORDER_NUMBER_ATTEMPTS = 5


class OrderRepository(OrderStorePort):
    """Repository that persists Order domain objects using Django ORM."""

    def add(self, order: Order) -> Order:
        """Persist a new order with its lines and the creation history row.

        A fresh order number is generated for each attempt; a collision on
        the unique number is retried up to ``ORDER_NUMBER_ATTEMPTS`` times.

        Returns:
            Order: The stored order, with id, number and timestamps set.

        Raises:
            IntegrityError: If no unique order number was found, or for any
                other constraint violation.
        """
        for attempt in range(1, ORDER_NUMBER_ATTEMPTS + 1):
            number = generate_order_number()
            try:
                with transaction.atomic():
                    obj = OrderModel.objects.create(
                        order_number=number,
                        customer_id=order.customer_id,
                        status=OrderStatus(order.status).value,
                        total_cents=order.total_cents,
                        currency=order.currency,
                    )
                    OrderLineModel.objects.bulk_create(
                        [
                            OrderLineModel(
                                order=obj,
                                book_id=ln.book_id,
                                title=ln.title,
                                quantity=ln.quantity,
                                unit_price_cents=ln.unit_price_cents,
                                reservation_token=ln.reservation_token,
                                reservation_state=ReservationState(ln.reservation_state).value,
                            )
                            for ln in order.lines
                        ]
                    )
                    OrderStatusChange.objects.create(order=obj, from_status=None, to_status=obj.status, reason="created")
            except IntegrityError:
                if attempt == ORDER_NUMBER_ATTEMPTS or not OrderModel.objects.filter(order_number=number).exists():
                    raise
                logger.info("order number collision", extra={"order_number": number, "attempt": attempt})
                continue
            return self.get(obj.id)
        raise IntegrityError("order number generation exhausted")

    def get(self, order_id) -> Order:
        try:
            obj = OrderModel.objects.prefetch_related("lines").get(id=order_id)
        except (OrderModel.DoesNotExist, ValidationError, ValueError):
            raise OrderNotFound("Order not found")
        return _to_domain(obj)

    def get_by_intent(self, intent_id: str) -> Optional[Order]:
        obj = OrderModel.objects.prefetch_related("lines").filter(payment_intent_id=intent_id).first()
        return _to_domain(obj) if obj else None

    def attach_intent(self, order_id, intent_id: str, expected: str | None) -> bool:
        qs = OrderModel.objects.filter(id=order_id)
        qs = qs.filter(payment_intent_id__isnull=True) if expected is None else qs.filter(payment_intent_id=expected)
        if qs.update(payment_intent_id=intent_id, updated_at=timezone.now()):
            return True
        return OrderModel.objects.filter(id=order_id, payment_intent_id=intent_id).exists()

    def transition(self, order_id, expected: OrderStatus, target: OrderStatus, reason: str = "") -> bool:
        """Move an order from ``expected`` to ``target`` if it is still in ``expected``.

        Returns:
            bool: True when this call performed the change; False when the
            order was no longer in ``expected`` (nothing is written).
        """
        expected, target = OrderStatus(expected), OrderStatus(target)
        fields = {"status": target.value, "updated_at": timezone.now()}
        if target == OrderStatus.CANCELLED:
            fields["cancel_reason"] = reason[:64]
        with transaction.atomic():
            updated = OrderModel.objects.filter(id=order_id, status=expected.value).update(**fields)
            if updated:
                OrderStatusChange.objects.create(
                    order_id=order_id, from_status=expected.value, to_status=target.value, reason=reason[:64]
                )
        return bool(updated)

    def mark_reservation(self, token: str, state: ReservationState) -> None:
        OrderLineModel.objects.filter(reservation_token=token).update(reservation_state=ReservationState(state).value)

    def stale_pending(self, cutoff) -> List[Order]:
        qs = OrderModel.objects.prefetch_related("lines").filter(
            status=OrderStatus.PENDING_PAYMENT.value, created_at__lt=cutoff
        )
        return [_to_domain(o) for o in qs.order_by("created_at")]

    def unsettled(self, older_than) -> List[Order]:
        """Orders whose line reservations still disagree with their status."""
        mismatch = Q(
            status__in=[s.value for s in PAID_STATUSES],
            lines__reservation_state=ReservationState.HELD.value,
        ) | Q(
            status=OrderStatus.CANCELLED.value,
            lines__reservation_state__in=[ReservationState.HELD.value, ReservationState.COMMITTED.value],
        )
        ids = (
            OrderModel.objects.filter(updated_at__lt=older_than)
            .filter(mismatch)
            .values_list("id", flat=True)
            .distinct()
        )
        qs = OrderModel.objects.prefetch_related("lines").filter(id__in=list(ids)).order_by("updated_at")
        return [_to_domain(o) for o in qs]

    def is_event_processed(self, event_id: str) -> bool:
        return ProcessedWebhookEvent.objects.filter(event_id=event_id).exists()

    def record_event(self, event_id: str, event_type: str) -> None:
        ProcessedWebhookEvent.objects.get_or_create(event_id=event_id, defaults={"event_type": event_type[:64]})

    def list(self, customer_id=None, status=None, page: int = 1, page_size: int = 20):
        """Return one page of orders (newest first) and the total count."""
        qs = OrderModel.objects.prefetch_related("lines").order_by("-created_at")
        if customer_id is not None:
            qs = qs.filter(customer_id=customer_id)
        if status is not None:
            qs = qs.filter(status=OrderStatus(status).value)
        p = Paginator(qs, page_size)
        page_obj = p.get_page(page)
        return [_to_domain(o) for o in page_obj.object_list], p.count

    def touch_customer(self, principal: Principal) -> None:
        CustomerModel.objects.get_or_create(
            id=principal.id, defaults={"email": principal.email or "", "name": principal.name or ""}
        )

    def history(self, order_id) -> List[tuple]:
        return list(
            OrderStatusChange.objects.filter(order_id=order_id).values_list("from_status", "to_status", "reason")
        )


def _to_domain(obj: OrderModel) -> Order:
    return Order(
        id=str(obj.id),
        order_number=obj.order_number,
        customer_id=obj.customer_id,
        lines=[
            OrderLine(
                book_id=ln.book_id,
                title=ln.title,
                quantity=ln.quantity,
                unit_price_cents=ln.unit_price_cents,
                reservation_token=ln.reservation_token,
                reservation_state=ReservationState(ln.reservation_state),
            )
            for ln in obj.lines.all()
        ],
        total_cents=obj.total_cents,
        currency=obj.currency,
        status=OrderStatus(obj.status),
        payment_intent_id=obj.payment_intent_id,
        cancel_reason=obj.cancel_reason or None,
        created_at=obj.created_at,
        updated_at=obj.updated_at,
    )
