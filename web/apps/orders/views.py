"""HTTP views for the orders and payments API.

Views are kept intentionally small: they validate requests (via Pydantic),
map them to domain calls on the ``OrderService`` returned by
``providers.get_order_service()``, and render the result. Domain errors
carry a stable code that ``ERROR_STATUS`` maps to an HTTP status; the body
is always ``{"detail": <code>, "message": <text>}`` plus error-specific
fields.

Idempotency: when an ``Idempotency-Key`` header is sent to checkout, the
first request is processed and its response stored; retries with the same
payload replay the stored response (``Idempotent-Replay: true``), and
reusing the key with a different payload returns 409. Server-side
failures (5xx and unexpected errors) are not stored, so a retry runs
checkout again.
"""

import logging

from pydantic import ValidationError
from rest_framework import status
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from gateway.authentication import IsAdmin

from . import providers
from .domain import CartItem, InsufficientStock, OrderError, OrderStatus
from .idempotency import IdempotencyConflict, discard, finalize, get_or_create_idempotent, scoped_key
from .schemas import CancelOrderDTO, CheckoutDTO, ConfirmPaymentDTO, OrderReadDTO

logger = logging.getLogger("orders")

ERROR_STATUS = {
    "INVALID_CART": 400,
    "EMPTY_CART": 400,
    "BOOK_NOT_FOUND": 404,
    "INSUFFICIENT_STOCK": 422,
    "NOT_FOUND": 404,
    "GATEWAY_UNAVAILABLE": 503,
    "INVENTORY_UNAVAILABLE": 503,
    "INVALID_SIGNATURE": 400,
    "INTENT_MISMATCH": 409,
    "INVALID_TRANSITION": 409,
    "PAYMENT_DECLINED": 402,
    "PAYMENT_REJECTED": 502,
    "RESERVATION_CONFLICT": 409,
}


def error_response(e: OrderError) -> Response:
    """Render a domain error as ``{"detail": code, "message": ...}``."""
    code = str(e)
    body = {"detail": code, "message": e.detail}
    if isinstance(e, InsufficientStock):
        body.update(bookId=e.book_id, requested=e.requested, available=e.available)
    return Response(body, status=ERROR_STATUS.get(code, 400))


def validation_error(e: ValidationError) -> Response:
    return Response({"detail": "INVALID_PAYLOAD", "errors": e.errors(include_url=False, include_context=False)}, status=400)


def _int_param(request, name: str, default: int, lo: int, hi: int) -> int:
    try:
        value = int(request.GET.get(name, default))
    except (TypeError, ValueError):
        return default
    return max(lo, min(hi, value))


class ScopedAPIView(APIView):
    """APIView throttled per endpoint family through ``throttle_scope``."""

    throttle_classes = [ScopedRateThrottle]


class OrdersCollectionView(ScopedAPIView):
    """List orders. Customers see their own; admins see every order."""

    throttle_scope = "orders_list"

    def get(self, request):
        status_filter = request.GET.get("status")
        if status_filter:
            try:
                status_filter = OrderStatus(status_filter.upper())
            except ValueError:
                return Response({"detail": "INVALID_STATUS"}, status=400)
        page = _int_param(request, "page", 1, 1, 10_000)
        page_size = _int_param(request, "page_size", 20, 1, 100)

        orders, count = providers.get_order_service().list_orders(
            request.user, status=status_filter or None, page=page, page_size=page_size
        )
        return Response(
            {
                "count": count,
                "page": page,
                "page_size": page_size,
                "results": [OrderReadDTO.from_order(o).to_json() for o in orders],
            },
            status=200,
        )


class CheckoutView(ScopedAPIView):
    """Turn a cart into a pending order and open its payment intent."""

    throttle_scope = "orders_create"

    def post(self, request):
        """Check out a cart.

        Returns:
            Response: One of the following responses.
            - 201 with the order summary and the intent client secret
              (``paymentError`` is set and the secret null when the gateway
              is down or rejects the intent; the client retries through
              ``/payment/``).
            - 200-range replay of a stored response for a repeated
              ``Idempotency-Key`` (header ``Idempotent-Replay: true``).
            - 409 ``IDEMPOTENCY_CONFLICT`` for a reused key with another
              payload, or ``IDEMPOTENCY_IN_PROGRESS`` while the first
              request is still running.
            - 400 for payload validation errors and empty carts.
            - 404 ``BOOK_NOT_FOUND``, 422 ``INSUFFICIENT_STOCK``.
            - 503 when the inventory ledger is unavailable.
        """
        idem_key = request.headers.get("Idempotency-Key")

        try:
            dto = CheckoutDTO.model_validate(request.data)
        except ValidationError as e:
            return validation_error(e)

        rec = None
        if idem_key:
            try:
                existing, rec = get_or_create_idempotent(scoped_key(request.user.id, idem_key), request.data)
            except IdempotencyConflict as e:
                return Response({"detail": str(e)}, status=status.HTTP_409_CONFLICT)
            if existing:
                if not rec.response_status:
                    return Response({"detail": "IDEMPOTENCY_IN_PROGRESS"}, status=status.HTTP_409_CONFLICT)
                resp = Response(rec.response_body, status=rec.response_status)
                resp["Idempotent-Replay"] = "true"
                return resp

        cart = [CartItem(book_id=i.book_id, quantity=i.quantity) for i in dto.items]
        try:
            result = providers.get_order_service().checkout(request.user, cart)
        except OrderError as e:
            resp = error_response(e)
            if rec:
                if resp.status_code >= 500:
                    discard(rec)
                else:
                    finalize(rec, resp.status_code, resp.data)
            return resp
        except Exception:
            # free the key so a retry runs checkout again
            if rec:
                discard(rec)
            raise

        order, intent = result.order, result.intent
        body = {
            "orderId": order.id,
            "orderNumber": order.order_number,
            "status": order.status.value,
            "totalAmount": str(order.total_amount),
            "currency": order.currency,
            "paymentIntentId": intent.intent_id if intent else None,
            "paymentIntentClientSecret": intent.client_secret if intent else None,
            "paymentError": result.payment_error,
        }
        if rec:
            finalize(rec, status.HTTP_201_CREATED, body, order_id=order.id)
        return Response(body, status=status.HTTP_201_CREATED)


class RetrieveOrderView(ScopedAPIView):
    throttle_scope = "orders_detail"

    def get(self, request, oid):
        try:
            order = providers.get_order_service().get_order(str(oid), request.user)
        except OrderError as e:
            return error_response(e)
        return Response(OrderReadDTO.from_order(order).to_json(), status=200)


class OrderPaymentView(ScopedAPIView):
    """Return (or open) the payment intent of a pending order."""

    throttle_scope = "payments"

    def post(self, request, oid):
        try:
            order, intent = providers.get_order_service().request_payment(str(oid), request.user)
        except OrderError as e:
            return error_response(e)
        return Response(
            {"orderId": order.id, "paymentIntentId": intent.intent_id, "clientSecret": intent.client_secret},
            status=200,
        )


class CancelOrderView(ScopedAPIView):
    throttle_scope = "orders_detail"

    def post(self, request, oid):
        try:
            dto = CancelOrderDTO.model_validate(request.data or {})
        except ValidationError as e:
            return validation_error(e)
        try:
            order = providers.get_order_service().cancel_order(str(oid), request.user, reason=dto.reason)
        except OrderError as e:
            return error_response(e)
        return Response(OrderReadDTO.from_order(order).to_json(), status=200)


class ShipOrderView(ScopedAPIView):
    throttle_scope = "orders_detail"
    permission_classes = [IsAdmin]

    def post(self, request, oid):
        try:
            order = providers.get_order_service().mark_shipped(str(oid))
        except OrderError as e:
            return error_response(e)
        return Response(OrderReadDTO.from_order(order).to_json(), status=200)


class DeliverOrderView(ScopedAPIView):
    throttle_scope = "orders_detail"
    permission_classes = [IsAdmin]

    def post(self, request, oid):
        try:
            order = providers.get_order_service().mark_delivered(str(oid))
        except OrderError as e:
            return error_response(e)
        return Response(OrderReadDTO.from_order(order).to_json(), status=200)


class ConfirmPaymentView(ScopedAPIView):
    """Client-side confirmation after the payment form completes."""

    throttle_scope = "payments"

    def post(self, request):
        try:
            dto = ConfirmPaymentDTO.model_validate(request.data)
        except ValidationError as e:
            return validation_error(e)
        try:
            order = providers.get_order_service().confirm_payment(dto.order_id, dto.payment_intent_id, request.user)
        except OrderError as e:
            return error_response(e)
        return Response(OrderReadDTO.from_order(order).to_json(), status=200)


class StripeWebhookView(APIView):
    """Gateway webhook. Authenticated by signature only."""

    authentication_classes = []
    permission_classes = [AllowAny]

    def post(self, request):
        raw = getattr(request, "raw_body", None)
        if raw is None:
            raw = request.body
        signature = request.headers.get("Stripe-Signature", "")
        try:
            result = providers.get_order_service().handle_webhook(raw, signature)
        except OrderError as e:
            # 4xx tells the gateway not to retry; 503 asks it to retry later
            return error_response(e)
        return Response(
            {
                "received": True,
                "applied": result.applied,
                "eventId": result.event_id,
                "orderId": result.order_id,
                "status": result.status.value if result.status else None,
                "reason": result.reason,
            },
            status=200,
        )
