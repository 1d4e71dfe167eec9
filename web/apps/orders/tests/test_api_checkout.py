"""API tests for the checkout endpoint.

These tests exercise ``POST /api/orders/checkout/`` for the main scenarios:
successful checkout, authentication, payload validation, stock errors and
an unavailable payment gateway. They rely on the in-process adapters
installed by ``conftest.py`` for deterministic behavior, and assert on the
persisted rows where persistence matters.
"""
import pytest
from uuid import UUID

from apps.orders.models import CustomerModel, OrderModel, OrderStatusChange

CHECKOUT_URL = "/api/orders/checkout/"

pytestmark = pytest.mark.django_db


def _cart(*lines):
    return {"items": [{"bookId": b, "quantity": q} for b, q in lines]}


def test_checkout_creates_pending_order(client, inventory, gateway, as_customer):
    """Returns 201 with the order summary and the intent client secret."""
    r = client.post(CHECKOUT_URL, data=_cart(("1984", 2)), content_type="application/json", **as_customer)
    assert r.status_code == 201
    body = r.json()
    UUID(body["orderId"])
    assert body["status"] == "PENDING_PAYMENT"
    assert body["totalAmount"] == "27.98"
    assert body["currency"] == "usd"
    assert body["paymentIntentClientSecret"].startswith(body["paymentIntentId"])
    assert body["paymentError"] is None
    assert r.headers.get("X-Request-ID")

    row = OrderModel.objects.get(id=body["orderId"])
    assert row.customer_id == "cust-1"
    assert row.total_cents == 2798
    assert row.order_number == body["orderNumber"]
    assert row.payment_intent_id == body["paymentIntentId"]
    assert row.lines.get().unit_price_cents == 1399
    assert OrderStatusChange.objects.filter(order=row).count() == 1
    assert CustomerModel.objects.filter(id="cust-1", email="ana@example.com").exists()
    assert inventory.available("1984") == 38


def test_checkout_requires_identity(client, inventory, gateway):
    r = client.post(CHECKOUT_URL, data=_cart(("1984", 1)), content_type="application/json")
    assert r.status_code == 401
    assert OrderModel.objects.count() == 0


def test_checkout_empty_cart(client, inventory, gateway, as_customer):
    r = client.post(CHECKOUT_URL, data={"items": []}, content_type="application/json", **as_customer)
    assert r.status_code == 400
    assert r.json()["detail"] == "EMPTY_CART"


@pytest.mark.parametrize(
    "payload",
    [
        {"items": [{"bookId": "1984", "quantity": 0}]},
        {"items": [{"bookId": "bad id!", "quantity": 1}]},
        {"items": [{"bookId": "1984"}]},
        {"cart": []},
    ],
)
def test_checkout_validation_error(client, inventory, gateway, as_customer, payload):
    """Returns 400 when the payload fails DTO validation."""
    r = client.post(CHECKOUT_URL, data=payload, content_type="application/json", **as_customer)
    assert r.status_code == 400
    assert r.json()["detail"] == "INVALID_PAYLOAD"


def test_checkout_insufficient_stock(client, inventory, gateway, as_customer):
    """Returns 422 with the book, requested and available counts."""
    r = client.post(CHECKOUT_URL, data=_cart(("1984", 100)), content_type="application/json", **as_customer)
    assert r.status_code == 422
    body = r.json()
    assert body["detail"] == "INSUFFICIENT_STOCK"
    assert body["bookId"] == "1984" and body["requested"] == 100 and body["available"] == 40
    assert "Nineteen Eighty-Four" in body["message"]
    assert OrderModel.objects.count() == 0
    assert inventory.available("1984") == 40


def test_checkout_unknown_book(client, inventory, gateway, as_customer):
    r = client.post(CHECKOUT_URL, data=_cart(("missing", 1)), content_type="application/json", **as_customer)
    assert r.status_code == 404
    assert r.json()["detail"] == "BOOK_NOT_FOUND"


def test_checkout_with_gateway_down_keeps_order(client, inventory, gateway, as_customer):
    """The order is created; the client retries payment through /payment/."""
    gateway.unavailable = True
    r = client.post(CHECKOUT_URL, data=_cart(("1984", 2)), content_type="application/json", **as_customer)
    assert r.status_code == 201
    body = r.json()
    assert body["paymentError"] == "GATEWAY_UNAVAILABLE"
    assert body["paymentIntentClientSecret"] is None

    gateway.unavailable = False
    r2 = client.post(f"/api/orders/{body['orderId']}/payment/", **as_customer)
    assert r2.status_code == 200
    assert r2.json()["clientSecret"]
    assert OrderModel.objects.get(id=body["orderId"]).payment_intent_id == r2.json()["paymentIntentId"]


def test_checkout_with_inventory_down(client, inventory, gateway, as_customer):
    inventory.unavailable = True
    r = client.post(CHECKOUT_URL, data=_cart(("1984", 1)), content_type="application/json", **as_customer)
    assert r.status_code == 503
    assert r.json()["detail"] == "INVENTORY_UNAVAILABLE"


def test_oversized_body_is_rejected(client, inventory, gateway, as_customer, settings):
    settings.API_MAX_BYTES = 64
    payload = _cart(*[(f"book-{i}", 1) for i in range(20)])
    r = client.post(CHECKOUT_URL, data=payload, content_type="application/json", **as_customer)
    assert r.status_code == 413
    assert r.json()["detail"] == "PAYLOAD_TOO_LARGE"
