"""In-process adapters for the orders domain ports.

These adapters implement ``InventoryPort``, ``PaymentGatewayPort`` and
``OrderStorePort`` without any network or database calls. They are
intended for unit tests and local development where deterministic behavior
is useful and external services are not required. Each one guards its
state with a lock so lifecycle races can be exercised with real threads.
"""

import copy
import hashlib
import hmac
import json
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

from .domain import (
    PAID_STATUSES,
    BookNotFound,
    BookQuote,
    GatewayOutcome,
    GatewayUnavailable,
    InsufficientStock,
    InvalidSignature,
    InventoryPort,
    InventoryUnavailable,
    Order,
    OrderNotFound,
    OrderStatus,
    OrderStorePort,
    PaymentGatewayPort,
    PaymentIntent,
    PaymentRejected,
    Principal,
    ReservationConflict,
    ReservationState,
    StockLevel,
    VerifiedEvent,
    generate_order_number,
)
from .stripe_gateway import PROCESSING_STATUSES, intent_outcome, parse_event, translate_event


def unsettled_lines(order: Order) -> bool:
    """True when some line reservation disagrees with the order status."""
    states = {ln.reservation_state for ln in order.lines}
    if order.status in PAID_STATUSES:
        return ReservationState.HELD in states
    if order.status == OrderStatus.CANCELLED:
        return bool(states & {ReservationState.HELD, ReservationState.COMMITTED})
    return False


class InMemoryInventory(InventoryPort):
    """Inventory ledger kept in process memory.

    Mirrors the ledger service: reserve checks and increments ``reserved``
    atomically, and every settle is a compare-and-set on the reservation
    state. ``calls`` records (operation, token) pairs for assertions.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.books: Dict[str, dict] = {}
        self.reservations: Dict[str, dict] = {}
        self.calls: List[tuple] = []
        self.unavailable = False

    def add_book(self, book_id: str, title: str, price_cents: int, on_hand: int) -> None:
        with self._lock:
            row = self.books.setdefault(book_id, {"reserved": 0})
            row.update(title=title, price_cents=price_cents, on_hand=on_hand)

    def set_price(self, book_id: str, price_cents: int) -> None:
        with self._lock:
            self.books[book_id]["price_cents"] = price_cents

    def available(self, book_id: str) -> int:
        row = self.books[book_id]
        return row["on_hand"] - row["reserved"]

    def quote(self, book_id: str) -> BookQuote:
        self._check()
        row = self.books.get(book_id)
        if row is None:
            raise BookNotFound(book_id)
        return BookQuote(book_id=book_id, title=row["title"], unit_price_cents=row["price_cents"])

    def reserve(self, book_id: str, quantity: int, token: str | None = None) -> str:
        self._check()
        with self._lock:
            if token in self.reservations:
                return token
            row = self.books.get(book_id)
            if row is None:
                raise BookNotFound(book_id)
            available = row["on_hand"] - row["reserved"]
            if available < quantity:
                raise InsufficientStock(book_id, requested=quantity, available=available, title=row["title"])
            row["reserved"] += quantity
            token = token or uuid.uuid4().hex
            self.reservations[token] = {"book_id": book_id, "quantity": quantity, "state": ReservationState.HELD}
            self.calls.append(("reserve", token))
            return token

    def commit(self, token: str) -> bool:
        return self._settle(token, ReservationState.HELD, ReservationState.COMMITTED, -1, -1)

    def release(self, token: str) -> bool:
        return self._settle(token, ReservationState.HELD, ReservationState.RELEASED, 0, -1)

    def restock(self, token: str) -> bool:
        return self._settle(token, ReservationState.COMMITTED, ReservationState.RESTOCKED, 1, 0)

    def low_stock(self, threshold: int, limit: int) -> List[StockLevel]:
        self._check()
        with self._lock:
            rows = [
                StockLevel(book_id=b, title=r["title"], available=r["on_hand"] - r["reserved"])
                for b, r in self.books.items()
                if r["on_hand"] - r["reserved"] <= threshold
            ]
        rows.sort(key=lambda s: (s.available, s.book_id))
        return rows[:limit]

    def count_books(self) -> int:
        self._check()
        return len(self.books)

    def _settle(self, token, source, target, on_hand_sign, reserved_sign) -> bool:
        self._check()
        with self._lock:
            rec = self.reservations.get(token)
            if rec is None:
                raise ReservationConflict(f"Unknown reservation {token}")
            if rec["state"] == target:
                return False
            if rec["state"] != source:
                raise ReservationConflict(f"Reservation {token} is {rec['state'].value}")
            row = self.books[rec["book_id"]]
            row["on_hand"] += on_hand_sign * rec["quantity"]
            row["reserved"] += reserved_sign * rec["quantity"]
            rec["state"] = target
            self.calls.append((target.value.lower(), token))
            return True

    def _check(self):
        if self.unavailable:
            raise InventoryUnavailable("Inventory service unavailable")


class FakePaymentGateway(PaymentGatewayPort):
    """Configurable fake gateway with Stripe-shaped intents and webhooks.

    Intents live in memory and move through Stripe's status names. Webhook
    payloads are signed with HMAC-SHA256 in the ``t=<ts>,v1=<hex>`` header
    format, so signature handling is exercised end to end without network
    access. ``calls`` records every port call.
    """

    def __init__(self, webhook_secret: str = "whsec_test", tolerance: int = 300):
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance
        self._lock = threading.Lock()
        self.intents: Dict[str, dict] = {}
        self.refunds: Dict[str, str] = {}
        self._by_key: Dict[str, str] = {}
        self.calls: List[tuple] = []
        self.unavailable = False
        # operation name -> Stripe error code it is rejected with
        self.rejections: Dict[str, str] = {}

    # ---- port ----
    def create_intent(self, order_id: str, amount_cents: int, currency: str, idempotency_key: str) -> PaymentIntent:
        self._check("create_intent")
        with self._lock:
            self.calls.append(("create_intent", order_id, idempotency_key))
            intent_id = self._by_key.get(idempotency_key)
            if intent_id is None:
                intent_id = f"pi_{uuid.uuid4().hex[:24]}"
                self._by_key[idempotency_key] = intent_id
                self.intents[intent_id] = {
                    "order_id": order_id,
                    "amount": amount_cents,
                    "currency": currency,
                    "status": "requires_payment_method",
                    "decline_reason": None,
                    "client_secret": f"{intent_id}_secret_{uuid.uuid4().hex[:12]}",
                }
            return self._intent(intent_id)

    def retrieve_intent(self, intent_id: str) -> PaymentIntent:
        self._check("retrieve_intent")
        with self._lock:
            self.calls.append(("retrieve_intent", intent_id))
            return self._intent(intent_id)

    def cancel_intent(self, intent_id: str) -> PaymentIntent:
        self._check("cancel_intent")
        with self._lock:
            self.calls.append(("cancel_intent", intent_id))
            rec = self.intents[intent_id]
            if rec["status"] not in ("succeeded", "processing"):
                rec["status"] = "canceled"
            return self._intent(intent_id)

    def refund(self, intent_id: str, idempotency_key: str) -> str:
        self._check("refund")
        with self._lock:
            self.calls.append(("refund", intent_id, idempotency_key))
            return self.refunds.setdefault(idempotency_key, f"re_{uuid.uuid4().hex[:24]}")

    def verify_webhook_signature(self, raw_payload: bytes, signature_header: str) -> VerifiedEvent:
        parts = dict(p.split("=", 1) for p in (signature_header or "").split(",") if "=" in p)
        try:
            timestamp = int(parts["t"])
        except (KeyError, ValueError):
            raise InvalidSignature("Malformed signature header")
        expected = self._signature(raw_payload, timestamp)
        if not hmac.compare_digest(expected, parts.get("v1", "")):
            raise InvalidSignature("Signature verification failed")
        if abs(time.time() - timestamp) > self.tolerance:
            raise InvalidSignature("Signature timestamp outside tolerance")
        try:
            return parse_event(json.loads(raw_payload))
        except ValueError:
            raise InvalidSignature("Malformed webhook payload")

    def translate(self, event: VerifiedEvent) -> Optional[GatewayOutcome]:
        return translate_event(event)

    # ---- test controls ----
    def set_status(self, intent_id: str, status: str, decline_reason: str | None = None) -> None:
        with self._lock:
            self.intents[intent_id]["status"] = status
            self.intents[intent_id]["decline_reason"] = decline_reason

    def succeed(self, intent_id: str) -> None:
        self.set_status(intent_id, "succeeded")

    def decline(self, intent_id: str, reason: str = "Your card was declined.") -> None:
        self.set_status(intent_id, "requires_payment_method", decline_reason=reason)

    def event(self, event_type: str, intent_id: str, event_id: str | None = None, decline_reason: str | None = None) -> bytes:
        """Build a Stripe-shaped event body for ``intent_id``."""
        obj = {"id": intent_id, "object": "payment_intent"}
        if decline_reason:
            obj["last_payment_error"] = {"message": decline_reason}
        body = {"id": event_id or f"evt_{uuid.uuid4().hex[:24]}", "type": event_type, "data": {"object": obj}}
        return json.dumps(body).encode("utf-8")

    def sign(self, raw_payload: bytes, timestamp: int | None = None) -> str:
        """Return a ``Stripe-Signature`` style header for ``raw_payload``."""
        timestamp = int(time.time()) if timestamp is None else timestamp
        return f"t={timestamp},v1={self._signature(raw_payload, timestamp)}"

    def _signature(self, raw_payload: bytes, timestamp: int) -> str:
        signed = f"{timestamp}.".encode("utf-8") + raw_payload
        return hmac.new(self.webhook_secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()

    def _intent(self, intent_id: str) -> PaymentIntent:
        rec = self.intents[intent_id]
        return PaymentIntent(
            intent_id=intent_id,
            client_secret=rec["client_secret"],
            status=rec["status"],
            outcome=intent_outcome(rec["status"]),
            decline_reason=rec["decline_reason"],
            processing=rec["status"] in PROCESSING_STATUSES,
        )

    def reject(self, op: str, code: str = "invalid_request_error") -> None:
        self.rejections[op] = code

    def _check(self, op: str):
        if self.unavailable:
            self.calls.append((op + "_unavailable",))
            raise GatewayUnavailable("Payment gateway unavailable")
        if op in self.rejections:
            self.calls.append((op + "_rejected",))
            raise PaymentRejected(self.rejections[op], gateway_code=self.rejections[op])


class InMemoryOrderStore(OrderStorePort):
    """Order store kept in process memory.

    Orders are copied on the way in and out, so callers never share mutable
    state with the store; ``transition`` and ``attach_intent`` are
    compare-and-set under a lock.
    """

    def __init__(self, clock=None):
        self._lock = threading.Lock()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.orders: Dict[str, Order] = {}
        self.customers: Dict[str, dict] = {}
        self.events: Dict[str, str] = {}
        self.history: List[tuple] = []

    def add(self, order: Order) -> Order:
        with self._lock:
            stored = copy.deepcopy(order)
            now = self._clock()
            stored.id = str(uuid.uuid4())
            stored.order_number = generate_order_number(now)
            stored.created_at = stored.updated_at = now
            self.orders[stored.id] = stored
            self.history.append((stored.id, None, stored.status))
            return copy.deepcopy(stored)

    def get(self, order_id: str) -> Order:
        with self._lock:
            order = self.orders.get(str(order_id))
            if order is None:
                raise OrderNotFound("Order not found")
            return copy.deepcopy(order)

    def get_by_intent(self, intent_id: str) -> Optional[Order]:
        with self._lock:
            for order in self.orders.values():
                if order.payment_intent_id == intent_id:
                    return copy.deepcopy(order)
            return None

    def attach_intent(self, order_id: str, intent_id: str, expected: str | None) -> bool:
        with self._lock:
            order = self.orders[str(order_id)]
            if order.payment_intent_id == intent_id:
                return True
            if order.payment_intent_id != expected:
                return False
            order.payment_intent_id = intent_id
            order.updated_at = self._clock()
            return True

    def transition(self, order_id: str, expected: OrderStatus, target: OrderStatus, reason: str = "") -> bool:
        with self._lock:
            order = self.orders[str(order_id)]
            if order.status != expected:
                return False
            order.status = target
            order.updated_at = self._clock()
            if target == OrderStatus.CANCELLED:
                order.cancel_reason = reason
            self.history.append((order.id, expected, target))
            return True

    def mark_reservation(self, token: str, state: ReservationState) -> None:
        with self._lock:
            for order in self.orders.values():
                for line in order.lines:
                    if line.reservation_token == token:
                        line.reservation_state = state

    def stale_pending(self, cutoff: datetime) -> List[Order]:
        with self._lock:
            return [
                copy.deepcopy(o)
                for o in self.orders.values()
                if o.status == OrderStatus.PENDING_PAYMENT and o.created_at < cutoff
            ]

    def unsettled(self, older_than: datetime) -> List[Order]:
        with self._lock:
            return [copy.deepcopy(o) for o in self.orders.values() if o.updated_at < older_than and unsettled_lines(o)]

    def is_event_processed(self, event_id: str) -> bool:
        with self._lock:
            return event_id in self.events

    def record_event(self, event_id: str, event_type: str) -> None:
        with self._lock:
            self.events.setdefault(event_id, event_type)

    def list(self, customer_id=None, status=None, page=1, page_size=20):
        with self._lock:
            rows = [
                o
                for o in self.orders.values()
                if (customer_id is None or o.customer_id == customer_id) and (status is None or o.status == status)
            ]
        rows.sort(key=lambda o: o.created_at, reverse=True)
        start = (max(page, 1) - 1) * page_size
        return [copy.deepcopy(o) for o in rows[start:start + page_size]], len(rows)

    def touch_customer(self, principal: Principal) -> None:
        with self._lock:
            self.customers.setdefault(
                principal.id, {"email": principal.email, "name": principal.name, "created_at": self._clock()}
            )
