"""Domain models, ports and errors for the order lifecycle.

This module contains the dataclasses used as DTOs for orders and payment
intents, the order status state machine, the error taxonomy raised by the
lifecycle service, and protocol definitions (ports) for the external
dependencies: inventory ledger, payment gateway, order store and event
publisher.
"""

import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Protocol


# ---- Enums ----
class OrderStatus(str, Enum):
    """Enumeration of the possible order statuses.

    ``DELIVERED`` and ``CANCELLED`` are terminal."""

    PENDING_PAYMENT = "PENDING_PAYMENT"
    CONFIRMED = "CONFIRMED"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class ReservationState(str, Enum):
    """Settlement state of the inventory hold behind one order line."""

    HELD = "HELD"
    COMMITTED = "COMMITTED"
    RELEASED = "RELEASED"
    RESTOCKED = "RESTOCKED"


class PaymentOutcome(str, Enum):
    """Internal outcome of a payment intent, independent of gateway vocabulary."""

    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"


TRANSITIONS = {
    OrderStatus.PENDING_PAYMENT: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})
PAID_STATUSES = frozenset({OrderStatus.CONFIRMED, OrderStatus.SHIPPED, OrderStatus.DELIVERED})


def can_transition(source: OrderStatus, target: OrderStatus) -> bool:
    """Return True when ``source -> target`` is an edge of the state machine."""
    return target in TRANSITIONS[OrderStatus(source)]


def cents_to_amount(cents: int) -> Decimal:
    """Convert integer minor units to a two-place Decimal amount."""
    return (Decimal(cents) / 100).quantize(Decimal("0.01"))


ORDER_NUMBER_ALPHABET = string.ascii_uppercase + string.digits


def generate_order_number(now: datetime | None = None) -> str:
    """Return a human-shareable order number, e.g. ``ORD-20240115-A1B2C3``.

    Uniqueness is enforced by the store, which retries on collision.
    """
    now = now or datetime.now(timezone.utc)
    suffix = "".join(secrets.choice(ORDER_NUMBER_ALPHABET) for _ in range(6))
    return f"ORD-{now:%Y%m%d}-{suffix}"


# ---- Errors ----
class OrderError(Exception):
    """Base class for lifecycle errors.

    ``str(error)`` is a stable upper-snake code (mapped to HTTP statuses by
    the views); ``detail`` is a message safe to show to the caller.
    """

    code = "ORDER_ERROR"

    def __init__(self, detail: str | None = None):
        super().__init__(self.code)
        self.detail = detail or self.code


class InvalidCart(OrderError):
    code = "INVALID_CART"


class EmptyCart(InvalidCart):
    code = "EMPTY_CART"


class BookNotFound(OrderError):
    code = "BOOK_NOT_FOUND"

    def __init__(self, book_id: str):
        super().__init__(f"Book {book_id} not found")
        self.book_id = book_id


class InsufficientStock(OrderError):
    """A line item cannot be covered by available stock."""

    code = "INSUFFICIENT_STOCK"

    def __init__(self, book_id: str, requested: int, available: int, title: str = ""):
        super().__init__(
            f'Insufficient inventory for book "{title or book_id}". '
            f"Available: {available}, Requested: {requested}"
        )
        self.book_id = book_id
        self.title = title
        self.requested = requested
        self.available = available


class OrderNotFound(OrderError):
    code = "NOT_FOUND"


class GatewayUnavailable(OrderError):
    code = "GATEWAY_UNAVAILABLE"


class PaymentRejected(OrderError):
    """The gateway refused the request itself; retrying it will not help."""

    code = "PAYMENT_REJECTED"

    def __init__(self, detail: str | None = None, gateway_code: str | None = None):
        super().__init__(detail)
        self.gateway_code = gateway_code


class InventoryUnavailable(OrderError):
    code = "INVENTORY_UNAVAILABLE"


class InvalidSignature(OrderError):
    code = "INVALID_SIGNATURE"


class IntentMismatch(OrderError):
    code = "INTENT_MISMATCH"


class InvalidTransition(OrderError):
    code = "INVALID_TRANSITION"

    def __init__(self, source: OrderStatus, target: OrderStatus):
        super().__init__(f"Order cannot move from {OrderStatus(source).value} to {OrderStatus(target).value}")
        self.source = OrderStatus(source)
        self.target = OrderStatus(target)


class PaymentDeclined(OrderError):
    """The gateway declined the payment; ``detail`` is its decline reason."""

    code = "PAYMENT_DECLINED"


class ReservationConflict(OrderError):
    code = "RESERVATION_CONFLICT"


# ---- Entities / DTOs ----
@dataclass(frozen=True)
class CartItem:
    """A requested book and quantity in a checkout cart."""

    book_id: str
    quantity: int


@dataclass(frozen=True)
class BookQuote:
    """Catalog data captured at checkout time."""

    book_id: str
    title: str
    unit_price_cents: int


@dataclass(frozen=True)
class StockLevel:
    book_id: str
    title: str
    available: int


@dataclass
class OrderLine:
    """A single line of a placed order.

    Attributes:
        book_id: Catalog identifier of the book.
        title: Title captured at checkout.
        quantity: Units ordered.
        unit_price_cents: Price captured at checkout, never re-read from
            the catalog afterwards.
        reservation_token: Inventory hold backing this line.
        reservation_state: Settlement state of that hold.
    """

    book_id: str
    title: str
    quantity: int
    unit_price_cents: int
    reservation_token: str | None = None
    reservation_state: ReservationState = ReservationState.HELD

    @property
    def subtotal_cents(self) -> int:
        return self.unit_price_cents * self.quantity


@dataclass
class Order:
    """Container for order data.

    Attributes:
        id: Internal identifier, or None if not yet saved.
        order_number: Human-shareable number (``ORD-YYYYMMDD-XXXXXX``).
        customer_id: Owning customer from the identity provider.
        lines: Order lines with captured prices.
        total_cents: Sum of line subtotals, fixed at creation.
        currency: ISO currency code (lowercase, gateway style).
        status: Current OrderStatus.
        payment_intent_id: Gateway intent attached to the order, if any.
        cancel_reason: Why the order was cancelled, if it was.
    """

    id: str | None
    customer_id: str
    lines: List[OrderLine]
    total_cents: int = 0
    currency: str = "usd"
    status: OrderStatus = OrderStatus.PENDING_PAYMENT
    order_number: str | None = None
    payment_intent_id: str | None = None
    cancel_reason: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def total_amount(self) -> Decimal:
        return cents_to_amount(self.total_cents)

    def held_tokens(self) -> List[str]:
        return [ln.reservation_token for ln in self.lines if ln.reservation_state == ReservationState.HELD]


@dataclass(frozen=True)
class Principal:
    """Authenticated caller supplied by the identity provider."""

    id: str
    role: str = "customer"
    email: str = ""
    name: str = ""

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    # DRF's IsAuthenticated and throttling read these
    @property
    def is_authenticated(self) -> bool:
        return True

    @property
    def pk(self) -> str:
        return self.id


@dataclass(frozen=True)
class PaymentIntent:
    """Gateway payment intent as seen by the domain.

    ``outcome`` is None while the intent is still pending on the customer
    (or the processor); ``decline_reason`` carries the last decline message
    and ``processing`` is True while the processor is working on a charge.
    """

    intent_id: str
    client_secret: str | None
    status: str
    outcome: Optional[PaymentOutcome] = None
    decline_reason: str | None = None
    processing: bool = False


@dataclass(frozen=True)
class VerifiedEvent:
    """A webhook event whose signature has been checked."""

    event_id: str
    event_type: str
    intent_id: str | None
    decline_reason: str | None = None


@dataclass(frozen=True)
class GatewayOutcome:
    intent_id: str
    outcome: PaymentOutcome
    decline_reason: str | None = None


@dataclass(frozen=True)
class CheckoutResult:
    order: Order
    intent: Optional[PaymentIntent] = None
    payment_error: str | None = None


@dataclass(frozen=True)
class WebhookResult:
    """What the webhook handler did; every result is acknowledged to the gateway."""

    event_id: str
    event_type: str
    applied: bool
    order_id: str | None = None
    status: OrderStatus | None = None
    reason: str | None = None


@dataclass
class ReconcileReport:
    expired: List[str] = field(default_factory=list)
    confirmed: List[str] = field(default_factory=list)
    settled: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


# ---- Ports (DIP) ----
class InventoryPort(Protocol):
    """Port describing the inventory ledger operations used by the domain."""

    def quote(self, book_id: str) -> BookQuote:
        """Return current title and price. Raises BookNotFound."""
        raise NotImplementedError()

    def reserve(self, book_id: str, quantity: int, token: str | None = None) -> str:
        """Hold stock and return a reservation token.

        A caller-supplied ``token`` names the hold; reserving again with a
        token the ledger already holds returns it without reserving twice.

        Raises:
            InsufficientStock: If available stock is below ``quantity``.
            BookNotFound: If the book is unknown.
        """
        raise NotImplementedError()

    def commit(self, token: str) -> bool:
        """Permanently decrement stock for a hold. Idempotent."""
        raise NotImplementedError()

    def release(self, token: str) -> bool:
        """Return a hold to available stock. Idempotent."""
        raise NotImplementedError()

    def restock(self, token: str) -> bool:
        """Put committed units back on hand. Idempotent."""
        raise NotImplementedError()

    def low_stock(self, threshold: int, limit: int) -> List[StockLevel]:
        raise NotImplementedError()

    def count_books(self) -> int:
        raise NotImplementedError()


class PaymentGatewayPort(Protocol):
    """Port describing the single external card-payment gateway."""

    def create_intent(self, order_id: str, amount_cents: int, currency: str, idempotency_key: str) -> PaymentIntent:
        raise NotImplementedError()

    def retrieve_intent(self, intent_id: str) -> PaymentIntent:
        raise NotImplementedError()

    def cancel_intent(self, intent_id: str) -> PaymentIntent:
        raise NotImplementedError()

    def refund(self, intent_id: str, idempotency_key: str) -> str:
        raise NotImplementedError()

    def verify_webhook_signature(self, raw_payload: bytes, signature_header: str) -> VerifiedEvent:
        raise NotImplementedError()

    def translate(self, event: VerifiedEvent) -> Optional[GatewayOutcome]:
        raise NotImplementedError()


class OrderStorePort(Protocol):
    """Port describing durable order storage.

    ``transition`` and ``attach_intent`` are compare-and-set operations:
    they return False (and change nothing) when the stored value no longer
    matches the expected one.
    """

    def add(self, order: Order) -> Order:
        raise NotImplementedError()

    def get(self, order_id: str) -> Order:
        raise NotImplementedError()

    def get_by_intent(self, intent_id: str) -> Optional[Order]:
        raise NotImplementedError()

    def attach_intent(self, order_id: str, intent_id: str, expected: str | None) -> bool:
        raise NotImplementedError()

    def transition(self, order_id: str, expected: OrderStatus, target: OrderStatus, reason: str = "") -> bool:
        raise NotImplementedError()

    def mark_reservation(self, token: str, state: ReservationState) -> None:
        raise NotImplementedError()

    def stale_pending(self, cutoff: datetime) -> List[Order]:
        raise NotImplementedError()

    def unsettled(self, older_than: datetime) -> List[Order]:
        raise NotImplementedError()

    def is_event_processed(self, event_id: str) -> bool:
        raise NotImplementedError()

    def record_event(self, event_id: str, event_type: str) -> None:
        raise NotImplementedError()

    def list(
        self,
        customer_id: str | None = None,
        status: OrderStatus | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[List[Order], int]:
        """Return one page of orders (newest first) and the total count."""
        raise NotImplementedError()

    def touch_customer(self, principal: Principal) -> None:
        """Record the customer the first time they are seen."""
        raise NotImplementedError()


class EventPublisher(Protocol):
    def publish(self, name: str, **fields) -> None:
        raise NotImplementedError()
