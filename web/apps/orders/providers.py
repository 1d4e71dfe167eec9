"""Service provider helpers for wiring OrderService with ports.

This module exposes small factory functions that return a configured
``OrderService`` and the inventory port used by the dashboard. Orders are
always persisted through ``OrderRepository``. The inventory port is the
HTTP ledger client when ``settings.USE_HTTP_ADAPTERS`` is truthy and an
in-process ledger otherwise; the payment gateway is Stripe when
``settings.PAYMENT_GATEWAY == "stripe"`` and the fake gateway otherwise.

In-process adapters are process-wide singletons so their state survives
across requests in local development. Tests replace them through
``set_inventory``/``set_gateway`` (see ``conftest.py``).
"""

import threading
from datetime import timedelta

from django.conf import settings

from .adapters import FakePaymentGateway, InMemoryInventory
from .domain import InventoryPort, PaymentGatewayPort
from .events import LoggingEventPublisher
from .http_adapters import HttpInventoryClient
from .repository import OrderRepository
from .services import OrderService
from .stripe_gateway import StripePaymentGateway

_lock = threading.Lock()
_local_inventory: InventoryPort | None = None
_local_gateway: PaymentGatewayPort | None = None


def set_inventory(inventory: InventoryPort | None) -> None:
    global _local_inventory
    _local_inventory = inventory


def set_gateway(gateway: PaymentGatewayPort | None) -> None:
    global _local_gateway
    _local_gateway = gateway


def get_inventory() -> InventoryPort:
    """Return the inventory port selected by settings."""
    global _local_inventory
    if getattr(settings, "USE_HTTP_ADAPTERS", True):
        return HttpInventoryClient()
    with _lock:
        if _local_inventory is None:
            _local_inventory = InMemoryInventory()
        return _local_inventory


def get_gateway() -> PaymentGatewayPort:
    """Return the payment gateway selected by ``settings.PAYMENT_GATEWAY``."""
    global _local_gateway
    if getattr(settings, "PAYMENT_GATEWAY", "fake") == "stripe":
        return StripePaymentGateway(
            api_key=settings.STRIPE_SECRET_KEY,
            webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
            tolerance=getattr(settings, "STRIPE_WEBHOOK_TOLERANCE", 300),
        )
    with _lock:
        if _local_gateway is None:
            _local_gateway = FakePaymentGateway(webhook_secret=getattr(settings, "STRIPE_WEBHOOK_SECRET", "") or "whsec_local")
        return _local_gateway


def get_order_service() -> OrderService:
    """Return a configured OrderService instance.

    Returns:
        OrderService: A service instance with appropriate ports.
    """
    return OrderService(
        store=OrderRepository(),
        inventory=get_inventory(),
        gateway=get_gateway(),
        events=LoggingEventPublisher(),
        currency=getattr(settings, "ORDERS_CURRENCY", "usd"),
        pending_timeout=timedelta(minutes=getattr(settings, "ORDERS_PENDING_PAYMENT_TIMEOUT_MINUTES", 30)),
    )
