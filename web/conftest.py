"""Shared fixtures for the web project tests.

Every test runs against in-process adapters: the in-memory inventory
ledger and the fake payment gateway are installed into ``providers`` so
the views and the management command pick them up.
"""

import pytest
from django.core.cache import cache

from apps.orders import providers
from apps.orders.adapters import FakePaymentGateway, InMemoryInventory, InMemoryOrderStore
from apps.orders.domain import Principal
from apps.orders.events import RecordingEventPublisher
from apps.orders.repository import OrderRepository
from apps.orders.services import OrderService

WEBHOOK_SECRET = "whsec_test"


@pytest.fixture(autouse=True)
def use_local_adapters(settings):
    settings.USE_HTTP_ADAPTERS = False
    settings.PAYMENT_GATEWAY = "fake"
    settings.STRIPE_WEBHOOK_SECRET = WEBHOOK_SECRET
    # throttle counters live in the local-memory cache
    cache.clear()
    yield
    providers.set_inventory(None)
    providers.set_gateway(None)


@pytest.fixture
def inventory():
    inv = InMemoryInventory()
    inv.add_book("1984", "Nineteen Eighty-Four", 1399, 40)
    inv.add_book("dune", "Dune", 1050, 3)
    providers.set_inventory(inv)
    return inv


@pytest.fixture
def gateway():
    gw = FakePaymentGateway(webhook_secret=WEBHOOK_SECRET)
    providers.set_gateway(gw)
    return gw


@pytest.fixture
def events():
    return RecordingEventPublisher()


@pytest.fixture
def customer():
    return Principal(id="cust-1", role="customer", email="ana@example.com", name="Ana Lima")


@pytest.fixture
def other_customer():
    return Principal(id="cust-2", role="customer", email="bo@example.com", name="Bo Chen")


@pytest.fixture
def admin():
    return Principal(id="admin-1", role="admin", email="admin@example.com", name="Admin")


@pytest.fixture
def mem_service(inventory, gateway, events):
    """OrderService over the in-memory store (no database)."""
    return OrderService(InMemoryOrderStore(), inventory, gateway, events=events)


@pytest.fixture
def service(db, inventory, gateway, events):
    """OrderService over the Django ORM repository."""
    return OrderService(OrderRepository(), inventory, gateway, events=events)


def identity_headers(principal: Principal) -> dict:
    return {
        "HTTP_X_USER_ID": principal.id,
        "HTTP_X_USER_ROLE": principal.role,
        "HTTP_X_USER_EMAIL": principal.email,
        "HTTP_X_USER_NAME": principal.name,
    }


@pytest.fixture
def as_customer(customer):
    return identity_headers(customer)


@pytest.fixture
def as_admin(admin):
    return identity_headers(admin)


@pytest.fixture
def as_other_customer(other_customer):
    return identity_headers(other_customer)
