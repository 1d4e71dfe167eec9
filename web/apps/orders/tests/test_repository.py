from datetime import timedelta

import pytest
from django.db import IntegrityError
from django.utils import timezone

from apps.orders import repository
from apps.orders.domain import Order, OrderLine, OrderNotFound, OrderStatus, Principal, ReservationState
from apps.orders.models import CustomerModel, OrderModel
from apps.orders.repository import OrderRepository

pytestmark = pytest.mark.django_db


def _order(customer="cust-1", token="tok-1", qty=2):
    return Order(
        id=None,
        customer_id=customer,
        lines=[OrderLine("1984", "Nineteen Eighty-Four", qty, 1399, reservation_token=token)],
        total_cents=1399 * qty,
    )


@pytest.fixture
def repo():
    return OrderRepository()


def test_add_roundtrips_lines_and_writes_history(repo):
    order = repo.add(_order())

    got = repo.get(order.id)
    assert got.status == OrderStatus.PENDING_PAYMENT
    assert got.order_number.startswith("ORD-")
    assert got.lines[0].reservation_token == "tok-1"
    assert got.lines[0].reservation_state == ReservationState.HELD
    assert got.total_cents == 2798
    assert repo.history(order.id) == [(None, "PENDING_PAYMENT", "created")]


def test_get_unknown_or_malformed_id(repo):
    with pytest.raises(OrderNotFound):
        repo.get("00000000-0000-0000-0000-000000000000")
    with pytest.raises(OrderNotFound):
        repo.get("not-a-uuid")


def test_order_number_collision_is_retried(repo, monkeypatch):
    numbers = iter(["ORD-20240101-AAAAAA", "ORD-20240101-AAAAAA", "ORD-20240101-BBBBBB"])
    monkeypatch.setattr(repository, "generate_order_number", lambda *a: next(numbers))

    first = repo.add(_order(token="tok-1"))
    second = repo.add(_order(token="tok-2"))

    assert first.order_number == "ORD-20240101-AAAAAA"
    assert second.order_number == "ORD-20240101-BBBBBB"


def test_order_number_exhaustion_raises(repo, monkeypatch):
    monkeypatch.setattr(repository, "generate_order_number", lambda *a: "ORD-20240101-AAAAAA")
    repo.add(_order(token="tok-1"))
    with pytest.raises(IntegrityError):
        repo.add(_order(token="tok-2"))
    assert OrderModel.objects.count() == 1


def test_transition_is_compare_and_set(repo):
    order = repo.add(_order())

    assert repo.transition(order.id, OrderStatus.PENDING_PAYMENT, OrderStatus.CONFIRMED, "payment_succeeded")
    assert not repo.transition(order.id, OrderStatus.PENDING_PAYMENT, OrderStatus.CANCELLED, "payment_timeout")

    got = repo.get(order.id)
    assert got.status == OrderStatus.CONFIRMED and got.cancel_reason is None
    assert repo.history(order.id)[-1] == ("PENDING_PAYMENT", "CONFIRMED", "payment_succeeded")
    assert len(repo.history(order.id)) == 2


def test_cancel_transition_stores_reason(repo):
    order = repo.add(_order())
    repo.transition(order.id, OrderStatus.PENDING_PAYMENT, OrderStatus.CANCELLED, "customer_request")
    assert repo.get(order.id).cancel_reason == "customer_request"


def test_attach_intent_is_compare_and_set(repo):
    order = repo.add(_order())

    assert repo.attach_intent(order.id, "pi_1", expected=None)
    assert repo.attach_intent(order.id, "pi_1", expected=None)
    assert not repo.attach_intent(order.id, "pi_2", expected=None)
    assert repo.attach_intent(order.id, "pi_2", expected="pi_1")
    assert repo.get_by_intent("pi_2").id == order.id
    assert repo.get_by_intent("pi_1") is None


def test_stale_pending_and_unsettled(repo):
    old = repo.add(_order(token="tok-old"))
    fresh = repo.add(_order(token="tok-new"))
    long_ago = timezone.now() - timedelta(hours=2)
    OrderModel.objects.filter(id=old.id).update(created_at=long_ago, updated_at=long_ago)

    stale = repo.stale_pending(timezone.now() - timedelta(minutes=30))
    assert [o.id for o in stale] == [old.id]

    # confirmed with a held line: needs a commit
    repo.transition(old.id, OrderStatus.PENDING_PAYMENT, OrderStatus.CONFIRMED)
    OrderModel.objects.filter(id=old.id).update(updated_at=long_ago)
    assert [o.id for o in repo.unsettled(timezone.now() - timedelta(minutes=1))] == [old.id]

    repo.mark_reservation("tok-old", ReservationState.COMMITTED)
    assert repo.unsettled(timezone.now() - timedelta(minutes=1)) == []
    assert fresh.id not in [o.id for o in repo.unsettled(timezone.now())]


def test_processed_events(repo):
    assert not repo.is_event_processed("evt_1")
    repo.record_event("evt_1", "payment_intent.succeeded")
    repo.record_event("evt_1", "payment_intent.succeeded")
    assert repo.is_event_processed("evt_1")


def test_list_filters_and_pages(repo):
    for i in range(3):
        repo.add(_order(customer="cust-1", token=f"a{i}"))
    other = repo.add(_order(customer="cust-2", token="b0"))
    repo.transition(other.id, OrderStatus.PENDING_PAYMENT, OrderStatus.CANCELLED)

    mine, count = repo.list(customer_id="cust-1", page=1, page_size=2)
    assert count == 3 and len(mine) == 2
    assert mine[0].created_at >= mine[1].created_at

    cancelled, count = repo.list(status=OrderStatus.CANCELLED)
    assert count == 1 and cancelled[0].id == other.id


def test_touch_customer_keeps_first_sighting(repo):
    repo.touch_customer(Principal(id="cust-1", email="ana@example.com", name="Ana Lima"))
    repo.touch_customer(Principal(id="cust-1", email="changed@example.com", name="Ana"))
    row = CustomerModel.objects.get(id="cust-1")
    assert row.email == "ana@example.com"
    assert CustomerModel.objects.count() == 1
