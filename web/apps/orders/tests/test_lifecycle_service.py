"""Unit tests for the OrderService lifecycle.

These tests drive the service through the in-memory store, the in-memory
inventory ledger and the fake payment gateway, so every outcome is
deterministic and inventory side effects can be counted exactly.
"""

from decimal import Decimal

import pytest

from apps.orders.domain import (
    BookNotFound,
    CartItem,
    EmptyCart,
    InsufficientStock,
    IntentMismatch,
    InvalidCart,
    InvalidTransition,
    InventoryUnavailable,
    OrderNotFound,
    OrderStatus,
    PaymentDeclined,
    ReservationState,
)


def _settles(inventory, op):
    return [c for c in inventory.calls if c[0] == op]


def _checkout(service, principal, qty=2, book="1984"):
    return service.checkout(principal, [CartItem(book, qty)])


def _deliver(service, gateway, event_type, intent_id, event_id=None, reason=None):
    payload = gateway.event(event_type, intent_id, event_id=event_id, decline_reason=reason)
    return service.handle_webhook(payload, gateway.sign(payload))


# ---- checkout ----

def test_scenario_a_checkout_reserves_and_captures_total(mem_service, inventory, customer):
    result = _checkout(mem_service, customer)

    assert result.order.status == OrderStatus.PENDING_PAYMENT
    assert result.order.total_amount == Decimal("27.98")
    assert result.order.order_number.startswith("ORD-")
    assert result.intent is not None and result.intent.client_secret
    assert result.order.payment_intent_id == result.intent.intent_id
    assert inventory.available("1984") == 38
    assert inventory.books["1984"]["on_hand"] == 40


def test_scenario_c_insufficient_stock_leaves_stock_untouched(mem_service, inventory, customer):
    with pytest.raises(InsufficientStock) as e:
        _checkout(mem_service, customer, qty=100)

    assert e.value.requested == 100 and e.value.available == 40
    assert "Nineteen Eighty-Four" in e.value.detail
    assert inventory.available("1984") == 40


def test_partial_reservation_is_rolled_back(mem_service, inventory, customer):
    cart = [CartItem("1984", 2), CartItem("dune", 5)]
    with pytest.raises(InsufficientStock):
        mem_service.checkout(customer, cart)

    assert inventory.available("1984") == 40
    assert inventory.available("dune") == 3
    assert len(_settles(inventory, "released")) == 1


def test_empty_and_invalid_carts_are_rejected(mem_service, customer):
    with pytest.raises(EmptyCart):
        mem_service.checkout(customer, [])
    with pytest.raises(InvalidCart):
        mem_service.checkout(customer, [CartItem("1984", 0)])


def test_unknown_book_reserves_nothing(mem_service, inventory, customer):
    with pytest.raises(BookNotFound):
        mem_service.checkout(customer, [CartItem("1984", 1), CartItem("missing", 1)])
    assert _settles(inventory, "reserve") == []


def test_duplicate_cart_lines_are_merged(mem_service, inventory, customer):
    result = mem_service.checkout(customer, [CartItem("1984", 1), CartItem("1984", 2)])
    assert len(result.order.lines) == 1
    assert result.order.lines[0].quantity == 3
    assert inventory.available("1984") == 37


def test_total_is_immune_to_later_price_changes(mem_service, inventory, gateway, customer):
    result = _checkout(mem_service, customer)
    inventory.set_price("1984", 2500)

    gateway.succeed(result.intent.intent_id)
    order = mem_service.confirm_payment(result.order.id, result.intent.intent_id, customer)

    assert order.total_cents == 2798
    assert order.lines[0].unit_price_cents == 1399
    assert sum(ln.subtotal_cents for ln in order.lines) == order.total_cents


def test_scenario_d_gateway_down_keeps_order_pending(mem_service, inventory, gateway, customer):
    gateway.unavailable = True
    result = _checkout(mem_service, customer)

    assert result.intent is None
    assert result.payment_error == "GATEWAY_UNAVAILABLE"
    stored = mem_service.get_order(result.order.id)
    assert stored.status == OrderStatus.PENDING_PAYMENT
    assert stored.payment_intent_id is None
    assert inventory.available("1984") == 38


def test_rejected_intent_keeps_order_pending(mem_service, inventory, gateway, customer):
    gateway.reject("create_intent", "amount_too_small")
    result = _checkout(mem_service, customer)

    assert result.intent is None
    assert result.payment_error == "PAYMENT_REJECTED"
    assert mem_service.get_order(result.order.id).status == OrderStatus.PENDING_PAYMENT
    assert inventory.available("1984") == 38


def test_hold_applied_before_a_lost_reply_is_released(mem_service, inventory, customer, monkeypatch):
    real_reserve = inventory.reserve

    def reserve_then_time_out(book_id, quantity, token=None):
        real_reserve(book_id, quantity, token)
        raise InventoryUnavailable("Inventory service unavailable")

    monkeypatch.setattr(inventory, "reserve", reserve_then_time_out)
    with pytest.raises(InventoryUnavailable):
        _checkout(mem_service, customer)

    assert inventory.available("1984") == 40
    assert len(_settles(inventory, "released")) == 1


def test_request_payment_opens_intent_once(mem_service, gateway, customer):
    gateway.unavailable = True
    result = _checkout(mem_service, customer)
    gateway.unavailable = False

    order, first = mem_service.request_payment(result.order.id, customer)
    _, second = mem_service.request_payment(result.order.id, customer)

    assert first.intent_id == second.intent_id
    assert order.payment_intent_id == first.intent_id
    assert len([c for c in gateway.calls if c[0] == "create_intent"]) == 1


def test_request_payment_replaces_canceled_intent(mem_service, gateway, customer):
    result = _checkout(mem_service, customer)
    gateway.set_status(result.intent.intent_id, "canceled")

    order, intent = mem_service.request_payment(result.order.id, customer)

    assert intent.intent_id != result.intent.intent_id
    assert order.payment_intent_id == intent.intent_id


# ---- confirmation ----

def test_confirm_payment_commits_once(mem_service, inventory, gateway, events, customer):
    result = _checkout(mem_service, customer)
    gateway.succeed(result.intent.intent_id)

    first = mem_service.confirm_payment(result.order.id, result.intent.intent_id, customer)
    second = mem_service.confirm_payment(result.order.id, result.intent.intent_id, customer)

    assert first.status == second.status == OrderStatus.CONFIRMED
    assert len(_settles(inventory, "committed")) == 1
    assert inventory.books["1984"]["on_hand"] == 38
    assert first.lines[0].reservation_state == ReservationState.COMMITTED
    assert events.names() == ["order.created", "order.confirmed"]


def test_confirm_payment_pending_intent_is_a_no_op(mem_service, customer):
    result = _checkout(mem_service, customer)
    order = mem_service.confirm_payment(result.order.id, result.intent.intent_id, customer)
    assert order.status == OrderStatus.PENDING_PAYMENT


def test_confirm_payment_rejects_foreign_intent(mem_service, customer):
    result = _checkout(mem_service, customer)
    with pytest.raises(IntentMismatch):
        mem_service.confirm_payment(result.order.id, "pi_someone_else", customer)


def test_confirm_payment_surfaces_decline_reason(mem_service, gateway, customer):
    result = _checkout(mem_service, customer)
    gateway.decline(result.intent.intent_id, "Your card has insufficient funds.")

    with pytest.raises(PaymentDeclined) as e:
        mem_service.confirm_payment(result.order.id, result.intent.intent_id, customer)

    assert e.value.detail == "Your card has insufficient funds."
    assert mem_service.get_order(result.order.id).status == OrderStatus.PENDING_PAYMENT


def test_confirm_payment_on_cancelled_order_is_invalid(mem_service, customer):
    result = _checkout(mem_service, customer)
    mem_service.cancel_order(result.order.id, customer)
    with pytest.raises(InvalidTransition):
        mem_service.confirm_payment(result.order.id, result.intent.intent_id, customer)


# ---- webhooks ----

def test_scenario_b_duplicate_success_webhook_is_a_no_op(mem_service, inventory, gateway, customer):
    result = _checkout(mem_service, customer)
    gateway.succeed(result.intent.intent_id)
    payload = gateway.event("payment_intent.succeeded", result.intent.intent_id, event_id="evt_1")

    first = mem_service.handle_webhook(payload, gateway.sign(payload))
    second = mem_service.handle_webhook(payload, gateway.sign(payload))

    assert first.applied and first.status == OrderStatus.CONFIRMED
    assert not second.applied and second.reason == "duplicate_event"
    assert inventory.books["1984"]["on_hand"] == 38
    assert len(_settles(inventory, "committed")) == 1


def test_redelivered_success_with_new_event_id_is_already_settled(mem_service, inventory, gateway, customer):
    result = _checkout(mem_service, customer)
    intent_id = result.intent.intent_id
    gateway.succeed(intent_id)

    _deliver(mem_service, gateway, "payment_intent.succeeded", intent_id, event_id="evt_a")
    again = _deliver(mem_service, gateway, "payment_intent.succeeded", intent_id, event_id="evt_b")

    assert not again.applied and again.reason == "already_settled"
    assert len(_settles(inventory, "committed")) == 1


def test_failed_payment_webhook_cancels_and_releases(mem_service, inventory, gateway, events, customer):
    result = _checkout(mem_service, customer)

    out = _deliver(
        mem_service, gateway, "payment_intent.payment_failed", result.intent.intent_id, reason="Card declined"
    )

    assert out.applied and out.status == OrderStatus.CANCELLED
    assert inventory.available("1984") == 40
    order = mem_service.get_order(result.order.id)
    assert order.cancel_reason == "payment_failed"
    assert order.lines[0].reservation_state == ReservationState.RELEASED
    assert events.events[-1][0] == "order.cancelled"
    assert events.events[-1][1]["decline_reason"] == "Card declined"


def test_late_failure_after_success_is_ignored(mem_service, inventory, gateway, customer):
    result = _checkout(mem_service, customer)
    intent_id = result.intent.intent_id
    gateway.succeed(intent_id)
    _deliver(mem_service, gateway, "payment_intent.succeeded", intent_id)

    late = _deliver(mem_service, gateway, "payment_intent.payment_failed", intent_id)

    assert not late.applied
    assert late.status == OrderStatus.CONFIRMED
    assert _settles(inventory, "released") == []


def test_success_after_cancellation_is_refunded(mem_service, gateway, events, customer):
    result = _checkout(mem_service, customer)
    intent_id = result.intent.intent_id
    mem_service.cancel_order(result.order.id, customer)

    # the processor charged the card before our cancel reached it
    gateway.succeed(intent_id)
    out = _deliver(mem_service, gateway, "payment_intent.succeeded", intent_id)

    assert not out.applied and out.status == OrderStatus.CANCELLED
    assert ("refund", intent_id, f"refund-{result.order.id}") in gateway.calls
    assert "order.payment_refunded" in events.names()


def test_rejected_refund_on_late_success_is_acknowledged(mem_service, gateway, events, customer):
    result = _checkout(mem_service, customer)
    intent_id = result.intent.intent_id
    mem_service.cancel_order(result.order.id, customer)
    gateway.succeed(intent_id)
    gateway.reject("refund", "charge_already_refunded")

    out = _deliver(mem_service, gateway, "payment_intent.succeeded", intent_id, event_id="evt_late")

    assert out.status == OrderStatus.CANCELLED
    assert "order.refund_failed" in events.names()
    assert mem_service.store.is_event_processed("evt_late")
    again = _deliver(mem_service, gateway, "payment_intent.succeeded", intent_id, event_id="evt_late")
    assert again.reason == "duplicate_event"


def test_webhook_with_bad_signature_changes_nothing(mem_service, gateway, customer):
    from apps.orders.domain import InvalidSignature

    result = _checkout(mem_service, customer)
    gateway.succeed(result.intent.intent_id)
    payload = gateway.event("payment_intent.succeeded", result.intent.intent_id)
    forged = gateway.sign(payload).replace("v1=", "v1=00")

    with pytest.raises(InvalidSignature):
        mem_service.handle_webhook(payload, forged)
    assert mem_service.get_order(result.order.id).status == OrderStatus.PENDING_PAYMENT


def test_webhook_for_unknown_intent_is_acknowledged(mem_service, gateway):
    out = _deliver(mem_service, gateway, "payment_intent.succeeded", "pi_unknown", event_id="evt_unknown")
    assert not out.applied and out.reason == "unknown_intent"
    assert mem_service.store.is_event_processed("evt_unknown")


def test_webhook_ignores_unrelated_event_types(mem_service, gateway):
    out = _deliver(mem_service, gateway, "charge.refunded", "pi_whatever", event_id="evt_other")
    assert not out.applied and out.reason == "ignored_event_type"


# ---- cancellation and fulfilment ----

def test_cancel_pending_order_cancels_intent_and_releases(mem_service, inventory, gateway, customer):
    result = _checkout(mem_service, customer)

    order = mem_service.cancel_order(result.order.id, customer)

    assert order.status == OrderStatus.CANCELLED
    assert gateway.intents[result.intent.intent_id]["status"] == "canceled"
    assert inventory.available("1984") == 40
    assert mem_service.cancel_order(result.order.id, customer).status == OrderStatus.CANCELLED
    assert len(_settles(inventory, "released")) == 1


def test_cancel_confirmed_order_refunds_and_restocks(mem_service, inventory, gateway, events, customer):
    result = _checkout(mem_service, customer)
    gateway.succeed(result.intent.intent_id)
    mem_service.confirm_payment(result.order.id, result.intent.intent_id, customer)

    order = mem_service.cancel_order(result.order.id, customer)

    assert order.status == OrderStatus.CANCELLED
    assert order.lines[0].reservation_state == ReservationState.RESTOCKED
    assert inventory.books["1984"]["on_hand"] == 40
    assert inventory.available("1984") == 40
    assert [c[0] for c in gateway.calls].count("refund") == 1
    assert "order.payment_refunded" in events.names()


def test_cancel_pending_whose_payment_already_succeeded(mem_service, inventory, gateway, customer):
    result = _checkout(mem_service, customer)
    gateway.succeed(result.intent.intent_id)

    order = mem_service.cancel_order(result.order.id, customer)

    assert order.status == OrderStatus.CANCELLED
    assert [c[0] for c in gateway.calls].count("refund") == 1
    assert inventory.books["1984"]["on_hand"] == 40
    assert len(_settles(inventory, "committed")) == 1
    assert len(_settles(inventory, "restocked")) == 1


def test_cancel_while_processing_is_refused(mem_service, gateway, customer):
    result = _checkout(mem_service, customer)
    gateway.set_status(result.intent.intent_id, "processing")
    with pytest.raises(InvalidTransition):
        mem_service.cancel_order(result.order.id, customer)


def test_refund_failure_is_reported_not_raised(mem_service, inventory, gateway, events, customer):
    result = _checkout(mem_service, customer)
    gateway.succeed(result.intent.intent_id)
    mem_service.confirm_payment(result.order.id, result.intent.intent_id, customer)
    gateway.unavailable = True

    order = mem_service.cancel_order(result.order.id, customer)

    assert order.status == OrderStatus.CANCELLED
    assert "order.refund_failed" in events.names()
    assert inventory.books["1984"]["on_hand"] == 40


def test_ship_and_deliver(mem_service, gateway, customer):
    result = _checkout(mem_service, customer)
    gateway.succeed(result.intent.intent_id)
    mem_service.confirm_payment(result.order.id, result.intent.intent_id, customer)

    assert mem_service.mark_shipped(result.order.id).status == OrderStatus.SHIPPED
    with pytest.raises(InvalidTransition):
        mem_service.mark_shipped(result.order.id)
    with pytest.raises(InvalidTransition):
        mem_service.cancel_order(result.order.id, customer)
    assert mem_service.mark_delivered(result.order.id).status == OrderStatus.DELIVERED


def test_terminal_orders_reject_every_transition(mem_service, gateway, customer):
    result = _checkout(mem_service, customer)
    mem_service.cancel_order(result.order.id, customer)

    with pytest.raises(InvalidTransition):
        mem_service.mark_shipped(result.order.id)
    with pytest.raises(InvalidTransition):
        mem_service.mark_delivered(result.order.id)
    with pytest.raises(InvalidTransition):
        mem_service.request_payment(result.order.id, customer)


def test_ship_requires_confirmed(mem_service, customer):
    result = _checkout(mem_service, customer)
    with pytest.raises(InvalidTransition):
        mem_service.mark_shipped(result.order.id)
    with pytest.raises(InvalidTransition):
        mem_service.mark_delivered(result.order.id)


# ---- reads ----

def test_customers_only_see_their_own_orders(mem_service, customer, other_customer, admin):
    mine = _checkout(mem_service, customer).order
    _checkout(mem_service, other_customer, qty=1)

    with pytest.raises(OrderNotFound):
        mem_service.get_order(mine.id, other_customer)
    assert mem_service.get_order(mine.id, admin).id == mine.id

    orders, count = mem_service.list_orders(customer)
    assert count == 1 and orders[0].id == mine.id
    _, everyone = mem_service.list_orders(admin)
    assert everyone == 2


def test_checkout_records_customer(mem_service, customer):
    _checkout(mem_service, customer)
    assert mem_service.store.customers["cust-1"]["email"] == "ana@example.com"
