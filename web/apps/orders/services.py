"""Order lifecycle service.

``OrderService`` orchestrates checkout, payment confirmation (client
confirm calls and gateway webhooks), cancellation, fulfilment transitions
and the reconciliation sweep. It talks to the outside world only through
the ports declared in ``domain``; persistence and I/O live in adapters.

Every status change is a compare-and-set on the order's current status.
The caller that wins the compare-and-set performs the inventory side
effects; a caller that loses re-reads the order and treats it as already
settled. Line reservations are advanced one by one, so each hold is
committed or released at most once by the request paths.
"""

import logging
import uuid
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional, Tuple

from .domain import (
    PAID_STATUSES,
    BookQuote,
    CartItem,
    CheckoutResult,
    EmptyCart,
    EventPublisher,
    GatewayUnavailable,
    IntentMismatch,
    InvalidCart,
    InvalidTransition,
    InventoryPort,
    InventoryUnavailable,
    InvalidSignature,
    Order,
    OrderLine,
    OrderNotFound,
    OrderStatus,
    OrderStorePort,
    PaymentDeclined,
    PaymentGatewayPort,
    PaymentIntent,
    PaymentOutcome,
    PaymentRejected,
    Principal,
    ReconcileReport,
    ReservationConflict,
    ReservationState,
    WebhookResult,
)

logger = logging.getLogger("orders")
security_logger = logging.getLogger("orders.security")

# orders touched this recently are left alone by the settlement sweep
SETTLE_GRACE = timedelta(minutes=1)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def merge_cart(cart: Iterable[CartItem]) -> List[CartItem]:
    """Collapse repeated books into one line, keeping first-seen order."""
    merged: "OrderedDict[str, int]" = OrderedDict()
    for item in cart:
        merged[item.book_id] = merged.get(item.book_id, 0) + item.quantity
    return [CartItem(book_id=b, quantity=q) for b, q in merged.items()]


class OrderService:
    """Domain service owning every order status transition.

    Args:
        store: Durable order storage (compare-and-set transitions).
        inventory: Inventory ledger port.
        gateway: Payment gateway port.
        events: Optional publisher for lifecycle events.
        currency: Currency new orders are charged in.
        pending_timeout: How long a ``PENDING_PAYMENT`` order may hold stock
            before the reconciliation sweep cancels it.
        clock: Callable returning the current aware datetime.
    """

    def __init__(
        self,
        store: OrderStorePort,
        inventory: InventoryPort,
        gateway: PaymentGatewayPort,
        events: Optional[EventPublisher] = None,
        currency: str = "usd",
        pending_timeout: timedelta = timedelta(minutes=30),
        clock=None,
    ):
        self.store = store
        self.inventory = inventory
        self.gateway = gateway
        self.events = events
        self.currency = currency.lower()
        self.pending_timeout = pending_timeout
        self.clock = clock or _utcnow

    # ---- checkout ----
    def checkout(self, principal: Principal, cart: Iterable[CartItem]) -> CheckoutResult:
        """Reserve stock for a cart, persist a pending order and open a payment intent.

        Reservation is all-or-nothing: if any line cannot be reserved, every
        hold acquired so far is released before the error propagates.

        Args:
            principal: Customer placing the order.
            cart: Requested books and quantities.

        Returns:
            CheckoutResult: The pending order and its intent. When the gateway
            is unavailable or rejects the intent, the intent is None and
            ``payment_error`` carries the error code. The order keeps its
            reservations and the client may retry through
            ``request_payment``.

        Raises:
            EmptyCart: If the cart has no items.
            InvalidCart: If a quantity is not positive.
            BookNotFound: If a book is unknown to the catalog.
            InsufficientStock: If a line exceeds available stock.
            InventoryUnavailable: If the ledger cannot be reached.
        """
        items = merge_cart(cart)
        if not items:
            raise EmptyCart("Cart is empty")
        if any(it.quantity <= 0 for it in items):
            raise InvalidCart("Quantities must be positive")

        customer_id = principal.id
        quotes: List[BookQuote] = [self.inventory.quote(it.book_id) for it in items]

        lines: List[OrderLine] = []
        # every token sent to the ledger, including one whose reply was lost
        tokens: List[str] = []
        try:
            for item, quote in zip(items, quotes):
                token = uuid.uuid4().hex
                try:
                    self.inventory.reserve(item.book_id, item.quantity, token)
                except InventoryUnavailable:
                    tokens.append(token)
                    raise
                tokens.append(token)
                lines.append(
                    OrderLine(
                        book_id=item.book_id,
                        title=quote.title,
                        quantity=item.quantity,
                        unit_price_cents=quote.unit_price_cents,
                        reservation_token=token,
                    )
                )
            order = self.store.add(
                Order(
                    id=None,
                    customer_id=customer_id,
                    lines=lines,
                    total_cents=sum(ln.subtotal_cents for ln in lines),
                    currency=self.currency,
                )
            )
        except Exception as e:
            self._release_tokens(tokens)
            logger.info("checkout aborted", extra={"customer_id": customer_id, "code": str(e)})
            raise

        self.store.touch_customer(principal)
        logger.info(
            "order created",
            extra={"order_id": order.id, "order_number": order.order_number, "total_cents": order.total_cents},
        )
        self._publish("order.created", order)

        try:
            intent = self._open_intent(order)
        except (GatewayUnavailable, PaymentRejected) as e:
            logger.warning("payment intent not created", extra={"order_id": order.id, "code": str(e)})
            return CheckoutResult(order=order, intent=None, payment_error=str(e))
        return CheckoutResult(order=self.store.get(order.id), intent=intent)

    def request_payment(self, order_id: str, principal: Principal | None = None) -> Tuple[Order, PaymentIntent]:
        """Return the order's live payment intent, creating one if needed.

        An attached intent that is not canceled is returned as-is, so
        repeated calls never open a second charge for the same order.
        """
        order = self.get_order(order_id, principal)
        if order.status != OrderStatus.PENDING_PAYMENT:
            raise InvalidTransition(order.status, OrderStatus.CONFIRMED)
        intent = self._open_intent(order)
        return self.store.get(order.id), intent

    def _open_intent(self, order: Order) -> PaymentIntent:
        if order.payment_intent_id:
            current = self.gateway.retrieve_intent(order.payment_intent_id)
            if current.outcome != PaymentOutcome.CANCELED:
                return current
            key = f"order-{order.id}-after-{current.intent_id}"
        else:
            key = f"order-{order.id}"

        intent = self.gateway.create_intent(order.id, order.total_cents, order.currency, key)
        if self.store.attach_intent(order.id, intent.intent_id, expected=order.payment_intent_id):
            logger.info("payment intent attached", extra={"order_id": order.id, "intent_id": intent.intent_id})
            return intent

        # another request attached a different intent first; keep that one
        latest = self.store.get(order.id)
        logger.info(
            "payment intent superseded",
            extra={"order_id": order.id, "intent_id": intent.intent_id, "kept": latest.payment_intent_id},
        )
        self.gateway.cancel_intent(intent.intent_id)
        return self.gateway.retrieve_intent(latest.payment_intent_id)

    # ---- payment confirmation ----
    def confirm_payment(self, order_id: str, intent_id: str, principal: Principal | None = None) -> Order:
        """Client-initiated confirmation: re-check the intent with the gateway.

        Raises:
            IntentMismatch: If ``intent_id`` is not the order's intent.
            InvalidTransition: If the order was already cancelled.
            PaymentDeclined: If the gateway reports a decline and the intent
                is still waiting for another payment method.
        """
        order = self.get_order(order_id, principal)
        if not order.payment_intent_id or order.payment_intent_id != intent_id:
            raise IntentMismatch("Payment intent does not belong to this order")
        if order.status in PAID_STATUSES:
            return order
        if order.status == OrderStatus.CANCELLED:
            raise InvalidTransition(order.status, OrderStatus.CONFIRMED)

        intent = self.gateway.retrieve_intent(intent_id)
        if intent.outcome == PaymentOutcome.SUCCEEDED:
            return self._apply_success(order)[0]
        if intent.outcome == PaymentOutcome.CANCELED:
            return self._apply_failure(order, "payment_canceled")[0]
        if intent.decline_reason:
            raise PaymentDeclined(intent.decline_reason)
        return order

    def handle_webhook(self, raw_payload: bytes, signature: str) -> WebhookResult:
        """Gateway-initiated confirmation.

        The payload is verified against the exact bytes received. Duplicate
        events, events for unknown intents and events for orders that have
        already settled are acknowledged without changing anything.

        Raises:
            InvalidSignature: If the signature does not match the payload.
        """
        try:
            event = self.gateway.verify_webhook_signature(raw_payload, signature)
        except InvalidSignature:
            security_logger.warning(
                "webhook signature rejected",
                extra={"payload_bytes": len(raw_payload or b""), "has_signature": bool(signature)},
            )
            raise

        log_extra = {"event_id": event.event_id, "event_type": event.event_type, "intent_id": event.intent_id}
        if self.store.is_event_processed(event.event_id):
            logger.info("duplicate webhook event", extra=log_extra)
            return WebhookResult(event.event_id, event.event_type, applied=False, reason="duplicate_event")

        outcome = self.gateway.translate(event)
        if outcome is None:
            self.store.record_event(event.event_id, event.event_type)
            logger.info("webhook event ignored", extra=log_extra)
            return WebhookResult(event.event_id, event.event_type, applied=False, reason="ignored_event_type")

        order = self.store.get_by_intent(outcome.intent_id)
        if order is None:
            self.store.record_event(event.event_id, event.event_type)
            logger.warning("webhook for unknown payment intent", extra=log_extra)
            return WebhookResult(event.event_id, event.event_type, applied=False, reason="unknown_intent")

        if outcome.outcome == PaymentOutcome.SUCCEEDED:
            order, applied = self._apply_success(order)
        else:
            reason = "payment_failed" if outcome.outcome == PaymentOutcome.FAILED else "payment_canceled"
            order, applied = self._apply_failure(order, reason, decline_reason=outcome.decline_reason)

        self.store.record_event(event.event_id, event.event_type)
        logger.info("webhook event processed", extra={**log_extra, "order_id": order.id, "applied": applied})
        return WebhookResult(
            event.event_id,
            event.event_type,
            applied=applied,
            order_id=order.id,
            status=order.status,
            reason=None if applied else "already_settled",
        )

    def _apply_success(self, order: Order) -> Tuple[Order, bool]:
        if self.store.transition(order.id, OrderStatus.PENDING_PAYMENT, OrderStatus.CONFIRMED, "payment_succeeded"):
            confirmed = self.store.get(order.id)
            self._commit_lines(confirmed)
            self._publish("order.confirmed", confirmed)
            return self.store.get(order.id), True

        current = self.store.get(order.id)
        if current.status == OrderStatus.CANCELLED:
            # money arrived after the stock was given back
            logger.warning("payment succeeded on cancelled order", extra={"order_id": current.id})
            self._refund(current)
        return current, False

    def _apply_failure(self, order: Order, reason: str, decline_reason: str | None = None) -> Tuple[Order, bool]:
        if self.store.transition(order.id, OrderStatus.PENDING_PAYMENT, OrderStatus.CANCELLED, reason):
            cancelled = self.store.get(order.id)
            self._settle_cancelled_lines(cancelled)
            self._publish("order.cancelled", cancelled, reason=reason, decline_reason=decline_reason)
            return self.store.get(order.id), True

        current = self.store.get(order.id)
        if current.status in PAID_STATUSES:
            logger.info("late payment failure ignored", extra={"order_id": current.id, "reason": reason})
        return current, False

    # ---- cancellation and fulfilment ----
    def cancel_order(self, order_id: str, principal: Principal | None = None, reason: str = "customer_request") -> Order:
        """Cancel a pending or confirmed order.

        A pending order has its intent cancelled at the gateway first; if the
        payment turns out to have succeeded, the order is confirmed and then
        cancelled like any confirmed order (refund plus restock).

        Raises:
            InvalidTransition: For shipped or delivered orders, or while the
                processor is still working on the charge.
        """
        order = self.get_order(order_id, principal)
        if order.status == OrderStatus.CANCELLED:
            return order

        if order.status == OrderStatus.PENDING_PAYMENT:
            order = self._cancel_pending(order, reason)
            if order.status == OrderStatus.CANCELLED:
                return order

        if order.status == OrderStatus.CONFIRMED:
            if self.store.transition(order.id, OrderStatus.CONFIRMED, OrderStatus.CANCELLED, reason):
                cancelled = self.store.get(order.id)
                self._refund(cancelled)
                self._settle_cancelled_lines(cancelled)
                self._publish("order.cancelled", cancelled, reason=reason)
                return self.store.get(order.id)
            order = self.store.get(order.id)
            if order.status == OrderStatus.CANCELLED:
                return order

        raise InvalidTransition(order.status, OrderStatus.CANCELLED)

    def _cancel_pending(self, order: Order, reason: str) -> Order:
        intent = self._withdraw_intent(order)
        if intent is not None and intent.outcome == PaymentOutcome.SUCCEEDED:
            return self._apply_success(order)[0]
        if intent is not None and intent.processing:
            raise InvalidTransition(order.status, OrderStatus.CANCELLED)
        return self._apply_failure(order, reason)[0]

    def _withdraw_intent(self, order: Order) -> Optional[PaymentIntent]:
        """Cancel the order's intent at the gateway unless it already settled.

        Returns the intent as it stands afterwards, or None without an intent.
        A charge that succeeded or is processing is left alone.
        """
        if not order.payment_intent_id:
            return None
        intent = self.gateway.retrieve_intent(order.payment_intent_id)
        if intent.outcome is not None or intent.processing:
            return intent
        return self.gateway.cancel_intent(order.payment_intent_id)

    def mark_shipped(self, order_id: str) -> Order:
        return self._advance(order_id, OrderStatus.CONFIRMED, OrderStatus.SHIPPED, "order.shipped")

    def mark_delivered(self, order_id: str) -> Order:
        return self._advance(order_id, OrderStatus.SHIPPED, OrderStatus.DELIVERED, "order.delivered")

    def _advance(self, order_id: str, expected: OrderStatus, target: OrderStatus, event: str) -> Order:
        order = self.store.get(order_id)
        if order.status != expected:
            raise InvalidTransition(order.status, target)
        if not self.store.transition(order.id, expected, target, "admin"):
            current = self.store.get(order.id)
            if current.status == target:
                return current
            raise InvalidTransition(current.status, target)
        order = self.store.get(order.id)
        self._publish(event, order)
        return order

    # ---- reads ----
    def get_order(self, order_id: str, principal: Principal | None = None) -> Order:
        """Fetch an order; customers only see their own orders.

        Raises:
            OrderNotFound: If the order does not exist or is not visible.
        """
        order = self.store.get(order_id)
        if principal is not None and not principal.is_admin and order.customer_id != principal.id:
            raise OrderNotFound("Order not found")
        return order

    def list_orders(
        self,
        principal: Principal,
        status: OrderStatus | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[Order], int]:
        """Page through orders, newest first. Admins see every customer's orders."""
        customer_id = None if principal.is_admin else principal.id
        return self.store.list(customer_id=customer_id, status=status, page=page, page_size=page_size)

    # ---- reconciliation ----
    def reconcile(self, now: datetime | None = None) -> ReconcileReport:
        """Background sweep.

        Expires ``PENDING_PAYMENT`` orders older than ``pending_timeout``
        (releasing their stock) and finishes inventory settlement for
        orders whose line reservations still disagree with their status.
        Orders whose gateway or ledger cannot be reached are skipped and
        picked up by the next run.
        """
        now = now or self.clock()
        report = ReconcileReport()

        for order in self.store.stale_pending(now - self.pending_timeout):
            try:
                self._expire(order, report)
            except (GatewayUnavailable, PaymentRejected, InventoryUnavailable) as e:
                logger.warning("expiry deferred", extra={"order_id": order.id, "code": str(e)})
                report.skipped.append(order.id)

        for order in self.store.unsettled(now - SETTLE_GRACE):
            if order.status in PAID_STATUSES:
                done = self._commit_lines(order)
            elif order.status == OrderStatus.CANCELLED:
                done = self._settle_cancelled_lines(order)
            else:
                continue
            (report.settled if done else report.skipped).append(order.id)

        logger.info(
            "reconciliation finished",
            extra={
                "expired": len(report.expired),
                "confirmed": len(report.confirmed),
                "settled": len(report.settled),
                "skipped": len(report.skipped),
            },
        )
        return report

    def _expire(self, order: Order, report: ReconcileReport) -> None:
        intent = self._withdraw_intent(order)
        if intent is not None and intent.outcome == PaymentOutcome.SUCCEEDED:
            if self._apply_success(order)[1]:
                report.confirmed.append(order.id)
            return
        if intent is not None and intent.processing:
            report.skipped.append(order.id)
            return
        if self._apply_failure(order, "payment_timeout")[1]:
            report.expired.append(order.id)

    # ---- inventory side effects ----
    def _commit_lines(self, order: Order) -> bool:
        """Commit every held line; return False if any hold is still open."""
        done = True
        for line in order.lines:
            if line.reservation_state != ReservationState.HELD:
                continue
            try:
                self.inventory.commit(line.reservation_token)
            except (InventoryUnavailable, ReservationConflict) as e:
                logger.error(
                    "reservation commit deferred",
                    extra={"order_id": order.id, "token": line.reservation_token, "code": str(e)},
                )
                done = False
                continue
            self.store.mark_reservation(line.reservation_token, ReservationState.COMMITTED)
        return done

    def _settle_cancelled_lines(self, order: Order) -> bool:
        done = True
        for line in order.lines:
            if line.reservation_state == ReservationState.HELD:
                op, state = self.inventory.release, ReservationState.RELEASED
            elif line.reservation_state == ReservationState.COMMITTED:
                op, state = self.inventory.restock, ReservationState.RESTOCKED
            else:
                continue
            try:
                op(line.reservation_token)
            except (InventoryUnavailable, ReservationConflict) as e:
                logger.error(
                    "reservation release deferred",
                    extra={"order_id": order.id, "token": line.reservation_token, "code": str(e)},
                )
                done = False
                continue
            self.store.mark_reservation(line.reservation_token, state)
        return done

    def _release_tokens(self, tokens: List[str]) -> None:
        for token in tokens:
            try:
                self.inventory.release(token)
            except (InventoryUnavailable, ReservationConflict) as e:
                # no order row references this hold; operators must release it
                logger.error("orphaned reservation", extra={"token": token, "code": str(e)})

    def _refund(self, order: Order) -> None:
        if not order.payment_intent_id:
            return
        try:
            refund_id = self.gateway.refund(order.payment_intent_id, f"refund-{order.id}")
        except (GatewayUnavailable, PaymentRejected) as e:
            logger.error(
                "refund failed",
                extra={"order_id": order.id, "intent_id": order.payment_intent_id, "code": str(e)},
            )
            self._publish("order.refund_failed", order, code=str(e))
            return
        self._publish("order.payment_refunded", order, refund_id=refund_id)

    def _publish(self, name: str, order: Order, **fields) -> None:
        if self.events is None:
            return
        try:
            self.events.publish(
                name,
                order_id=order.id,
                order_number=order.order_number,
                customer_id=order.customer_id,
                status=OrderStatus(order.status).value,
                total_cents=order.total_cents,
                **fields,
            )
        except Exception:
            logger.exception("event publish failed", extra={"event": name, "order_id": order.id})
