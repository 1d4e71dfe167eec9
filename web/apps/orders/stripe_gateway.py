"""Stripe implementation of the payment gateway port.

The adapter is stateless: the API key, webhook secret and signature
tolerance are injected, and every SDK call passes ``api_key`` explicitly
instead of relying on the global ``stripe.api_key``. Transport, rate-limit
and server-side errors (and an open circuit) surface as
``GatewayUnavailable`` so the lifecycle service can defer the work. Any
other Stripe error (invalid request, authentication, idempotency misuse)
is permanent and surfaces as ``PaymentRejected``.

Webhook payloads are verified with ``stripe.Webhook.construct_event`` over
the exact bytes received; the event is then read from the raw JSON.
"""

import json
import logging
from typing import Optional

import stripe

from .domain import (
    GatewayOutcome,
    GatewayUnavailable,
    InvalidSignature,
    PaymentGatewayPort,
    PaymentIntent,
    PaymentOutcome,
    PaymentRejected,
    VerifiedEvent,
)
from .http_adapters import CircuitBreaker, circuit_settings

logger = logging.getLogger("orders")

EVENT_OUTCOMES = {
    "payment_intent.succeeded": PaymentOutcome.SUCCEEDED,
    "payment_intent.payment_failed": PaymentOutcome.FAILED,
    "payment_intent.canceled": PaymentOutcome.CANCELED,
}

# statuses in which Stripe is still working on the charge
PROCESSING_STATUSES = frozenset({"processing", "requires_capture"})

_TRANSIENT_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)


def intent_outcome(status: str) -> Optional[PaymentOutcome]:
    """Map a Stripe PaymentIntent status to a final outcome, or None while pending."""
    if status == "succeeded":
        return PaymentOutcome.SUCCEEDED
    if status == "canceled":
        return PaymentOutcome.CANCELED
    return None


def parse_event(data: dict) -> VerifiedEvent:
    """Build a ``VerifiedEvent`` from a decoded Stripe event body."""
    obj = (data.get("data") or {}).get("object") or {}
    intent_id = obj.get("id") if obj.get("object", "payment_intent") == "payment_intent" else None
    last_error = obj.get("last_payment_error") or {}
    return VerifiedEvent(
        event_id=data.get("id") or "",
        event_type=data.get("type") or "",
        intent_id=intent_id,
        decline_reason=last_error.get("message"),
    )


def translate_event(event: VerifiedEvent) -> Optional[GatewayOutcome]:
    """Pure mapping from a verified event to an internal outcome.

    Returns None for event types the lifecycle does not act on.
    """
    outcome = EVENT_OUTCOMES.get(event.event_type)
    if outcome is None or not event.intent_id:
        return None
    return GatewayOutcome(intent_id=event.intent_id, outcome=outcome, decline_reason=event.decline_reason)


class StripePaymentGateway(PaymentGatewayPort):
    """Payment gateway backed by Stripe PaymentIntents.

    Args:
        api_key: Stripe secret key.
        webhook_secret: Endpoint signing secret (``whsec_...``).
        tolerance: Maximum age in seconds of a signed webhook.
        breaker: Optional circuit breaker shared across instances.
    """

    def __init__(self, api_key: str, webhook_secret: str, tolerance: int = 300, breaker: CircuitBreaker | None = None):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance
        self.breaker = breaker or _stripe_cb

    def create_intent(self, order_id: str, amount_cents: int, currency: str, idempotency_key: str) -> PaymentIntent:
        """Create a PaymentIntent for an order.

        The Stripe idempotency key makes a retried call return the intent
        created by the first attempt instead of a second one.
        """
        obj = self._call(
            stripe.PaymentIntent.create,
            amount=amount_cents,
            currency=currency.lower(),
            metadata={"order_id": str(order_id)},
            automatic_payment_methods={"enabled": True},
            idempotency_key=idempotency_key,
        )
        logger.info("stripe intent created", extra={"order_id": str(order_id), "intent_id": obj.id})
        return _to_intent(obj)

    def retrieve_intent(self, intent_id: str) -> PaymentIntent:
        return _to_intent(self._call(stripe.PaymentIntent.retrieve, intent_id))

    def cancel_intent(self, intent_id: str) -> PaymentIntent:
        """Cancel an intent; an intent that can no longer be cancelled is returned as it is."""
        try:
            return _to_intent(self._call(stripe.PaymentIntent.cancel, intent_id))
        except PaymentRejected as e:
            logger.info("stripe intent not cancelable", extra={"intent_id": intent_id, "code": e.gateway_code})
            return self.retrieve_intent(intent_id)

    def refund(self, intent_id: str, idempotency_key: str) -> str:
        obj = self._call(stripe.Refund.create, payment_intent=intent_id, idempotency_key=idempotency_key)
        logger.info("stripe refund created", extra={"intent_id": intent_id, "refund_id": obj.id})
        return obj.id

    def verify_webhook_signature(self, raw_payload: bytes, signature_header: str) -> VerifiedEvent:
        """Check the ``Stripe-Signature`` header against the raw body.

        Raises:
            InvalidSignature: If the header is missing, malformed, stale or
                does not match; or if the body is not valid JSON.
        """
        if not signature_header:
            raise InvalidSignature("Missing signature header")
        try:
            stripe.Webhook.construct_event(raw_payload, signature_header, self.webhook_secret, tolerance=self.tolerance)
        except stripe.SignatureVerificationError as e:
            raise InvalidSignature("Signature verification failed") from e
        except ValueError as e:
            raise InvalidSignature("Malformed webhook payload") from e
        return parse_event(json.loads(raw_payload))

    def translate(self, event: VerifiedEvent) -> Optional[GatewayOutcome]:
        return translate_event(event)

    def _call(self, fn, *args, **kwargs):
        try:
            self.breaker.before_call()
        except RuntimeError as e:
            raise GatewayUnavailable(str(e)) from e
        try:
            result = fn(*args, api_key=self.api_key, **kwargs)
        except _TRANSIENT_ERRORS as e:
            self.breaker.on_failure()
            logger.warning("stripe call failed", extra={"error_type": type(e).__name__})
            raise GatewayUnavailable("Payment gateway unavailable") from e
        except stripe.StripeError as e:
            # a rejected request still proves Stripe is reachable
            self.breaker.on_success()
            code = getattr(e, "code", None) or type(e).__name__
            logger.error("stripe request rejected", extra={"error_type": type(e).__name__, "code": code})
            raise PaymentRejected(getattr(e, "user_message", None) or code, gateway_code=code) from e
        finally:
            self.breaker.on_finish()
        self.breaker.on_success()
        return result


def _to_intent(obj) -> PaymentIntent:
    last_error = getattr(obj, "last_payment_error", None)
    return PaymentIntent(
        intent_id=obj.id,
        client_secret=getattr(obj, "client_secret", None),
        status=obj.status,
        outcome=intent_outcome(obj.status),
        decline_reason=getattr(last_error, "message", None) if last_error else None,
        processing=obj.status in PROCESSING_STATUSES,
    )


_stripe_cb = CircuitBreaker("stripe", *circuit_settings())
