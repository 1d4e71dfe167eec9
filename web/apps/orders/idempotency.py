"""Idempotency utilities for the checkout endpoint.

A client retrying ``POST /api/orders/checkout/`` with the same
``Idempotency-Key`` must get back the response of the first attempt instead
of placing (and reserving stock for) a second order. Keys are scoped to the
calling customer, so two customers can never replay each other's responses.
"""

import hashlib
import json

from django.db import IntegrityError, transaction

from .models import IdempotencyKey


class IdempotencyConflict(Exception):
    """The key was already used with a different payload."""

    def __str__(self):
        return "IDEMPOTENCY_CONFLICT"


def scoped_key(customer_id: str, key: str) -> str:
    """Return the stored key for a customer's client-supplied key."""
    return f"{customer_id}:{key}"[:255]


def _hash(payload) -> str:
    """Compute a stable SHA-256 hash for a JSON-serializable payload.

    The payload is serialized with sorted keys and compact separators so
    equal payloads always hash equally.
    """
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


@transaction.atomic
def get_or_create_idempotent(key: str, payload):
    """Get-or-create an idempotency record for the given key and payload.

    The create path runs in a nested savepoint so an IntegrityError only
    rolls back that block. For an existing record the row is locked
    (SELECT ... FOR UPDATE) before the payload hash is compared.

    Args:
        key: Scoped idempotency key (see ``scoped_key``).
        payload: Request payload used to compute the request hash.

    Returns:
        tuple[bool, IdempotencyKey]: (existing, rec) where existing is True
        when the record already existed.

    Raises:
        IdempotencyConflict: If the key exists with a different payload.
    """
    h = _hash(payload)
    try:
        with transaction.atomic():
            rec = IdempotencyKey.objects.create(key=key, request_hash=h, response_status=0, response_body={})
            return False, rec
    except IntegrityError:
        rec = IdempotencyKey.objects.select_for_update().get(key=key)
        if rec.request_hash != h:
            raise IdempotencyConflict()
        return True, rec


def finalize(rec: IdempotencyKey, status_code: int, body: dict, order_id=None):
    """Persist the final response for an idempotent request.

    Subsequent retries return this stored response without re-running
    checkout.
    """
    rec.response_status = status_code
    rec.response_body = body
    if order_id is not None:
        rec.order_id = order_id
    rec.save(update_fields=["response_status", "response_body", "order_id"])


def discard(rec: IdempotencyKey):
    """Forget a key whose request failed transiently, so a retry runs again."""
    IdempotencyKey.objects.filter(key=rec.key).delete()
