"""HTTP adapter client for the inventory ledger with retries and a circuit breaker.

This module implements the inventory port over ``httpx``. It adds:

- Request correlation: propagates ``X-Request-ID`` from a ContextVar set by
    the gateway middleware.
- Circuit breaker per downstream service to avoid hammering unhealthy
    dependencies, with HALF_OPEN probing after a timeout. The Stripe adapter
    reuses the same breaker class.
- Simple retry policy with exponential backoff for transport errors and 5xx.
- Safe retries for reservations: the client generates the reservation token,
    so a retried POST returns the hold created by the first attempt.

Business responses (404, 409, 422) are mapped to domain errors and never
count as circuit failures. Exhausted retries and an open circuit surface as
``InventoryUnavailable``.
"""

import logging
import threading
import time
import uuid
from typing import List, Optional

import httpx
from django.conf import settings
from django.utils.module_loading import import_string

from .domain import (
    BookNotFound,
    BookQuote,
    InsufficientStock,
    InvalidCart,
    InventoryPort,
    InventoryUnavailable,
    ReservationConflict,
    StockLevel,
)

REQUEST_ID_CTX = import_string("gateway.middleware.REQUEST_ID_CTX")

logger = logging.getLogger("orders")

# ---------------- Circuit Breaker ---------------- #

class CircuitBreaker:
    """Minimal circuit breaker with CLOSED/OPEN/HALF_OPEN states.

    Transitions:
    - CLOSED → OPEN when failures reach ``fail_threshold``.
    - OPEN → HALF_OPEN after ``reset_timeout`` seconds.
    - HALF_OPEN → CLOSED on a successful probe; stays HALF_OPEN while a
      single probe is in flight; transitions back to OPEN on failure.

    This implementation is thread-safe via an internal lock.
    """

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._lock = threading.RLock()
        self._failures = 0
        self._state = "CLOSED"  # CLOSED | OPEN | HALF_OPEN
        self._opened_at = 0.0
        self._half_open_probe_in_flight = False

    @property
    def state(self) -> str:
        """Current breaker state with time-based transition handling."""
        with self._lock:
            if self._state == "OPEN" and (time.monotonic() - self._opened_at) >= self.reset_timeout:
                self._state = "HALF_OPEN"
                self._half_open_probe_in_flight = False
            return self._state

    def before_call(self) -> str:
        """Check and update state before a protected call.

        Returns:
            str: The state at call time.

        Raises:
            RuntimeError: If the circuit is OPEN or a HALF_OPEN probe is busy.
        """
        with self._lock:
            st = self.state
            if st == "OPEN":
                raise RuntimeError("CIRCUIT_OPEN")
            if st == "HALF_OPEN":
                # one probe at a time
                if self._half_open_probe_in_flight:
                    raise RuntimeError("CIRCUIT_HALF_OPEN_BUSY")
                self._half_open_probe_in_flight = True
            return st

    def on_success(self):
        """Record a successful call and close/reset the breaker."""
        with self._lock:
            self._failures = 0
            self._state = "CLOSED"
            self._half_open_probe_in_flight = False

    def on_failure(self):
        """Record a failed call and open the breaker if threshold exceeded."""
        with self._lock:
            self._failures += 1
            if self._failures >= self.fail_threshold and self._state != "OPEN":
                self._state = "OPEN"
                self._opened_at = time.monotonic()
                self._half_open_probe_in_flight = False
                logger.warning("circuit opened", extra={"circuit": self.name, "failures": self._failures})

    def on_finish(self):
        """Release any HALF_OPEN probe flag after a call finishes."""
        with self._lock:
            if self._state == "HALF_OPEN":
                self._half_open_probe_in_flight = False


def circuit_settings() -> tuple[int, float]:
    """Return (fail_threshold, reset_timeout_seconds) from settings."""
    return (
        getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
        getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
    )


_inventory_cb = CircuitBreaker("inventory", *circuit_settings())


# ---------------- Helpers ---------------- #

def _request_headers(extra: Optional[dict] = None) -> dict:
    """Build base headers including X-Request-ID and any extras.

    Args:
        extra: Optional dict of additional headers to include.

    Returns:
        dict: Final headers dictionary for the outgoing request.
    """
    headers: dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update(extra)
    return headers


def _retry_policy():
    """Return retry configuration as (max_retries, backoff_base_seconds)."""
    return (
        getattr(settings, "HTTP_RETRY_MAX", 3),
        getattr(settings, "HTTP_RETRY_BACKOFF_BASE", 0.15),
    )


def _should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
    """Retry only on transport errors or HTTP 5xx."""
    if exc is not None:
        return True
    if resp is not None and 500 <= resp.status_code < 600:
        return True
    return False


def _detail(resp: httpx.Response) -> dict:
    try:
        body = resp.json()
    except ValueError:
        return {}
    detail = body.get("detail") if isinstance(body, dict) else None
    return detail if isinstance(detail, dict) else {}


# ---------------- Inventory Adapter ---------------- #

class HttpInventoryClient(InventoryPort):
    """HTTP client for the inventory ledger with retry and circuit breaker."""

    # statuses that are business answers, not downstream failures
    BUSINESS_STATUSES = frozenset({200, 201, 404, 409, 422})

    def __init__(self, base_url: str | None = None, timeout: float | None = None, breaker: CircuitBreaker | None = None):
        self.base_url = (base_url or settings.INVENTORY_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS
        self.breaker = breaker or _inventory_cb

    def quote(self, book_id: str) -> BookQuote:
        resp = self._send("GET", f"/books/{book_id}")
        if resp.status_code == 404:
            raise BookNotFound(book_id)
        data = resp.json()
        return BookQuote(book_id=data["book_id"], title=data["title"], unit_price_cents=data["price_cents"])

    def reserve(self, book_id: str, quantity: int, token: str | None = None) -> str:
        """Hold stock for one book.

        Maps ledger responses:
        - 201 → reservation token
        - 404 → ``BookNotFound``
        - 422 with ``INSUFFICIENT_STOCK`` → ``InsufficientStock``

        Raises:
            InventoryUnavailable: For transport errors/5xx after retries or an
                open circuit.
        """
        token = token or uuid.uuid4().hex
        payload = {"book_id": book_id, "quantity": quantity, "token": token}
        resp = self._send("POST", "/reservations", json=payload)
        if resp.status_code == 201:
            return resp.json()["token"]
        if resp.status_code == 404:
            raise BookNotFound(book_id)
        detail = _detail(resp)
        if resp.status_code == 422 and detail.get("code") == "INSUFFICIENT_STOCK":
            raise InsufficientStock(
                book_id,
                requested=detail.get("requested", quantity),
                available=detail.get("available", 0),
                title=detail.get("title", ""),
            )
        raise InvalidCart(f"Reservation rejected for book {book_id}")

    def commit(self, token: str) -> bool:
        return self._settle(token, "commit")

    def release(self, token: str) -> bool:
        return self._settle(token, "release")

    def restock(self, token: str) -> bool:
        return self._settle(token, "restock")

    def low_stock(self, threshold: int, limit: int) -> List[StockLevel]:
        resp = self._send("GET", "/stock/low", params={"threshold": threshold, "limit": limit})
        return [StockLevel(book_id=r["book_id"], title=r["title"], available=r["available"]) for r in resp.json()]

    def count_books(self) -> int:
        return int(self._send("GET", "/books").json()["books"])

    def _settle(self, token: str, action: str) -> bool:
        resp = self._send("POST", f"/reservations/{token}/{action}")
        if resp.status_code == 200:
            return bool(resp.json().get("applied", False))
        detail = _detail(resp)
        raise ReservationConflict(
            f"Cannot {action} reservation {token}: {detail.get('code', resp.status_code)}"
        )

    def _send(self, method: str, path: str, json: dict | None = None, params: dict | None = None) -> httpx.Response:
        """Issue a request with circuit-breaker precheck and exponential backoff.

        Returns:
            httpx.Response: A response whose status is a business answer.

        Raises:
            InventoryUnavailable: When the circuit is open, or transport
                errors/unexpected statuses persist after retries.
        """
        max_retries, backoff = _retry_policy()
        tries = 0

        try:
            state = self.breaker.before_call()
        except RuntimeError as e:
            raise InventoryUnavailable(str(e)) from e
        headers = _request_headers({"X-Circuit-State": state, "X-Retry-Count": "0"})

        try:
            with httpx.Client(timeout=self.timeout) as client:
                while True:
                    resp = None
                    exc = None
                    try:
                        resp = client.request(method, f"{self.base_url}{path}", json=json, params=params, headers=headers)
                        if resp.status_code in self.BUSINESS_STATUSES:
                            self.breaker.on_success()
                            return resp
                    except httpx.RequestError as e:
                        exc = e

                    tries += 1
                    headers["X-Retry-Count"] = str(tries)

                    if tries > max_retries or not _should_retry(resp, exc):
                        self.breaker.on_failure()
                        logger.warning(
                            "inventory call failed",
                            extra={"path": path, "tries": tries, "status": getattr(resp, "status_code", None)},
                        )
                        raise InventoryUnavailable("Inventory service unavailable") from exc

                    sleep_s = backoff * (2 ** (tries - 1))
                    cap = getattr(settings, "HTTP_RETRY_MAX_SLEEP", 0.5)
                    time.sleep(min(sleep_s, cap))
        finally:
            self.breaker.on_finish()
