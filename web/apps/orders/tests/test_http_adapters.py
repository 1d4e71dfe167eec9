"""Unit tests for the HTTP inventory client.

These tests verify that ledger responses are mapped to domain results and
errors by monkeypatching ``httpx.Client.request`` and asserting the
adapter behavior.
"""
import httpx
import pytest

from apps.orders.domain import BookNotFound, InsufficientStock, InvalidCart, ReservationConflict
from apps.orders.http_adapters import CircuitBreaker, HttpInventoryClient


class DummyResp:
    """Minimal httpx-like response stub for adapter tests.

    Args:
        status_code (int): HTTP status code to simulate.
        json_data (dict | list | None): JSON body to return from ``json()``.
    """
    def __init__(self, status_code=200, json_data=None):
        self.status_code = status_code
        self._json = json_data if json_data is not None else {}

    def json(self):
        return self._json


def _client():
    return HttpInventoryClient(base_url="http://inventory:9001", timeout=1.0, breaker=CircuitBreaker("t", 5, 30))


def _patch(monkeypatch, resp, seen=None):
    def fake_request(self, method, url, json=None, params=None, headers=None, **kw):
        if seen is not None:
            seen.append((method, url, json, params))
        return resp
    monkeypatch.setattr(httpx.Client, "request", fake_request, raising=True)


def test_quote_maps_book(monkeypatch):
    """GET /books/{id} returns title and current price."""
    seen = []
    _patch(monkeypatch, DummyResp(200, {"book_id": "1984", "title": "Nineteen Eighty-Four", "price_cents": 1399,
                                        "on_hand": 40, "reserved": 0, "available": 40}), seen)
    quote = _client().quote("1984")
    assert quote.title == "Nineteen Eighty-Four" and quote.unit_price_cents == 1399
    assert seen[0][:2] == ("GET", "http://inventory:9001/books/1984")


def test_quote_unknown_book(monkeypatch):
    _patch(monkeypatch, DummyResp(404, {"detail": {"code": "BOOK_NOT_FOUND"}}))
    with pytest.raises(BookNotFound):
        _client().quote("nope")


def test_reserve_sends_client_token(monkeypatch):
    """The client generates the token so a retried POST cannot hold twice."""
    seen = []

    def fake_request(self, method, url, json=None, params=None, headers=None, **kw):
        seen.append(json)
        return DummyResp(201, {"token": json["token"], "book_id": "1984", "quantity": 2, "state": "HELD"})

    monkeypatch.setattr(httpx.Client, "request", fake_request, raising=True)
    token = _client().reserve("1984", 2)
    assert token == seen[0]["token"]
    assert seen[0]["book_id"] == "1984" and seen[0]["quantity"] == 2

    assert _client().reserve("1984", 2, "order-line-tok") == "order-line-tok"
    assert seen[1]["token"] == "order-line-tok"


def test_reserve_insufficient_stock(monkeypatch):
    """422 INSUFFICIENT_STOCK carries the ledger's counts."""
    _patch(monkeypatch, DummyResp(422, {"detail": {"code": "INSUFFICIENT_STOCK", "book_id": "dune", "title": "Dune",
                                                    "requested": 5, "available": 3}}))
    with pytest.raises(InsufficientStock) as e:
        _client().reserve("dune", 5)
    assert e.value.available == 3 and e.value.requested == 5
    assert '"Dune"' in e.value.detail


def test_reserve_validation_error_is_invalid_cart(monkeypatch):
    _patch(monkeypatch, DummyResp(422, {"detail": [{"loc": ["body", "quantity"], "msg": "bad"}]}))
    with pytest.raises(InvalidCart):
        _client().reserve("dune", 1)


def test_settle_reports_applied_flag(monkeypatch):
    seen = []
    _patch(monkeypatch, DummyResp(200, {"token": "tok-1", "state": "COMMITTED", "applied": False}), seen)
    assert _client().commit("tok-1") is False
    assert seen[0][:2] == ("POST", "http://inventory:9001/reservations/tok-1/commit")


def test_settle_conflict(monkeypatch):
    _patch(monkeypatch, DummyResp(409, {"detail": {"code": "RESERVATION_CONFLICT", "state": "RELEASED"}}))
    with pytest.raises(ReservationConflict):
        _client().commit("tok-1")


def test_low_stock_and_count(monkeypatch):
    rows = [{"book_id": "dune", "title": "Dune", "price_cents": 1050, "on_hand": 3, "reserved": 1, "available": 2}]
    _patch(monkeypatch, DummyResp(200, rows))
    levels = _client().low_stock(threshold=10, limit=5)
    assert levels[0].book_id == "dune" and levels[0].available == 2

    _patch(monkeypatch, DummyResp(200, {"books": 7}))
    assert _client().count_books() == 7
