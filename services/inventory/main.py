"""Inventory ledger API built with FastAPI.

This module exposes the stock ledger used by the bookstore order engine:
catalog/stock reads, reservations and their settlement (commit, release,
restock). Validation is performed with Pydantic models, while persistence
and the atomic stock updates are delegated to the SQLAlchemy-backed
repository in ``repo.InventoryRepo``.
"""

import logging
import time
import uuid
from typing import List

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from pydantic import BaseModel, Field, constr
from pythonjsonlogger import jsonlogger
from sqlalchemy import text

from repo import (
    InsufficientStock,
    InventoryRepo,
    ReservationStateError,
    UnknownBook,
    UnknownReservation,
    engine,
    init_db,
)

app = FastAPI(title="Inventory Service")

BookId = constr(pattern=r"^[A-Za-z0-9_.:-]{1,64}$")

logger = logging.getLogger("inventory")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    logger.addHandler(h)
    logger.setLevel(logging.INFO)


@app.on_event("startup")
def _startup_db():
    # wait briefly until the database accepts connections
    deadline = time.time() + 30
    while True:
        try:
            with engine.connect() as conn:
                conn.execute(text("select 1"))
            break
        except Exception:
            if time.time() > deadline:
                raise
            time.sleep(1)
    init_db()


def get_repo() -> InventoryRepo:
    return InventoryRepo()


class BookIn(BaseModel):
    """Catalog sync payload for a book's stock row.

    Attributes:
        title: Display title.
        price_cents: Current unit price in minor units.
        on_hand: Units physically in stock.
    """
    title: str = Field(min_length=1, max_length=255)
    price_cents: int = Field(ge=0)
    on_hand: int = Field(ge=0)


class BookOut(BaseModel):
    book_id: str
    title: str
    price_cents: int
    on_hand: int
    reserved: int
    available: int


class ReserveRequest(BaseModel):
    """Request body for creating a reservation.

    Attributes:
        book_id: Book to hold stock for.
        quantity: Positive number of units.
        token: Optional client-generated token; replaying a token returns
            the existing reservation instead of holding stock twice.
    """
    book_id: BookId
    quantity: int = Field(gt=0)
    token: str | None = Field(default=None, min_length=8, max_length=64)


class ReservationOut(BaseModel):
    token: str
    book_id: str
    quantity: int
    state: str


class SettleResponse(BaseModel):
    """Result of a commit/release/restock call.

    Attributes:
        token: Reservation token.
        state: State after the call.
        applied: False when the call was a repeat of an earlier settle.
    """
    token: str
    state: str
    applied: bool


class CatalogCount(BaseModel):
    books: int


@app.get("/health")
def health():
    """Liveness/health probe endpoint."""
    return {"ok": True}


@app.get("/books", response_model=CatalogCount)
def count_books(repo: InventoryRepo = Depends(get_repo)):
    return CatalogCount(books=repo.count())


@app.get("/books/{book_id}", response_model=BookOut)
def get_book(book_id: str, repo: InventoryRepo = Depends(get_repo)):
    row = repo.get(book_id)
    if row is None:
        raise HTTPException(status_code=404, detail={"code": "BOOK_NOT_FOUND", "book_id": book_id})
    return BookOut(**row)


@app.put("/books/{book_id}", response_model=BookOut)
def put_book(book_id: BookId, body: BookIn, repo: InventoryRepo = Depends(get_repo)):
    """Create or update a book's catalog data and on-hand count."""
    try:
        row = repo.upsert(book_id, body.title, body.price_cents, body.on_hand)
    except ValueError as e:
        raise HTTPException(status_code=409, detail={"code": str(e), "book_id": book_id})
    return BookOut(**row)


@app.get("/stock/low", response_model=List[BookOut])
def low_stock(
    threshold: int = Query(10, ge=0),
    limit: int = Query(5, gt=0, le=100),
    repo: InventoryRepo = Depends(get_repo),
):
    return [BookOut(**r) for r in repo.low_stock(threshold, limit)]


@app.post("/reservations", response_model=ReservationOut, status_code=201)
def reserve(req: ReserveRequest, request: Request, repo: InventoryRepo = Depends(get_repo)):
    """Hold stock for a single book.

    Args:
        req: The reservation request.

    Returns:
        ReservationOut: The held reservation.

    Raises:
        HTTPException: 404 for an unknown book, 422 with
            ``INSUFFICIENT_STOCK`` when available stock is too low.
    """
    try:
        token = repo.reserve(req.book_id, req.quantity, token=req.token)
    except UnknownBook:
        raise HTTPException(status_code=404, detail={"code": "BOOK_NOT_FOUND", "book_id": req.book_id})
    except InsufficientStock as e:
        logger.info(
            "reservation refused",
            extra={"request_id": _rid(request), "book_id": e.book_id, "requested": e.requested, "available": e.available},
        )
        raise HTTPException(
            status_code=422,
            detail={
                "code": "INSUFFICIENT_STOCK",
                "book_id": e.book_id,
                "title": e.title,
                "requested": e.requested,
                "available": e.available,
            },
        )
    return ReservationOut(**repo.reservation(token))


@app.post("/reservations/{token}/commit", response_model=SettleResponse)
def commit(token: str, request: Request, repo: InventoryRepo = Depends(get_repo)):
    return _settle(repo.commit, token, "COMMITTED", request)


@app.post("/reservations/{token}/release", response_model=SettleResponse)
def release(token: str, request: Request, repo: InventoryRepo = Depends(get_repo)):
    return _settle(repo.release, token, "RELEASED", request)


@app.post("/reservations/{token}/restock", response_model=SettleResponse)
def restock(token: str, request: Request, repo: InventoryRepo = Depends(get_repo)):
    return _settle(repo.restock, token, "RESTOCKED", request)


def _settle(op, token: str, target: str, request: Request) -> SettleResponse:
    try:
        applied = op(token)
    except UnknownReservation:
        raise HTTPException(status_code=404, detail={"code": "RESERVATION_NOT_FOUND", "token": token})
    except ReservationStateError as e:
        raise HTTPException(
            status_code=409,
            detail={"code": "RESERVATION_CONFLICT", "token": token, "state": e.current, "target": e.target},
        )
    logger.info(
        "reservation settled",
        extra={"request_id": _rid(request), "token": token, "state": target, "applied": applied},
    )
    return SettleResponse(token=token, state=target, applied=applied)


def _rid(request: Request) -> str:
    return getattr(request.state, "request_id", "-")


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = rid
    try:
        response = await call_next(request)
    finally:
        logger.info("request handled", extra={"request_id": rid, "path": request.url.path, "method": request.method})
    response.headers["X-Request-ID"] = rid
    return response
