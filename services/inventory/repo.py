"""SQLAlchemy repository for the book inventory ledger.

This module persists stock counters and reservations using SQLAlchemy and
PostgreSQL. Each book row carries the catalog join the order engine needs
(title and current price) plus two counters: ``on_hand`` (units physically
sellable) and ``reserved`` (units held by unpaid orders). The sellable
quantity is ``on_hand - reserved`` and never goes negative.

Reservations are rows keyed by an opaque token. A reservation is settled
exactly once: committed (removed from stock for good), released (returned
to available) or, after a commit, restocked. Every settle is a
compare-and-set on the reservation state, so repeating it is a no-op.

The database URL is read from the ``DATABASE_URL`` env var.
"""

import os
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
    create_engine,
    func,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Session, mapped_column

DB_HOST = os.getenv("DB_HOST", "inventory-db")
DB_PORT = os.getenv("DB_PORT", "5432")
DB_NAME = os.getenv("DB_NAME", "inventory")
DB_USER = os.getenv("DB_USER", "inventory_user")
DB_PASSWORD = os.getenv("DB_PASSWORD", "inventory-pass")

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql+psycopg://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}",
)
engine = create_engine(DATABASE_URL, pool_pre_ping=True)

HELD = "HELD"
COMMITTED = "COMMITTED"
RELEASED = "RELEASED"
RESTOCKED = "RESTOCKED"


class Base(DeclarativeBase):
    pass


class Book(Base):
    """Stock row for a single book.

    Attributes:
        book_id: Catalog identifier (primary key).
        title: Display title, used in shortage messages.
        price_cents: Current unit price in minor units.
        on_hand: Units physically in stock.
        reserved: Units held by reservations that are not settled yet.
    """
    __tablename__ = "books"
    __table_args__ = (
        CheckConstraint("reserved >= 0", name="ck_books_reserved_non_negative"),
        CheckConstraint("on_hand >= reserved", name="ck_books_available_non_negative"),
    )

    book_id = mapped_column(String(64), primary_key=True)
    title = mapped_column(String(255), nullable=False, default="")
    price_cents = mapped_column(Integer, nullable=False, default=0)
    on_hand = mapped_column(Integer, nullable=False, default=0)
    reserved = mapped_column(Integer, nullable=False, default=0)

    @property
    def available(self) -> int:
        return self.on_hand - self.reserved


class Reservation(Base):
    """A quantity held against one book for one order line."""
    __tablename__ = "reservations"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_reservations_quantity_positive"),
    )

    token = mapped_column(String(64), primary_key=True)
    book_id = mapped_column(String(64), ForeignKey("books.book_id"), nullable=False, index=True)
    quantity = mapped_column(Integer, nullable=False)
    state = mapped_column(String(16), nullable=False, default=HELD)
    created_at = mapped_column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = mapped_column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))


class UnknownBook(LookupError):
    """Raised when a book id has no stock row."""

    def __init__(self, book_id: str):
        super().__init__(book_id)
        self.book_id = book_id


class UnknownReservation(LookupError):
    """Raised when a reservation token does not exist."""

    def __init__(self, token: str):
        super().__init__(token)
        self.token = token


class InsufficientStock(Exception):
    """Raised when a book cannot cover the requested quantity."""

    def __init__(self, book_id: str, title: str, requested: int, available: int):
        super().__init__(f"{book_id}: requested {requested}, available {available}")
        self.book_id = book_id
        self.title = title
        self.requested = requested
        self.available = available


class ReservationStateError(Exception):
    """Raised when a reservation cannot move to the requested state."""

    def __init__(self, token: str, current: str, target: str):
        super().__init__(f"{token}: {current} -> {target}")
        self.token = token
        self.current = current
        self.target = target


# (source state, on_hand sign, reserved sign) per target state
_SETTLE_RULES = {
    COMMITTED: (HELD, -1, -1),
    RELEASED: (HELD, 0, -1),
    RESTOCKED: (COMMITTED, 1, 0),
}


def init_db(bind=None) -> None:
    """Create the ledger tables if they do not exist."""
    Base.metadata.create_all(bind or engine)


@contextmanager
def get_session(bind=None):
    """Context manager that yields a SQLAlchemy session.

    Args:
        bind: Optional engine; defaults to the module engine.

    Yields:
        Session: Active SQLAlchemy session, closed on exit.
    """
    with Session(bind or engine) as s:
        yield s


class InventoryRepo:
    """Repository for stock reads, reservations and their settlement.

    Writes are single conditional UPDATE statements, so two concurrent
    reservations for the same book can never both pass the availability
    check and oversell it.
    """

    def __init__(self, bind=None):
        self.bind = bind or engine

    def get(self, book_id: str) -> Optional[dict]:
        """Return the stock row for a book as a dict, or None."""
        with get_session(self.bind) as s:
            obj = s.get(Book, book_id)
            return _book_dict(obj) if obj else None

    def upsert(self, book_id: str, title: str, price_cents: int, on_hand: int) -> dict:
        """Create or update a book's catalog data and on-hand count.

        Raises:
            ValueError: "ON_HAND_BELOW_RESERVED" if ``on_hand`` would drop
                below the quantity currently reserved.
        """
        with get_session(self.bind) as s:
            obj = s.get(Book, book_id) or Book(book_id=book_id, reserved=0)
            if on_hand < (obj.reserved or 0):
                raise ValueError("ON_HAND_BELOW_RESERVED")
            obj.title = title
            obj.price_cents = price_cents
            obj.on_hand = on_hand
            s.merge(obj)
            s.commit()
            return _book_dict(s.get(Book, book_id))

    def count(self) -> int:
        with get_session(self.bind) as s:
            return s.scalar(select(func.count()).select_from(Book)) or 0

    def low_stock(self, threshold: int, limit: int) -> list[dict]:
        """Books whose available quantity is at or below ``threshold``.

        Ordered by available quantity ascending, at most ``limit`` rows.
        """
        available = Book.on_hand - Book.reserved
        with get_session(self.bind) as s:
            rows = s.scalars(
                select(Book).where(available <= threshold).order_by(available.asc(), Book.book_id).limit(limit)
            ).all()
            return [_book_dict(r) for r in rows]

    def reserve(self, book_id: str, quantity: int, token: str | None = None) -> str:
        """Hold ``quantity`` units of a book and return the reservation token.

        The availability check and the increment of ``reserved`` happen in
        one UPDATE. When ``token`` is supplied and already exists the call
        returns it without reserving again, so callers may retry safely.

        Raises:
            UnknownBook: If the book has no stock row.
            InsufficientStock: If available stock is below ``quantity``.
        """
        token = token or str(uuid.uuid4())
        with get_session(self.bind) as s:
            if s.get(Reservation, token) is not None:
                return token
            res = s.execute(
                update(Book)
                .where(Book.book_id == book_id, Book.on_hand - Book.reserved >= quantity)
                .values(reserved=Book.reserved + quantity)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                s.rollback()
                book = s.get(Book, book_id)
                if book is None:
                    raise UnknownBook(book_id)
                raise InsufficientStock(book_id, book.title, quantity, book.available)
            s.add(Reservation(token=token, book_id=book_id, quantity=quantity, state=HELD))
            try:
                s.commit()
            except IntegrityError:
                # Same token inserted concurrently: that request owns the hold.
                s.rollback()
            return token

    def commit(self, token: str) -> bool:
        """Permanently remove reserved units from stock.

        Returns:
            bool: True when applied, False when already committed.
        """
        return self._settle(token, COMMITTED)

    def release(self, token: str) -> bool:
        """Return reserved units to available stock.

        Returns:
            bool: True when applied, False when already released.
        """
        return self._settle(token, RELEASED)

    def restock(self, token: str) -> bool:
        """Put committed units back on hand (cancellation before shipment).

        Returns:
            bool: True when applied, False when already restocked.
        """
        return self._settle(token, RESTOCKED)

    def reservation(self, token: str) -> Optional[dict]:
        with get_session(self.bind) as s:
            rec = s.get(Reservation, token)
            return _reservation_dict(rec) if rec else None

    def _settle(self, token: str, target: str) -> bool:
        source, on_hand_sign, reserved_sign = _SETTLE_RULES[target]
        with get_session(self.bind) as s:
            res = s.execute(
                update(Reservation)
                .where(Reservation.token == token, Reservation.state == source)
                .values(state=target, updated_at=datetime.now(timezone.utc))
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                s.rollback()
                rec = s.get(Reservation, token)
                if rec is None:
                    raise UnknownReservation(token)
                if rec.state == target:
                    return False
                raise ReservationStateError(token, rec.state, target)

            rec = s.get(Reservation, token)
            s.execute(
                update(Book)
                .where(Book.book_id == rec.book_id)
                .values(
                    on_hand=Book.on_hand + on_hand_sign * rec.quantity,
                    reserved=Book.reserved + reserved_sign * rec.quantity,
                )
                .execution_options(synchronize_session=False)
            )
            s.commit()
            return True


def _book_dict(obj: Book) -> dict:
    return {
        "book_id": obj.book_id,
        "title": obj.title,
        "price_cents": obj.price_cents,
        "on_hand": obj.on_hand,
        "reserved": obj.reserved,
        "available": obj.available,
    }


def _reservation_dict(rec: Reservation) -> dict:
    return {
        "token": rec.token,
        "book_id": rec.book_id,
        "quantity": rec.quantity,
        "state": rec.state,
    }
