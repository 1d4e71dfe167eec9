"""Pydantic schemas for orders.

This module exposes the request validation schemas used by the orders and
payments API, and the read DTOs rendered in responses.
"""

import re
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .domain import Order, OrderStatus, cents_to_amount


BOOK_ID_RE = re.compile(r"^[A-Za-z0-9_.:-]{1,64}$")


class CartItemIn(BaseModel):
    """Input schema for a single cart line.

    Attributes:
        book_id: Catalog identifier (letters, digits, ``_ . : -``).
        quantity: Positive integer indicating units requested.
    """

    model_config = ConfigDict(populate_by_name=True)

    book_id: str = Field(min_length=1, max_length=64, alias="bookId")
    quantity: int = Field(gt=0, le=1000)

    @field_validator("book_id")
    @classmethod
    def validate_book_id(cls, v: str) -> str:
        if not BOOK_ID_RE.match(v):
            raise ValueError("Invalid book id format")
        return v


class CheckoutDTO(BaseModel):
    """Schema for checking out a cart.

    An empty ``items`` list is accepted here and rejected by the service
    with ``EMPTY_CART``.
    """

    items: list[CartItemIn] = Field(max_length=100)


class ConfirmPaymentDTO(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(min_length=1, max_length=64, alias="orderId")
    payment_intent_id: str = Field(min_length=1, max_length=255, alias="paymentIntentId")


class CancelOrderDTO(BaseModel):
    reason: str = Field(default="customer_request", min_length=1, max_length=64)


class OrderLineReadDTO(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    book_id: str = Field(serialization_alias="bookId")
    title: str
    quantity: int
    unit_price: Decimal = Field(serialization_alias="unitPrice")
    subtotal: Decimal


class OrderReadDTO(BaseModel):
    """Read model for an order; amounts are fixed-point decimals."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    order_number: str = Field(serialization_alias="orderNumber")
    customer_id: str = Field(serialization_alias="customerId")
    status: OrderStatus
    total_amount: Decimal = Field(serialization_alias="totalAmount")
    currency: str
    payment_intent_id: Optional[str] = Field(default=None, serialization_alias="paymentIntentId")
    cancel_reason: Optional[str] = Field(default=None, serialization_alias="cancelReason")
    items: list[OrderLineReadDTO]
    created_at: Optional[datetime] = Field(default=None, serialization_alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, serialization_alias="updatedAt")

    @classmethod
    def from_order(cls, order: Order) -> "OrderReadDTO":
        return cls(
            id=str(order.id),
            order_number=order.order_number,
            customer_id=order.customer_id,
            status=order.status,
            total_amount=order.total_amount,
            currency=order.currency,
            payment_intent_id=order.payment_intent_id,
            cancel_reason=order.cancel_reason,
            items=[
                OrderLineReadDTO(
                    book_id=ln.book_id,
                    title=ln.title,
                    quantity=ln.quantity,
                    unit_price=cents_to_amount(ln.unit_price_cents),
                    subtotal=cents_to_amount(ln.subtotal_cents),
                )
                for ln in order.lines
            ],
            created_at=order.created_at,
            updated_at=order.updated_at,
        )

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)
