"""Read-only analytics for the admin dashboard.

Aggregates are computed from the order tables and the inventory ledger on
every request; nothing is cached, and figures may trail in-flight
transitions slightly.
"""

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP

from django.db.models import Count, Q, Sum

from apps.orders.domain import PAID_STATUSES, InventoryPort, cents_to_amount
from apps.orders.models import CustomerModel, OrderModel

logger = logging.getLogger("dashboard")

COMPARISON_WINDOW = timedelta(days=30)
NEW_CUSTOMER_WINDOW = timedelta(days=7)


def percent_change(current, previous) -> float:
    """Period-over-period change in percent, rounded to 2 places.

    A previous value of 0 is replaced by 1 before dividing, so growth from
    nothing reads as ``(current - 1) * 100`` rather than being undefined.
    """
    previous = Decimal(previous) or Decimal(1)
    change = (Decimal(current) - previous) / previous * 100
    return float(change.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def _stat(value, change=0.0) -> dict:
    return {"value": value, "change": change, "trend": "up" if change >= 0 else "down"}


def _display_name(customer: CustomerModel | None, fallback: str) -> str:
    if customer is None:
        return fallback
    return customer.name or customer.email or customer.id


class DashboardAggregator:
    """Compute dashboard statistics, recent orders and the activity feed.

    Args:
        inventory: Inventory port used for catalog size and low-stock alerts.
        low_stock_threshold: Available quantity at or below which a book
            counts as low in stock.
        clock: Callable returning the current aware datetime.
    """

    def __init__(self, inventory: InventoryPort, low_stock_threshold: int = 10, clock=None):
        self.inventory = inventory
        self.low_stock_threshold = low_stock_threshold
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def stats(self, now: datetime | None = None) -> dict:
        now = now or self.clock()
        cutoff = now - COMPARISON_WINDOW
        paid = Q(status__in=[s.value for s in PAID_STATUSES])

        totals = OrderModel.objects.aggregate(
            revenue=Sum("total_cents", filter=paid),
            previous_revenue=Sum("total_cents", filter=paid & Q(created_at__lt=cutoff)),
            orders=Count("id"),
            previous_orders=Count("id", filter=Q(created_at__lt=cutoff)),
            customers=Count("customer_id", distinct=True),
        )
        revenue = cents_to_amount(totals["revenue"] or 0)
        previous_revenue = cents_to_amount(totals["previous_revenue"] or 0)

        return {
            "totalRevenue": _stat(revenue, percent_change(revenue, previous_revenue)),
            "booksInCatalog": _stat(self.inventory.count_books()),
            "totalOrders": _stat(totals["orders"], percent_change(totals["orders"], totals["previous_orders"])),
            "activeCustomers": _stat(totals["customers"]),
        }

    def recent_orders(self, limit: int = 10) -> list[dict]:
        orders = list(OrderModel.objects.order_by("-created_at")[:limit])
        customers = CustomerModel.objects.in_bulk({o.customer_id for o in orders})
        rows = []
        for o in orders:
            customer = customers.get(o.customer_id)
            rows.append(
                {
                    "id": o.order_number,
                    "customer": _display_name(customer, o.customer_id),
                    "customerEmail": customer.email if customer else "",
                    "amount": cents_to_amount(o.total_cents),
                    "status": o.status,
                    "createdAt": o.created_at,
                }
            )
        return rows

    def activities(self, limit: int = 10, now: datetime | None = None) -> list[dict]:
        """Merged feed of low-stock alerts, new customers and recent orders, newest first."""
        now = now or self.clock()
        feed = []

        low = self.inventory.low_stock(self.low_stock_threshold, 5)
        if low:
            feed.append(
                {
                    "type": "inventory_alert",
                    "title": "Inventory Alert",
                    "description": f"{len(low)} books are low in stock",
                    "timestamp": now,
                    "severity": "critical",
                    "books": [{"bookId": s.book_id, "title": s.title, "available": s.available} for s in low],
                }
            )

        for c in CustomerModel.objects.filter(created_at__gte=now - NEW_CUSTOMER_WINDOW).order_by("-created_at")[:3]:
            feed.append(
                {
                    "type": "new_user",
                    "title": "New Customer",
                    "description": f"{_display_name(c, c.id)} joined BookStore",
                    "timestamp": c.created_at,
                    "severity": "info",
                }
            )

        orders = list(OrderModel.objects.order_by("-created_at")[:3])
        customers = CustomerModel.objects.in_bulk({o.customer_id for o in orders})
        for o in orders:
            feed.append(
                {
                    "type": "new_order",
                    "title": "New Order",
                    "description": f"Order {o.order_number} placed by {_display_name(customers.get(o.customer_id), o.customer_id)}",
                    "timestamp": o.created_at,
                    "severity": "info",
                }
            )

        feed.sort(key=lambda a: a["timestamp"], reverse=True)
        logger.debug("activity feed built", extra={"items": len(feed), "low_stock": len(low)})
        return feed[:limit]
