"""Aggregate sales and order statistics."""

from collections import Counter
from datetime import date

from .errors import ValidationError
from .models import Order, OrderStatus
from .ports import OrderStore

# Orders in these statuses count as sales
SALES_STATUSES = frozenset({OrderStatus.CONFIRMED, OrderStatus.SHIPPING, OrderStatus.DELIVERED})


def _order_day(order: Order) -> str:
    # order_date is an ISO 8601 UTC timestamp; its first 10 chars are the date
    return order.order_date[:10]


class ReportService:
    """Read-only reports over the order store."""

    def __init__(self, order_store: OrderStore):
        self.orders = order_store

    def _sales_orders(self) -> list[Order]:
        return [o for o in self.orders.find_all() if o.status in SALES_STATUSES]

    def sales_by_date(self, start: date, end: date) -> int:
        """Total price of sales orders placed between start and end (inclusive)."""
        if start > end:
            raise ValidationError("date range", f"start {start} is after end {end}")
        lo, hi = start.isoformat(), end.isoformat()
        return sum(o.total_price for o in self._sales_orders() if lo <= _order_day(o) <= hi)

    def top_products(self, n: int) -> dict[str, int]:
        """
        Best-selling products by quantity.

        Returns:
            Mapping of product ID to units sold, highest first, at most n entries.
            Ties are broken by product ID.
        """
        if n <= 0:
            return {}
        sold: Counter[str] = Counter()
        for order in self._sales_orders():
            for item in order.items:
                sold[item.product_id] += item.quantity
        ranked = sorted(sold.items(), key=lambda kv: (-kv[1], kv[0]))
        return dict(ranked[:n])

    def order_count_by_status(self) -> dict[OrderStatus, int]:
        """Number of orders in each status (every status is present)."""
        counts = {status: 0 for status in OrderStatus}
        for order in self.orders.find_all():
            counts[order.status] += 1
        return counts
