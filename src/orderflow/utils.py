"""Utility functions for orderflow."""

from typing import Iterable

from .errors import ValidationError
from .inventory_store import JsonInventoryStore
from .models import Cart, Order, OrderItem, Product


def parse_item_spec(spec: str) -> tuple[str, int]:
    """
    Parse an item specification into (product_id, quantity).

    Formats:
    - "P1" (quantity 1)
    - "P1:3"

    Raises:
        ValidationError: If the spec is malformed or the quantity isn't a positive integer.
    """
    product_id, sep, qty_str = spec.strip().partition(":")
    product_id = product_id.strip()
    if not product_id:
        raise ValidationError("item", f"missing product ID in '{spec}'")
    if not sep:
        return product_id, 1

    try:
        quantity = int(qty_str)
    except ValueError:
        raise ValidationError("item", f"quantity must be an integer in '{spec}'") from None
    if quantity <= 0:
        raise ValidationError("item", f"quantity must be positive in '{spec}'")
    return product_id, quantity


def items_from_catalog(
    requests: Iterable[tuple[str, int]], inventory: JsonInventoryStore
) -> list[OrderItem]:
    """
    Snapshot catalog products into order lines.

    Raises:
        ProductNotFoundError: If a product ID isn't in the catalog.
    """
    return [
        OrderItem.from_product(inventory.get_product(product_id), quantity)
        for product_id, quantity in requests
    ]


def format_amount(amount: int) -> str:
    return f"{amount:,}"


def format_item(item: OrderItem) -> str:
    return (
        f"{item.product_name} ({item.product_id}) x {item.quantity} "
        f"@ {format_amount(item.unit_price)} = {format_amount(item.line_total)}"
    )


def format_order(order: Order, verbose: bool = False) -> str:
    """Format an order for display."""
    lines = [
        f"{order.order_id}  {order.status.label:<10} {order.user_id:<12} "
        f"total {format_amount(order.total_price):>12}  {order.order_date}"
    ]
    for item in order.items:
        lines.append(f"  - {format_item(item)}")
    if verbose and order.history:
        lines.append("  History:")
        for change in order.history:
            by = f" by {change.changed_by}" if change.changed_by else ""
            lines.append(
                f"    {change.changed_at}  {change.from_status.value} -> {change.to_status.value}{by}"
            )
    return "\n".join(lines)


def format_product(product: Product) -> str:
    return (
        f"{product.id:<10} {product.name:<30} price {format_amount(product.price):>10}  "
        f"stock {product.stock:>5}  {product.category.label}"
    )


def format_cart(cart: Cart) -> str:
    """Format a cart for display."""
    if cart.is_empty():
        return f"Cart of {cart.user_id} is empty."
    lines = [f"Cart of {cart.user_id} ({len(cart.items)} lines)"]
    for item in cart.items:
        lines.append(f"  - {format_item(item)}")
    lines.append(f"  Total: {format_amount(cart.total_price)}")
    return "\n".join(lines)
