"""Protocols for the storage and inventory collaborators of OrderService."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from .models import Cart, Order, Product


class OrderStore(Protocol):
    """Persistence for orders.

    Implementations must return independent Order objects from every read,
    so that a caller mutating a loaded order changes nothing until save().
    """

    def find_by_id(self, order_id: str) -> Order | None:
        """Return the order with this ID, or None if there is none."""
        ...

    def save(self, order: Order) -> Order:
        """Insert or replace an order.

        If order.order_id is unset, a new ID from next_id() is assigned to
        the passed object before it is written. Implementations that track
        order.version bump it on success.

        Raises:
            StaleOrderError: If the stored copy was saved by someone else
                after this order was loaded. Nothing is written.

        Returns:
            The saved order (the same object that was passed in).
        """
        ...

    def find_all(self) -> list[Order]:
        """Return every stored order, oldest first."""
        ...

    def find_by_user_id(self, user_id: str) -> list[Order]:
        """Return the orders placed by user_id, oldest first."""
        ...

    def next_id(self) -> str:
        """Reserve and return a fresh order ID."""
        ...


class InventoryPort(Protocol):
    """Stock operations consumed by the order lifecycle."""

    def has_stock(self, product_id: str, quantity: int) -> bool:
        """Whether at least quantity units of product_id are available.

        Raises:
            ProductNotFoundError: If the product is unknown.
        """
        ...

    def decrease_stock(self, product_id: str, quantity: int) -> None:
        """Atomically remove quantity units.

        Raises:
            InsufficientStockError: If fewer than quantity units are available.
                Stock is left unchanged.
            ProductNotFoundError: If the product is unknown.
        """
        ...

    def increase_stock(self, product_id: str, quantity: int) -> None:
        """Return quantity units to stock.

        Raises:
            ProductNotFoundError: If the product is unknown.
        """
        ...


class CatalogPort(InventoryPort, Protocol):
    """Inventory plus the catalog lookups used by carts and product removal."""

    def get_product(self, product_id: str) -> Product:
        """Raises ProductNotFoundError if the product is unknown."""
        ...

    def remove_product(self, product_id: str) -> Product:
        """Raises ProductNotFoundError if the product is unknown."""
        ...


class CartStore(Protocol):
    """Persistence for shopping carts, one per user."""

    def find_by_user_id(self, user_id: str) -> Cart | None:
        ...

    def save(self, cart: Cart) -> Cart:
        ...

    def delete_by_user_id(self, user_id: str) -> bool:
        """Drop the user's cart. Returns whether there was one."""
        ...
