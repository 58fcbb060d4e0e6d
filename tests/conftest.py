"""Pytest fixtures for orderflow tests."""

import tempfile
from pathlib import Path

import pytest

from orderflow.errors import InsufficientStockError, ProductNotFoundError, StaleOrderError
from orderflow.models import Order, OrderItem, OrderStatus, Product


class MemoryOrderStore:
    """OrderStore kept in a dict of serialized orders; logs calls to a shared list.

    Saves are version-checked the same way JsonOrderStore checks them.
    """

    def __init__(self, calls: list | None = None):
        self.calls = calls if calls is not None else []
        self._records: dict[str, dict] = {}
        self._seq = 0

    def put(self, order: Order) -> Order:
        """Seed an order without recording a save."""
        if not order.order_id:
            order.order_id = self.next_id()
        self._records[order.order_id] = order.to_dict()
        return order

    def next_id(self) -> str:
        self._seq += 1
        return f"O{self._seq}"

    def save(self, order: Order) -> Order:
        stored = self._records.get(order.order_id or "")
        if stored is not None and stored.get("version", 0) != order.version:
            raise StaleOrderError(order.order_id, order.version, stored.get("version", 0))
        order.version += 1
        self.put(order)
        self.calls.append(("save", order.order_id))
        return order

    def find_by_id(self, order_id: str) -> Order | None:
        self.calls.append(("find_by_id", order_id))
        record = self._records.get(order_id)
        return Order.from_dict(record) if record else None

    def find_all(self) -> list[Order]:
        return [Order.from_dict(r) for r in self._records.values()]

    def find_by_user_id(self, user_id: str) -> list[Order]:
        return [Order.from_dict(r) for r in self._records.values() if r["user_id"] == user_id]

    def saves(self) -> list[str]:
        return [c[1] for c in self.calls if c[0] == "save"]


class RecordingInventory:
    """Catalog over a dict of stock counts; logs calls to a shared list.

    Products are named and priced the way make_item() names and prices them.
    """

    def __init__(self, stock: dict[str, int], calls: list | None = None):
        self.stock = dict(stock)
        self.calls = calls if calls is not None else []

    def _count(self, product_id: str) -> int:
        if product_id not in self.stock:
            raise ProductNotFoundError(product_id)
        return self.stock[product_id]

    def has_stock(self, product_id: str, quantity: int) -> bool:
        self.calls.append(("has_stock", product_id, quantity))
        return self._count(product_id) >= quantity

    def decrease_stock(self, product_id: str, quantity: int) -> None:
        self.calls.append(("decrease_stock", product_id, quantity))
        available = self._count(product_id)
        if available < quantity:
            raise InsufficientStockError(product_id, quantity, available)
        self.stock[product_id] = available - quantity

    def increase_stock(self, product_id: str, quantity: int) -> None:
        self.calls.append(("increase_stock", product_id, quantity))
        self.stock[product_id] = self._count(product_id) + quantity

    def get_product(self, product_id: str) -> Product:
        return Product(product_id, f"Product {product_id}", 1000, self._count(product_id))

    def remove_product(self, product_id: str) -> Product:
        product = self.get_product(product_id)
        self.calls.append(("remove_product", product_id))
        del self.stock[product_id]
        return product

    def mutations(self) -> list[tuple]:
        return [c for c in self.calls if c[0] in ("decrease_stock", "increase_stock")]


def make_item(product_id: str, unit_price: int = 1000, quantity: int = 1) -> OrderItem:
    return OrderItem(product_id, f"Product {product_id}", unit_price, quantity)


def advance(order: Order, *statuses: OrderStatus) -> Order:
    """Walk an order through the given statuses."""
    for status in statuses:
        order.change_status(status)
    return order


@pytest.fixture
def temp_dir():
    """Create a temporary directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def calls():
    """Shared call log for the store and inventory fakes."""
    return []


@pytest.fixture
def order_store(calls):
    return MemoryOrderStore(calls)


@pytest.fixture
def inventory(calls):
    return RecordingInventory({"P1": 5, "P2": 10, "P3": 0}, calls)
