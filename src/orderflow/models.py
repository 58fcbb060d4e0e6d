"""Data models for orderflow."""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable

from . import config
from .errors import (
    InvalidTransitionError,
    OrderNotModifiableError,
    ProductNotInOrderError,
    ValidationError,
)

# Global idempotency policy: whether a status may "transition" to itself.
# Read at call time, so tests and embedding code may flip it.
ALLOW_IDEMPOTENT_TRANSITIONS = config.ALLOW_IDEMPOTENT_TRANSITIONS


def _utc_now() -> str:
    """Return current UTC time as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _require_text(name: str, value: Any) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(name, "must be a non-empty string")


def _require_positive_int(name: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(name, f"must be a positive integer, got {value!r}")


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


class OrderStatus(str, Enum):
    """Lifecycle status of an order."""

    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    SHIPPING = "SHIPPING"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"

    @property
    def label(self) -> str:
        """Human-readable name for display."""
        return _STATUS_LABELS[self]

    @property
    def is_terminal(self) -> bool:
        return not _ALLOWED_TRANSITIONS[self]

    def allowed_next(self) -> frozenset["OrderStatus"]:
        """Statuses reachable from this one in a single step (excluding itself)."""
        return _ALLOWED_TRANSITIONS[self]

    def can_transition_to(self, next_status: "OrderStatus | None") -> bool:
        """
        Decide whether moving from this status to next_status is legal.

        Same-status moves are governed by ALLOW_IDEMPOTENT_TRANSITIONS and
        answer the same way for every status.
        """
        if next_status is None:
            return False
        if self is next_status:
            return ALLOW_IDEMPOTENT_TRANSITIONS
        return next_status in _ALLOWED_TRANSITIONS[self]


_STATUS_LABELS = {
    OrderStatus.PENDING: "Pending",
    OrderStatus.CONFIRMED: "Confirmed",
    OrderStatus.SHIPPING: "Shipping",
    OrderStatus.DELIVERED: "Delivered",
    OrderStatus.CANCELLED: "Cancelled",
}

_ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.SHIPPING, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPING: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


@dataclass(eq=False)
class OrderItem:
    """One line of an order, snapshotting the product at order time."""

    product_id: str  # identity; fixed after construction
    product_name: str
    unit_price: int  # > 0
    quantity: int = 1  # >= 1

    def __setattr__(self, name: str, value: Any) -> None:
        # Every assignment, including the generated __init__, is validated here.
        if name == "product_id":
            if "product_id" in self.__dict__:
                raise AttributeError("product_id cannot be changed once set")
            _require_text(name, value)
        elif name == "product_name":
            _require_text(name, value)
        elif name in ("unit_price", "quantity"):
            _require_positive_int(name, value)
        object.__setattr__(self, name, value)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, OrderItem):
            return NotImplemented
        return self.product_id == other.product_id

    def __hash__(self) -> int:
        return hash(self.product_id)

    @property
    def line_total(self) -> int:
        return self.unit_price * self.quantity

    def add_quantity(self, delta: int) -> None:
        _require_positive_int("delta", delta)
        self.quantity += delta

    def set_quantity(self, quantity: int) -> None:
        self.quantity = quantity

    def to_dict(self) -> dict[str, Any]:
        return {
            "product_id": self.product_id,
            "product_name": self.product_name,
            "unit_price": self.unit_price,
            "quantity": self.quantity,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OrderItem":
        return cls(
            product_id=data["product_id"],
            product_name=data["product_name"],
            unit_price=data["unit_price"],
            quantity=data.get("quantity", 1),
        )

    @classmethod
    def from_product(cls, product: "Product", quantity: int) -> "OrderItem":
        """Snapshot a catalog product into a new order line."""
        return cls(
            product_id=product.id,
            product_name=product.name,
            unit_price=product.price,
            quantity=quantity,
        )


@dataclass
class StatusChange:
    """One entry in an order's status history."""

    from_status: OrderStatus
    to_status: OrderStatus
    changed_at: str = field(default_factory=_utc_now)
    changed_by: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "from_status": self.from_status.value,
            "to_status": self.to_status.value,
            "changed_at": self.changed_at,
        }
        if self.changed_by is not None:
            result["changed_by"] = self.changed_by
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StatusChange":
        return cls(
            from_status=OrderStatus(data["from_status"]),
            to_status=OrderStatus(data["to_status"]),
            changed_at=data.get("changed_at", ""),
            changed_by=data.get("changed_by"),
        )


class Order:
    """
    An order placed by a user.

    The item list can only change while the order is PENDING, and
    total_price always equals the sum of the line totals. Callers get
    copies of the lines, never the internal list.
    """

    def __init__(
        self,
        user_id: str,
        items: Iterable[OrderItem] | None = None,
        order_id: str | None = None,
        order_date: str | None = None,
        status: OrderStatus | str = OrderStatus.PENDING,
        history: Iterable[StatusChange] | None = None,
        version: int = 0,
    ):
        _require_text("user_id", user_id)
        self.order_id = order_id or None  # assigned by the store on first save
        # Bumped by the store on every save; 0 means never saved
        self.version = version
        self._user_id = user_id
        self._items: list[OrderItem] = []
        for item in items or ():
            self._merge(item)
        self.order_date = order_date or _utc_now()
        self._status = OrderStatus(status) if status is not None else OrderStatus.PENDING
        self._history: list[StatusChange] = list(history or [])
        self._total_price = 0
        self._recalc_total()

    # --- read-only views ---

    @property
    def user_id(self) -> str:
        return self._user_id

    @property
    def status(self) -> OrderStatus:
        return self._status

    @property
    def total_price(self) -> int:
        return self._total_price

    @property
    def items(self) -> tuple[OrderItem, ...]:
        return tuple(replace(i) for i in self._items)

    @property
    def history(self) -> tuple[StatusChange, ...]:
        return tuple(self._history)

    def find_item(self, product_id: str) -> OrderItem | None:
        for item in self._items:
            if item.product_id == product_id:
                return replace(item)
        return None

    # --- internals ---

    def _require_modifiable(self) -> None:
        if self._status is not OrderStatus.PENDING:
            raise OrderNotModifiableError(self.order_id, self._status.value)

    def _recalc_total(self) -> None:
        self._total_price = sum(i.line_total for i in self._items)

    def _merge(self, item: OrderItem) -> None:
        if not isinstance(item, OrderItem):
            raise ValidationError("item", f"expected OrderItem, got {type(item).__name__}")
        for existing in self._items:
            if existing.product_id == item.product_id:
                existing.add_quantity(item.quantity)
                return
        self._items.append(replace(item))

    # --- item mutation (PENDING only) ---

    def add_item(self, item: OrderItem) -> None:
        """Add a line, merging quantities if the product is already present."""
        self._require_modifiable()
        self._merge(item)
        self._recalc_total()

    def remove_item_by_product_id(self, product_id: str) -> bool:
        """Remove the line for product_id. Returns whether a line was removed."""
        self._require_modifiable()
        before = len(self._items)
        self._items = [i for i in self._items if i.product_id != product_id]
        removed = len(self._items) != before
        if removed:
            self._recalc_total()
        return removed

    def update_item_quantity(self, product_id: str, new_qty: int) -> None:
        """
        Set the quantity of a line. A quantity of zero or less removes it.

        Raises:
            OrderNotModifiableError: If the order is not PENDING.
            ProductNotInOrderError: If no line matches a positive update.
        """
        self._require_modifiable()
        if new_qty <= 0:
            self.remove_item_by_product_id(product_id)
            return
        for item in self._items:
            if item.product_id == product_id:
                item.set_quantity(new_qty)
                self._recalc_total()
                return
        raise ProductNotInOrderError(self.order_id, product_id)

    # --- lifecycle ---

    def change_status(self, next_status: OrderStatus | None, changed_by: str | None = None) -> None:
        """
        Move the order to next_status.

        A same-status request is a silent no-op when the idempotency policy
        allows it and an InvalidTransitionError otherwise.
        """
        if next_status is None:
            raise ValidationError("status", "must not be None")
        next_status = OrderStatus(next_status)

        if next_status is self._status:
            if self._status.can_transition_to(next_status):
                return
            raise InvalidTransitionError(self._status.value, next_status.value)

        if not self._status.can_transition_to(next_status):
            raise InvalidTransitionError(self._status.value, next_status.value)

        self._history.append(
            StatusChange(from_status=self._status, to_status=next_status, changed_by=changed_by)
        )
        self._status = next_status

    # --- identity & serialization ---

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Order):
            return NotImplemented
        if self.order_id is None or other.order_id is None:
            return self is other
        return self.order_id == other.order_id

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return (
            f"Order(id={self.order_id!r}, user={self._user_id!r}, "
            f"total={self._total_price}, status={self._status.value}, v{self.version})"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "user_id": self._user_id,
            "items": [i.to_dict() for i in self._items],
            "total_price": self._total_price,
            "order_date": self.order_date,
            "status": self._status.value,
            "history": [h.to_dict() for h in self._history],
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Order":
        # total_price is derived; the stored value is ignored
        return cls(
            user_id=data["user_id"],
            items=[OrderItem.from_dict(i) for i in data.get("items", [])],
            order_id=data.get("order_id"),
            order_date=data.get("order_date"),
            status=data.get("status", OrderStatus.PENDING.value),
            history=[StatusChange.from_dict(h) for h in data.get("history", [])],
            version=data.get("version", 0),
        )


class ProductCategory(str, Enum):
    """Catalog category of a product."""

    ELECTRONICS = "ELECTRONICS"
    CLOTHING = "CLOTHING"
    FOOD = "FOOD"
    BOOKS = "BOOKS"
    OTHER = "OTHER"

    @property
    def label(self) -> str:
        return self.value.capitalize()

    @classmethod
    def parse(cls, value: "ProductCategory | str") -> "ProductCategory":
        """Look up a category by value, case-insensitively."""
        try:
            return cls(value.upper() if isinstance(value, str) else value)
        except ValueError:
            names = ", ".join(c.value for c in cls)
            raise ValidationError("category", f"{value!r} is not one of {names}") from None


@dataclass
class Product:
    """A catalog entry with its current stock level."""

    id: str
    name: str
    price: int
    stock: int = 0
    category: ProductCategory = ProductCategory.OTHER
    description: str | None = None
    created_at: str = field(default_factory=_utc_now)
    updated_at: str = field(default_factory=_utc_now)

    def __post_init__(self) -> None:
        _require_text("product id", self.id)
        _require_text("product name", self.name)
        _require_positive_int("price", self.price)
        if isinstance(self.stock, bool) or not isinstance(self.stock, int) or self.stock < 0:
            raise ValidationError("stock", f"must be a non-negative integer, got {self.stock!r}")
        self.category = ProductCategory.parse(self.category)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "price": self.price,
            "stock": self.stock,
            "category": self.category.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        if self.description is not None:
            result["description"] = self.description
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Product":
        return cls(
            id=data["id"],
            name=data["name"],
            price=data["price"],
            stock=data.get("stock", 0),
            category=data.get("category", ProductCategory.OTHER.value),
            description=data.get("description"),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )


class Cart:
    """
    A user's shopping cart: product lines waiting to become an order.

    Lines are OrderItem snapshots merged by product ID, like an order's,
    but a cart has no status and can always be changed. Prices are
    refreshed from the catalog when the cart is turned into an order.
    """

    def __init__(
        self,
        user_id: str,
        items: Iterable[OrderItem] | None = None,
        updated_at: str | None = None,
    ):
        _require_text("user_id", user_id)
        self._user_id = user_id
        self._items: dict[str, OrderItem] = {}
        for item in items or ():
            self.add_item(item)
        self.updated_at = updated_at or _utc_now()

    @property
    def user_id(self) -> str:
        return self._user_id

    @property
    def items(self) -> tuple[OrderItem, ...]:
        return tuple(replace(i) for i in self._items.values())

    @property
    def total_price(self) -> int:
        return sum(i.line_total for i in self._items.values())

    def is_empty(self) -> bool:
        return not self._items

    def add_item(self, item: OrderItem) -> None:
        """Add a line, merging quantities if the product is already in the cart."""
        if not isinstance(item, OrderItem):
            raise ValidationError("item", f"expected OrderItem, got {type(item).__name__}")
        existing = self._items.get(item.product_id)
        if existing is not None:
            existing.add_quantity(item.quantity)
        else:
            self._items[item.product_id] = replace(item)
        self.updated_at = _utc_now()

    def remove_product(self, product_id: str) -> bool:
        removed = self._items.pop(product_id, None) is not None
        if removed:
            self.updated_at = _utc_now()
        return removed

    def set_quantity(self, product_id: str, quantity: int) -> None:
        """Set a line's quantity; zero or less removes it."""
        if quantity <= 0:
            self.remove_product(product_id)
            return
        item = self._items.get(product_id)
        if item is None:
            raise ProductNotInOrderError(None, product_id)
        item.set_quantity(quantity)
        self.updated_at = _utc_now()

    def clear(self) -> None:
        self._items.clear()
        self.updated_at = _utc_now()

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self._user_id,
            "items": [i.to_dict() for i in self._items.values()],
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Cart":
        return cls(
            user_id=data["user_id"],
            items=[OrderItem.from_dict(i) for i in data.get("items", [])],
            updated_at=data.get("updated_at"),
        )
