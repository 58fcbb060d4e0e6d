"""Order lifecycle orchestration: authorization, status workflow and stock side effects."""

import logging
from pathlib import Path
from typing import Iterable

from . import config
from .errors import (
    AuthorizationError,
    InsufficientStockError,
    OrderNotFoundError,
    ProductInUseError,
    StateError,
    ValidationError,
)
from .locks import KeyedLocks, cart_key, order_key, product_key
from .models import Cart, Order, OrderItem, OrderStatus, Product, Role
from .ports import CartStore, CatalogPort, InventoryPort, OrderStore

logger = logging.getLogger(__name__)


def coerce_role(role: Role | str, caller_id: str | None = None) -> Role:
    """Turn a role value into a Role, rejecting unknown roles as unauthorized."""
    try:
        return Role(role)
    except ValueError:
        raise AuthorizationError(caller_id, f"unknown role {role!r}") from None


def authorize_order_access(order: Order, caller_id: str | None, role: Role | str) -> None:
    """
    Allow administrators everywhere and users only on their own orders.

    Raises:
        AuthorizationError: If a USER caller doesn't own the order.
    """
    if coerce_role(role, caller_id) is Role.ADMIN:
        return
    if not caller_id or order.user_id != caller_id:
        logger.warning("Denied %s access to order %s", caller_id, order.order_id)
        raise AuthorizationError(caller_id, f"order {order.order_id} belongs to another user")


def require_admin(caller_id: str | None, role: Role | str) -> None:
    """
    Raises:
        AuthorizationError: If the caller is not an administrator.
    """
    if coerce_role(role, caller_id) is not Role.ADMIN:
        logger.warning("Denied admin-only operation to %s", caller_id)
        raise AuthorizationError(caller_id, "administrator role required")


class OrderService:
    """
    Runs the order workflows on behalf of an explicit caller.

    Every mutating operation holds the order's lock for its whole
    load-check-mutate-save sequence. Operations that touch stock also hold
    the locks of every product on the order, so a confirm and a cancel
    sharing a product can't interleave. Given a lock_dir, the locks are
    shared with other processes using the same directory. Saves are also
    version-checked by the store, and a stale save undoes the stock change
    it was about to commit.
    """

    def __init__(
        self,
        order_store: OrderStore,
        inventory: InventoryPort,
        lock_timeout: float | None = None,
        check_stock_on_place: bool | None = None,
        user_cancel_pending_only: bool | None = None,
        lock_dir: Path | None = None,
    ):
        """
        Initialize OrderService.

        Args:
            order_store: Where orders are loaded from and saved to.
            inventory: Stock operations used by confirm and cancel.
            lock_timeout: Seconds to wait for a lock (default: config.LOCK_TIMEOUT).
            check_stock_on_place: Also verify stock when an order is placed
                (default: config.CHECK_STOCK_ON_PLACE).
            user_cancel_pending_only: Only let USER callers cancel PENDING orders
                (default: config.USER_CANCEL_PENDING_ONLY).
            lock_dir: Directory for cross-process lock files. Without it,
                locking only covers this process.
        """
        self.orders = order_store
        self.inventory = inventory
        self.check_stock_on_place = (
            config.CHECK_STOCK_ON_PLACE if check_stock_on_place is None else check_stock_on_place
        )
        self.user_cancel_pending_only = (
            config.USER_CANCEL_PENDING_ONLY
            if user_cancel_pending_only is None
            else user_cancel_pending_only
        )
        self.locks = KeyedLocks(
            config.LOCK_TIMEOUT if lock_timeout is None else lock_timeout, lock_dir
        )

    # --- helpers ---

    def _load(self, order_id: str) -> Order:
        order = self.orders.find_by_id(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    def _load_authorized(self, order_id: str, caller_id: str | None, role: Role | str) -> Order:
        order = self._load(order_id)
        authorize_order_access(order, caller_id, role)
        return order

    def _restore_stock(self, lines: Iterable[OrderItem], order_id: str | None) -> None:
        for item in lines:
            try:
                self.inventory.increase_stock(item.product_id, item.quantity)
            except Exception:
                logger.exception(
                    "Could not restore %d x %s for order %s", item.quantity, item.product_id, order_id
                )

    def _take_back_stock(self, lines: Iterable[OrderItem], order_id: str | None) -> None:
        for item in lines:
            try:
                self.inventory.decrease_stock(item.product_id, item.quantity)
            except Exception:
                logger.exception(
                    "Could not take back %d x %s for order %s", item.quantity, item.product_id, order_id
                )

    # --- creation ---

    def place_order(
        self,
        user_id: str,
        items: Iterable[OrderItem],
        role: Role | str,
        caller_id: str | None = None,
    ) -> Order:
        """
        Create and save a PENDING order. Lines for the same product are merged.

        Args:
            user_id: Owner of the new order.
            items: Order lines; must not be empty.
            role: Role of the caller.
            caller_id: Who is placing the order. When given, a USER caller
                may only place orders for themselves.

        Raises:
            ValidationError: If items is empty or user_id is blank.
            AuthorizationError: If a USER places an order for someone else.
            InsufficientStockError: If placement stock checks are enabled and
                a line can't be covered. Nothing is saved.
        """
        role = coerce_role(role, caller_id or user_id)
        items = list(items or [])
        if not items:
            raise ValidationError("items", "items is empty")
        if role is Role.USER and caller_id is not None and caller_id != user_id:
            raise AuthorizationError(caller_id, "users can only place orders for themselves")

        order = Order(user_id=user_id, items=items)

        with self.locks.hold(*(product_key(i.product_id) for i in order.items)):
            if self.check_stock_on_place:
                for item in order.items:
                    if not self.inventory.has_stock(item.product_id, item.quantity):
                        logger.warning(
                            "Rejected order for %s: not enough %s", user_id, item.product_id
                        )
                        raise InsufficientStockError(item.product_id, item.quantity)

            self.orders.save(order)
        logger.info(
            "Placed order %s for %s (%d lines, total %d)",
            order.order_id, user_id, len(order.items), order.total_price,
        )
        return order

    # --- lifecycle ---

    def confirm_order(self, order_id: str, caller_id: str | None, role: Role | str) -> Order:
        """
        Reserve stock for every line and move the order to CONFIRMED.

        All lines are checked before any stock is touched. If any line is
        short, nothing is decremented and the order is not saved.

        Raises:
            OrderNotFoundError, AuthorizationError
            StateError: If the order is not PENDING.
            ValidationError: If the order has no lines.
            InsufficientStockError: Naming the first line that is short.
        """
        with self.locks.hold(order_key(order_id)):
            order = self._load_authorized(order_id, caller_id, role)
            if order.status is not OrderStatus.PENDING:
                raise StateError(
                    f"Order {order_id} cannot be confirmed: status is {order.status.value}",
                    status=order.status.value,
                )
            lines = order.items
            if not lines:
                raise ValidationError("items", f"order {order_id} has no items to confirm")

            with self.locks.hold(*(product_key(i.product_id) for i in lines)):
                for item in lines:
                    if not self.inventory.has_stock(item.product_id, item.quantity):
                        logger.warning(
                            "Cannot confirm order %s: not enough %s for %d",
                            order_id, item.product_id, item.quantity,
                        )
                        raise InsufficientStockError(item.product_id, item.quantity)

                decreased: list[OrderItem] = []
                try:
                    for item in lines:
                        self.inventory.decrease_stock(item.product_id, item.quantity)
                        decreased.append(item)
                    order.change_status(OrderStatus.CONFIRMED, changed_by=caller_id)
                    self.orders.save(order)
                except Exception:
                    logger.warning(
                        "Confirm of order %s failed; restoring %d line(s)", order_id, len(decreased)
                    )
                    self._restore_stock(decreased, order_id)
                    raise

        logger.info("Confirmed order %s", order_id)
        return order

    def _advance(
        self,
        order_id: str,
        caller_id: str | None,
        role: Role | str,
        required: OrderStatus,
        target: OrderStatus,
        verb: str,
    ) -> Order:
        with self.locks.hold(order_key(order_id)):
            order = self._load_authorized(order_id, caller_id, role)
            if order.status is not required:
                raise StateError(
                    f"Order {order_id} cannot be {verb}: status is {order.status.value}",
                    status=order.status.value,
                )
            order.change_status(target, changed_by=caller_id)
            self.orders.save(order)
        logger.info("Order %s is now %s", order_id, target.value)
        return order

    def ship_order(self, order_id: str, caller_id: str | None, role: Role | str) -> Order:
        """Move a CONFIRMED order to SHIPPING."""
        return self._advance(
            order_id, caller_id, role, OrderStatus.CONFIRMED, OrderStatus.SHIPPING, "shipped"
        )

    def deliver_order(self, order_id: str, caller_id: str | None, role: Role | str) -> Order:
        """Move a SHIPPING order to DELIVERED."""
        return self._advance(
            order_id, caller_id, role, OrderStatus.SHIPPING, OrderStatus.DELIVERED, "delivered"
        )

    def cancel_order(self, order_id: str, caller_id: str | None, role: Role | str) -> Order:
        """
        Cancel a PENDING or CONFIRMED order.

        Cancelling a CONFIRMED order returns its reserved stock. A PENDING
        order never reserved anything, so no stock changes. An order that is
        already CANCELLED is rejected, which keeps a retried cancel from
        restoring stock twice.

        Raises:
            OrderNotFoundError, AuthorizationError
            StateError: If the order is SHIPPING, DELIVERED or CANCELLED.
        """
        with self.locks.hold(order_key(order_id)):
            order = self._load_authorized(order_id, caller_id, role)
            status = order.status
            if status not in (OrderStatus.PENDING, OrderStatus.CONFIRMED):
                raise StateError(
                    f"Order {order_id} is not cancellable: status is {status.value}",
                    status=status.value,
                )
            if (
                self.user_cancel_pending_only
                and coerce_role(role, caller_id) is Role.USER
                and status is not OrderStatus.PENDING
            ):
                raise StateError(
                    f"Order {order_id} can only be cancelled by its owner while PENDING",
                    status=status.value,
                )

            if status is OrderStatus.PENDING:
                order.change_status(OrderStatus.CANCELLED, changed_by=caller_id)
                self.orders.save(order)
                logger.info("Cancelled pending order %s", order_id)
                return order

            lines = order.items
            with self.locks.hold(*(product_key(i.product_id) for i in lines)):
                order.change_status(OrderStatus.CANCELLED, changed_by=caller_id)
                restored: list[OrderItem] = []
                try:
                    for item in lines:
                        self.inventory.increase_stock(item.product_id, item.quantity)
                        restored.append(item)
                    self.orders.save(order)
                except Exception:
                    logger.warning(
                        "Cancel of order %s failed; taking back %d line(s)", order_id, len(restored)
                    )
                    self._take_back_stock(restored, order_id)
                    raise

        logger.info("Cancelled confirmed order %s and restored stock", order_id)
        return order

    # --- item mutation ---

    def add_item(
        self, order_id: str, item: OrderItem, caller_id: str | None, role: Role | str
    ) -> Order:
        """Add a line to a PENDING order (merging with an existing line)."""
        with self.locks.hold(order_key(order_id)):
            order = self._load_authorized(order_id, caller_id, role)
            with self.locks.hold(product_key(item.product_id)):
                order.add_item(item)
                self.orders.save(order)
        return order

    def remove_item(
        self, order_id: str, product_id: str, caller_id: str | None, role: Role | str
    ) -> bool:
        """Remove a line from a PENDING order. Returns whether a line was removed."""
        with self.locks.hold(order_key(order_id)):
            order = self._load_authorized(order_id, caller_id, role)
            removed = order.remove_item_by_product_id(product_id)
            if removed:
                self.orders.save(order)
        return removed

    def update_item_qty(
        self,
        order_id: str,
        product_id: str,
        quantity: int,
        caller_id: str | None,
        role: Role | str,
    ) -> Order:
        """Set a line's quantity on a PENDING order; zero or less removes it."""
        with self.locks.hold(order_key(order_id)):
            order = self._load_authorized(order_id, caller_id, role)
            order.update_item_quantity(product_id, quantity)
            self.orders.save(order)
        return order

    # --- catalog ---

    def remove_product(
        self, product_id: str, caller_id: str | None, role: Role | str
    ) -> Product:
        """
        Remove a product from the catalog unless an open order still needs it.

        Holding the product's lock keeps new orders for it from being placed
        or extended while the open orders are scanned.

        Raises:
            AuthorizationError: If the caller is not an administrator.
            ProductInUseError: If a PENDING or CONFIRMED order has a line for it.
            ProductNotFoundError: If the product doesn't exist.
        """
        require_admin(caller_id, role)
        with self.locks.hold(product_key(product_id)):
            open_ids = [
                o.order_id
                for o in self.orders.find_all()
                if o.status in (OrderStatus.PENDING, OrderStatus.CONFIRMED)
                and o.find_item(product_id) is not None
            ]
            if open_ids:
                logger.warning(
                    "Refused to remove %s: %d open order(s) reference it", product_id, len(open_ids)
                )
                raise ProductInUseError(product_id, open_ids)
            removed = self.inventory.remove_product(product_id)
        logger.info("Removed product %s", product_id)
        return removed

    # --- queries ---

    def get_order(self, order_id: str, caller_id: str | None, role: Role | str) -> Order:
        return self._load_authorized(order_id, caller_id, role)

    def list_orders(self, caller_id: str | None, role: Role | str) -> list[Order]:
        """All orders for an administrator, otherwise only the caller's own."""
        if coerce_role(role, caller_id) is Role.ADMIN:
            return self.orders.find_all()
        if not caller_id:
            return []
        return self.orders.find_by_user_id(caller_id)


class CartService:
    """
    Shopping carts and checkout.

    Shares the order service's locks so a checkout and the order workflows
    exclude each other on the same products.
    """

    def __init__(self, cart_store: CartStore, catalog: CatalogPort, order_service: OrderService):
        self.carts = cart_store
        self.catalog = catalog
        self.order_service = order_service
        self.locks = order_service.locks

    def _authorize(self, user_id: str, caller_id: str | None, role: Role | str) -> None:
        if coerce_role(role, caller_id) is Role.ADMIN:
            return
        if not caller_id or caller_id != user_id:
            logger.warning("Denied %s access to the cart of %s", caller_id, user_id)
            raise AuthorizationError(caller_id, f"cart of {user_id} belongs to another user")

    def _load(self, user_id: str) -> Cart:
        return self.carts.find_by_user_id(user_id) or Cart(user_id=user_id)

    def get_cart(self, user_id: str, caller_id: str | None, role: Role | str) -> Cart:
        """Return the user's cart; an empty one if nothing was ever added."""
        self._authorize(user_id, caller_id, role)
        return self._load(user_id)

    def add_to_cart(
        self,
        user_id: str,
        product_id: str,
        quantity: int,
        caller_id: str | None,
        role: Role | str,
    ) -> Cart:
        """
        Add quantity units of a catalog product to the cart.

        Raises:
            ProductNotFoundError: If the product isn't in the catalog.
            ValidationError: If quantity is not a positive integer.
        """
        self._authorize(user_id, caller_id, role)
        item = OrderItem.from_product(self.catalog.get_product(product_id), quantity)
        with self.locks.hold(cart_key(user_id)):
            cart = self._load(user_id)
            cart.add_item(item)
            self.carts.save(cart)
        logger.debug("Added %d x %s to cart of %s", quantity, product_id, user_id)
        return cart

    def remove_from_cart(
        self, user_id: str, product_id: str, caller_id: str | None, role: Role | str
    ) -> bool:
        """Drop a product from the cart. Returns whether it was there."""
        self._authorize(user_id, caller_id, role)
        with self.locks.hold(cart_key(user_id)):
            cart = self._load(user_id)
            removed = cart.remove_product(product_id)
            if removed:
                self.carts.save(cart)
        return removed

    def update_cart_qty(
        self,
        user_id: str,
        product_id: str,
        quantity: int,
        caller_id: str | None,
        role: Role | str,
    ) -> Cart:
        """Set a cart line's quantity; zero or less removes it."""
        self._authorize(user_id, caller_id, role)
        with self.locks.hold(cart_key(user_id)):
            cart = self._load(user_id)
            cart.set_quantity(product_id, quantity)
            self.carts.save(cart)
        return cart

    def clear_cart(self, user_id: str, caller_id: str | None, role: Role | str) -> bool:
        self._authorize(user_id, caller_id, role)
        with self.locks.hold(cart_key(user_id)):
            return self.carts.delete_by_user_id(user_id)

    def place_order_from_cart(self, user_id: str, caller_id: str | None, role: Role | str) -> Order:
        """
        Turn the user's cart into a PENDING order and empty the cart.

        Each line is re-read from the catalog, so the order snapshots current
        names and prices. The cart is only cleared once the order is saved;
        if placing fails the cart is left as it was.

        Raises:
            ValidationError: If the cart is empty.
            ProductNotFoundError: If a cart line's product left the catalog.
            AuthorizationError: If a USER checks out someone else's cart.
        """
        self._authorize(user_id, caller_id, role)
        with self.locks.hold(cart_key(user_id)):
            cart = self._load(user_id)
            if cart.is_empty():
                raise ValidationError("cart", "cart is empty")
            items = [
                OrderItem.from_product(self.catalog.get_product(i.product_id), i.quantity)
                for i in cart.items
            ]
            order = self.order_service.place_order(user_id, items, role, caller_id=caller_id)
            self.carts.delete_by_user_id(user_id)
        logger.info("Checked out cart of %s as order %s", user_id, order.order_id)
        return order
