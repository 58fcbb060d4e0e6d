"""Tests for OrderService workflows."""

import threading

import pytest

from orderflow import models
from orderflow.errors import (
    AuthorizationError,
    ContentionError,
    InsufficientStockError,
    InvalidTransitionError,
    NotFoundError,
    OrderNotFoundError,
    OrderNotModifiableError,
    ProductInUseError,
    ProductNotFoundError,
    ProductNotInOrderError,
    StaleOrderError,
    StateError,
    StockError,
    ValidationError,
)
from orderflow.inventory_store import JsonInventoryStore
from orderflow.locks import order_key, product_key
from orderflow.models import Order, OrderStatus, Product, Role
from orderflow.order_store import JsonOrderStore
from orderflow.service import OrderService

from .conftest import MemoryOrderStore, RecordingInventory, advance, make_item


@pytest.fixture
def service(order_store, inventory):
    return OrderService(order_store, inventory, lock_timeout=0.05)


def seed(store, user_id="U1", items=None, status=OrderStatus.PENDING):
    """Put an order straight into the store in the given status."""
    items = items if items is not None else [make_item("P1", 10000, 3), make_item("P2", 5000, 2)]
    order = Order(user_id, items)
    path = {
        OrderStatus.PENDING: (),
        OrderStatus.CONFIRMED: (OrderStatus.CONFIRMED,),
        OrderStatus.SHIPPING: (OrderStatus.CONFIRMED, OrderStatus.SHIPPING),
        OrderStatus.DELIVERED: (
            OrderStatus.CONFIRMED, OrderStatus.SHIPPING, OrderStatus.DELIVERED,
        ),
        OrderStatus.CANCELLED: (OrderStatus.CANCELLED,),
    }[status]
    advance(order, *path)
    return store.put(order)


class FailingSaveStore(MemoryOrderStore):
    """Store whose save() blows up once armed."""

    def __init__(self, calls=None):
        super().__init__(calls)
        self.fail = False

    def save(self, order):
        if self.fail:
            self.calls.append(("save-failed", order.order_id))
            raise OSError("disk full")
        return super().save(order)


class TestPlaceOrder:
    def test_merges_lines_and_totals(self, service, order_store):
        # Scenario A
        order = service.place_order(
            "U1",
            [make_item("P1", 10000, 2), make_item("P1", 10000, 1), make_item("P2", 5000, 3)],
            Role.USER,
        )

        assert order.status is OrderStatus.PENDING
        assert len(order.items) == 2
        assert order.total_price == 45000
        assert order.order_id
        assert order_store.saves() == [order.order_id]

        stored = order_store.find_by_id(order.order_id)
        assert stored.total_price == 45000
        assert stored.user_id == "U1"

    @pytest.mark.parametrize("items", [[], None])
    def test_empty_items_raises(self, service, order_store, items):
        with pytest.raises(ValidationError) as exc_info:
            service.place_order("U1", items, Role.USER)
        assert "empty" in str(exc_info.value)
        assert order_store.saves() == []

    def test_blank_user_raises(self, service, order_store):
        with pytest.raises(ValidationError):
            service.place_order("  ", [make_item("P1")], Role.ADMIN)
        assert order_store.saves() == []

    def test_user_cannot_place_for_someone_else(self, service, order_store):
        with pytest.raises(AuthorizationError):
            service.place_order("U1", [make_item("P1")], Role.USER, caller_id="U2")
        assert order_store.saves() == []

    def test_admin_can_place_for_anyone(self, service):
        order = service.place_order("U1", [make_item("P1")], Role.ADMIN, caller_id="admin")
        assert order.user_id == "U1"

    def test_unknown_role_is_unauthorized(self, service):
        with pytest.raises(AuthorizationError):
            service.place_order("U1", [make_item("P1")], "superuser")

    def test_no_stock_check_by_default(self, service, inventory):
        order = service.place_order("U1", [make_item("P3", 100, 50)], Role.USER)

        assert order.status is OrderStatus.PENDING
        assert inventory.calls == [("save", order.order_id)]

    def test_stock_check_on_place_rejects_short_line(self, order_store, inventory):
        service = OrderService(order_store, inventory, check_stock_on_place=True)

        with pytest.raises(InsufficientStockError) as exc_info:
            service.place_order("U1", [make_item("P1", 100, 1), make_item("P2", 100, 11)], Role.USER)

        assert exc_info.value.product_id == "P2"
        assert order_store.saves() == []
        assert inventory.mutations() == []

    def test_stock_check_on_place_accepts_covered_order(self, order_store, inventory):
        service = OrderService(order_store, inventory, check_stock_on_place=True)

        order = service.place_order("U1", [make_item("P1", 100, 5)], Role.USER)

        assert order_store.saves() == [order.order_id]
        assert inventory.stock["P1"] == 5


class TestConfirmOrder:
    def test_decrements_stock_and_confirms(self, service, order_store, inventory):
        # Scenario B
        order = seed(order_store)

        confirmed = service.confirm_order(order.order_id, "U1", Role.USER)

        assert confirmed.status is OrderStatus.CONFIRMED
        assert inventory.stock["P1"] == 2
        assert inventory.stock["P2"] == 8
        assert order_store.find_by_id(order.order_id).status is OrderStatus.CONFIRMED

    def test_checks_all_lines_before_any_decrement(self, service, order_store, calls):
        order = seed(order_store)
        calls.clear()

        service.confirm_order(order.order_id, "U1", Role.USER)

        assert calls == [
            ("find_by_id", order.order_id),
            ("has_stock", "P1", 3),
            ("has_stock", "P2", 2),
            ("decrease_stock", "P1", 3),
            ("decrease_stock", "P2", 2),
            ("save", order.order_id),
        ]

    def test_insufficient_stock_changes_nothing(self, service, order_store, inventory):
        # Scenario C
        order = seed(order_store, items=[make_item("P1", 100, 3), make_item("P2", 100, 20)])

        with pytest.raises(StockError) as exc_info:
            service.confirm_order(order.order_id, "U1", Role.USER)

        assert "P2" in str(exc_info.value)
        assert exc_info.value.product_id == "P2"
        assert inventory.stock == {"P1": 5, "P2": 10, "P3": 0}
        assert inventory.mutations() == []
        assert order_store.saves() == []
        assert order_store.find_by_id(order.order_id).status is OrderStatus.PENDING

    def test_names_first_failing_product(self, service, order_store):
        order = seed(
            order_store,
            items=[make_item("P1", 100, 1), make_item("P3", 100, 1), make_item("P2", 100, 99)],
        )

        with pytest.raises(InsufficientStockError) as exc_info:
            service.confirm_order(order.order_id, "admin", Role.ADMIN)
        assert exc_info.value.product_id == "P3"

    def test_other_user_is_rejected(self, service, order_store, inventory):
        # Scenario E
        order = seed(order_store, user_id="U1")

        with pytest.raises(AuthorizationError):
            service.confirm_order(order.order_id, "U2", Role.USER)

        assert inventory.calls == [("find_by_id", order.order_id)]
        assert order_store.find_by_id(order.order_id).status is OrderStatus.PENDING

    def test_admin_can_confirm_any_order(self, service, order_store):
        order = seed(order_store, user_id="U1")
        confirmed = service.confirm_order(order.order_id, "admin", Role.ADMIN)
        assert confirmed.status is OrderStatus.CONFIRMED
        assert confirmed.history[-1].changed_by == "admin"

    @pytest.mark.parametrize(
        "status",
        [OrderStatus.CONFIRMED, OrderStatus.SHIPPING, OrderStatus.DELIVERED, OrderStatus.CANCELLED],
    )
    def test_non_pending_cannot_be_confirmed(self, service, order_store, inventory, status):
        order = seed(order_store, status=status)

        with pytest.raises(StateError) as exc_info:
            service.confirm_order(order.order_id, "U1", Role.USER)

        assert "cannot be confirmed" in str(exc_info.value)
        assert inventory.mutations() == []
        assert order_store.saves() == []

    def test_empty_order_cannot_be_confirmed(self, service, order_store, inventory):
        order = seed(order_store, items=[])

        with pytest.raises(ValidationError):
            service.confirm_order(order.order_id, "U1", Role.USER)
        assert inventory.mutations() == []

    def test_unknown_order_is_not_found(self, service):
        with pytest.raises(OrderNotFoundError) as exc_info:
            service.confirm_order("missing", "U1", Role.USER)
        assert exc_info.value.order_id == "missing"

    def test_not_found_precedes_authorization(self, service):
        with pytest.raises(NotFoundError):
            service.confirm_order("missing", "someone-else", Role.USER)

    def test_failed_save_restores_stock(self, inventory, calls):
        store = FailingSaveStore(calls)
        service = OrderService(store, inventory)
        order = seed(store)
        store.fail = True

        with pytest.raises(OSError):
            service.confirm_order(order.order_id, "U1", Role.USER)

        assert inventory.stock == {"P1": 5, "P2": 10, "P3": 0}
        assert store.find_by_id(order.order_id).status is OrderStatus.PENDING

    def test_failed_decrement_restores_earlier_lines(self, order_store, calls):
        class RacingInventory(RecordingInventory):
            # has_stock says yes, but someone else took P2 in between
            def has_stock(self, product_id, quantity):
                self.calls.append(("has_stock", product_id, quantity))
                return True

        inventory = RacingInventory({"P1": 5, "P2": 1}, calls)
        service = OrderService(order_store, inventory)
        order = seed(order_store)

        with pytest.raises(InsufficientStockError):
            service.confirm_order(order.order_id, "U1", Role.USER)

        assert inventory.stock == {"P1": 5, "P2": 1}
        assert order_store.saves() == []


class TestShipAndDeliver:
    def test_full_lifecycle(self, service, order_store, inventory):
        order = seed(order_store)
        oid = order.order_id

        service.confirm_order(oid, "U1", Role.USER)
        shipped = service.ship_order(oid, "admin", Role.ADMIN)
        assert shipped.status is OrderStatus.SHIPPING
        delivered = service.deliver_order(oid, "admin", Role.ADMIN)
        assert delivered.status is OrderStatus.DELIVERED

        stored = order_store.find_by_id(oid)
        assert [h.to_status for h in stored.history] == [
            OrderStatus.CONFIRMED, OrderStatus.SHIPPING, OrderStatus.DELIVERED,
        ]
        # Shipping and delivery don't touch stock
        assert inventory.stock["P1"] == 2

    @pytest.mark.parametrize(
        "status", [OrderStatus.PENDING, OrderStatus.SHIPPING, OrderStatus.CANCELLED]
    )
    def test_ship_requires_confirmed(self, service, order_store, status):
        order = seed(order_store, status=status)
        with pytest.raises(StateError) as exc_info:
            service.ship_order(order.order_id, "admin", Role.ADMIN)
        assert "cannot be shipped" in str(exc_info.value)
        assert order_store.saves() == []

    @pytest.mark.parametrize(
        "status", [OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.DELIVERED]
    )
    def test_deliver_requires_shipping(self, service, order_store, status):
        order = seed(order_store, status=status)
        with pytest.raises(StateError):
            service.deliver_order(order.order_id, "admin", Role.ADMIN)
        assert order_store.saves() == []

    def test_ship_checks_ownership(self, service, order_store):
        order = seed(order_store, user_id="U1", status=OrderStatus.CONFIRMED)
        with pytest.raises(AuthorizationError):
            service.ship_order(order.order_id, "U2", Role.USER)

    def test_redelivery_is_noop_with_idempotency(self, order_store, monkeypatch):
        # Scenario F, default policy
        monkeypatch.setattr(models, "ALLOW_IDEMPOTENT_TRANSITIONS", True)
        order = seed(order_store, status=OrderStatus.DELIVERED)
        loaded = order_store.find_by_id(order.order_id)

        loaded.change_status(OrderStatus.DELIVERED)

        assert loaded.status is OrderStatus.DELIVERED
        assert len(loaded.history) == 3

    def test_redelivery_fails_without_idempotency(self, order_store, monkeypatch):
        # Scenario F, strict policy
        monkeypatch.setattr(models, "ALLOW_IDEMPOTENT_TRANSITIONS", False)
        order = seed(order_store, status=OrderStatus.DELIVERED)
        loaded = order_store.find_by_id(order.order_id)

        with pytest.raises(InvalidTransitionError):
            loaded.change_status(OrderStatus.DELIVERED)


class TestCancelOrder:
    def test_pending_cancel_leaves_stock_alone(self, service, order_store, inventory):
        order = seed(order_store)

        cancelled = service.cancel_order(order.order_id, "U1", Role.USER)

        assert cancelled.status is OrderStatus.CANCELLED
        assert inventory.mutations() == []
        assert order_store.find_by_id(order.order_id).status is OrderStatus.CANCELLED

    def test_confirmed_cancel_restores_stock(self, service, order_store, inventory):
        # Scenario D
        order = seed(order_store)
        service.confirm_order(order.order_id, "U1", Role.USER)
        assert inventory.stock["P1"] == 2
        assert inventory.stock["P2"] == 8

        cancelled = service.cancel_order(order.order_id, "U1", Role.USER)

        assert cancelled.status is OrderStatus.CANCELLED
        assert inventory.stock["P1"] == 5
        assert inventory.stock["P2"] == 10
        assert inventory.mutations()[-2:] == [
            ("increase_stock", "P1", 3),
            ("increase_stock", "P2", 2),
        ]

    def test_retried_cancel_does_not_restore_twice(self, service, order_store, inventory):
        order = seed(order_store)
        service.confirm_order(order.order_id, "U1", Role.USER)
        service.cancel_order(order.order_id, "U1", Role.USER)

        with pytest.raises(StateError) as exc_info:
            service.cancel_order(order.order_id, "U1", Role.USER)

        assert "not cancellable" in str(exc_info.value)
        assert inventory.stock["P1"] == 5
        assert inventory.stock["P2"] == 10

    @pytest.mark.parametrize("status", [OrderStatus.SHIPPING, OrderStatus.DELIVERED])
    def test_shipped_orders_are_not_cancellable(self, service, order_store, inventory, status):
        order = seed(order_store, status=status)

        with pytest.raises(StateError):
            service.cancel_order(order.order_id, "admin", Role.ADMIN)

        assert inventory.mutations() == []
        assert order_store.find_by_id(order.order_id).status is status

    def test_other_user_cannot_cancel(self, service, order_store):
        order = seed(order_store, user_id="U1")
        with pytest.raises(AuthorizationError):
            service.cancel_order(order.order_id, "U2", Role.USER)
        assert order_store.saves() == []

    def test_failed_save_takes_restored_stock_back(self, calls):
        store = FailingSaveStore(calls)
        inventory = RecordingInventory({"P1": 2, "P2": 8}, calls)
        service = OrderService(store, inventory)
        order = seed(store, status=OrderStatus.CONFIRMED)
        store.fail = True

        with pytest.raises(OSError):
            service.cancel_order(order.order_id, "U1", Role.USER)

        assert inventory.stock == {"P1": 2, "P2": 8}
        assert store.find_by_id(order.order_id).status is OrderStatus.CONFIRMED

    def test_user_cancel_pending_only(self, order_store, inventory):
        service = OrderService(order_store, inventory, user_cancel_pending_only=True)
        confirmed = seed(order_store, status=OrderStatus.CONFIRMED)
        pending = seed(order_store)

        with pytest.raises(StateError):
            service.cancel_order(confirmed.order_id, "U1", Role.USER)
        assert inventory.mutations() == []

        assert service.cancel_order(pending.order_id, "U1", Role.USER).status is OrderStatus.CANCELLED
        assert (
            service.cancel_order(confirmed.order_id, "admin", Role.ADMIN).status
            is OrderStatus.CANCELLED
        )


class TestItemMutation:
    def test_add_item_merges_and_saves(self, service, order_store):
        order = seed(order_store, items=[make_item("P1", 100, 1)])

        updated = service.add_item(order.order_id, make_item("P1", 100, 2), "U1", Role.USER)

        assert updated.find_item("P1").quantity == 3
        stored = order_store.find_by_id(order.order_id)
        assert stored.total_price == 300
        assert order_store.saves() == [order.order_id]

    def test_remove_item(self, service, order_store):
        order = seed(order_store, items=[make_item("P1", 100, 1), make_item("P2", 50, 2)])

        assert service.remove_item(order.order_id, "P1", "U1", Role.USER) is True
        assert order_store.find_by_id(order.order_id).total_price == 100

    def test_remove_missing_item_does_not_save(self, service, order_store):
        order = seed(order_store)
        assert service.remove_item(order.order_id, "PX", "U1", Role.USER) is False
        assert order_store.saves() == []

    def test_update_quantity(self, service, order_store):
        order = seed(order_store, items=[make_item("P1", 100, 1)])

        updated = service.update_item_qty(order.order_id, "P1", 4, "U1", Role.USER)

        assert updated.total_price == 400
        assert order_store.find_by_id(order.order_id).find_item("P1").quantity == 4

    def test_update_unknown_product_is_not_found(self, service, order_store):
        order = seed(order_store)
        with pytest.raises(ProductNotInOrderError):
            service.update_item_qty(order.order_id, "PX", 2, "U1", Role.USER)
        assert order_store.saves() == []

    def test_confirmed_order_rejects_changes_without_side_effects(
        self, service, order_store, inventory
    ):
        order = seed(order_store, status=OrderStatus.CONFIRMED)

        with pytest.raises(OrderNotModifiableError):
            service.add_item(order.order_id, make_item("P3"), "U1", Role.USER)
        with pytest.raises(OrderNotModifiableError):
            service.remove_item(order.order_id, "P1", "U1", Role.USER)
        with pytest.raises(OrderNotModifiableError):
            service.update_item_qty(order.order_id, "P1", 1, "U1", Role.USER)

        assert order_store.saves() == []
        assert inventory.mutations() == []

    def test_other_user_cannot_change_items(self, service, order_store):
        order = seed(order_store, user_id="U1")
        with pytest.raises(AuthorizationError):
            service.add_item(order.order_id, make_item("P3"), "U2", Role.USER)
        assert order_store.saves() == []


class TestQueries:
    def test_get_order(self, service, order_store):
        order = seed(order_store, user_id="U1")

        assert service.get_order(order.order_id, "U1", Role.USER) == order
        assert service.get_order(order.order_id, "admin", Role.ADMIN) == order
        with pytest.raises(AuthorizationError):
            service.get_order(order.order_id, "U2", Role.USER)
        with pytest.raises(OrderNotFoundError):
            service.get_order("nope", "U1", Role.USER)

    def test_list_orders_filters_by_caller(self, service, order_store):
        a = seed(order_store, user_id="U1")
        b = seed(order_store, user_id="U2")
        c = seed(order_store, user_id="U1")

        assert {o.order_id for o in service.list_orders("admin", Role.ADMIN)} == {
            a.order_id, b.order_id, c.order_id,
        }
        assert {o.order_id for o in service.list_orders("U1", Role.USER)} == {
            a.order_id, c.order_id,
        }
        assert service.list_orders("U3", Role.USER) == []
        assert service.list_orders(None, Role.USER) == []

    def test_loaded_orders_are_independent(self, service, order_store):
        order = seed(order_store)
        first = service.get_order(order.order_id, "U1", Role.USER)
        first.change_status(OrderStatus.CANCELLED)

        assert service.get_order(order.order_id, "U1", Role.USER).status is OrderStatus.PENDING


class TestContention:
    def test_busy_order_raises_contention(self, service, order_store, inventory):
        order = seed(order_store)

        with service.locks.hold(order_key(order.order_id)):
            with pytest.raises(ContentionError) as exc_info:
                service.confirm_order(order.order_id, "U1", Role.USER)

        assert exc_info.value.key == order_key(order.order_id)
        assert inventory.mutations() == []
        # Lock is free again afterwards
        assert service.confirm_order(order.order_id, "U1", Role.USER).status is OrderStatus.CONFIRMED

    def test_busy_product_raises_contention(self, service, order_store, inventory):
        order = seed(order_store)

        with service.locks.hold(product_key("P2")):
            with pytest.raises(ContentionError):
                service.confirm_order(order.order_id, "U1", Role.USER)

        assert inventory.mutations() == []
        assert order_store.find_by_id(order.order_id).status is OrderStatus.PENDING

    def test_concurrent_confirms_never_oversell(self, order_store):
        inventory = RecordingInventory({"P1": 3})
        service = OrderService(order_store, inventory, lock_timeout=5.0)
        orders = [seed(order_store, items=[make_item("P1", 100, 1)]) for _ in range(6)]
        results = []

        def confirm(order_id):
            try:
                service.confirm_order(order_id, "U1", Role.USER)
                results.append("ok")
            except InsufficientStockError:
                results.append("short")

        threads = [threading.Thread(target=confirm, args=(o.order_id,)) for o in orders]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count("ok") == 3
        assert results.count("short") == 3
        assert inventory.stock["P1"] == 0

    def test_place_order_waits_for_product_lock(self, service, inventory):
        with service.locks.hold(product_key("P1")):
            with pytest.raises(ContentionError):
                service.place_order("U1", [make_item("P1")], Role.USER)

        assert service.place_order("U1", [make_item("P1")], Role.USER).status is OrderStatus.PENDING

    def test_stale_confirm_restores_decremented_stock(self, order_store, inventory):
        order = seed(order_store, items=[make_item("P2", 100, 4)])
        service = OrderService(order_store, inventory, lock_timeout=0.05)
        original_save = order_store.save

        def save_after_someone_else(o):
            # Another writer bumps the stored record first
            order_store.put(Order.from_dict({**o.to_dict(), "version": o.version + 1}))
            return original_save(o)

        order_store.save = save_after_someone_else
        with pytest.raises(StaleOrderError):
            service.confirm_order(order.order_id, "U1", Role.USER)

        assert inventory.stock["P2"] == 10
        assert inventory.mutations() == [
            ("decrease_stock", "P2", 4),
            ("increase_stock", "P2", 4),
        ]


class TestRemoveProduct:
    def test_refused_while_pending_order_references_it(self, service, order_store, inventory):
        order = seed(order_store)

        with pytest.raises(ProductInUseError) as exc_info:
            service.remove_product("P1", "admin", Role.ADMIN)

        assert isinstance(exc_info.value, StateError)
        assert exc_info.value.order_ids == [order.order_id]
        assert "P1" in inventory.stock

    def test_confirmed_order_stays_cancellable(self, service, order_store, inventory):
        order = seed(order_store, items=[make_item("P1", 100, 3)])
        service.confirm_order(order.order_id, "U1", Role.USER)
        assert inventory.stock["P1"] == 2

        with pytest.raises(ProductInUseError):
            service.remove_product("P1", "admin", Role.ADMIN)

        service.cancel_order(order.order_id, "U1", Role.USER)
        assert inventory.stock["P1"] == 5

    @pytest.mark.parametrize("status", [OrderStatus.DELIVERED, OrderStatus.CANCELLED])
    def test_allowed_once_orders_are_closed(self, service, order_store, inventory, status):
        seed(order_store, status=status)

        removed = service.remove_product("P1", "admin", Role.ADMIN)

        assert removed.id == "P1"
        assert "P1" not in inventory.stock

    def test_unreferenced_product_is_removed(self, service, order_store, inventory):
        seed(order_store, items=[make_item("P2")])

        service.remove_product("P3", "admin", Role.ADMIN)

        assert inventory.calls[-1] == ("remove_product", "P3")

    def test_requires_admin(self, service, inventory):
        with pytest.raises(AuthorizationError):
            service.remove_product("P3", "U1", Role.USER)
        assert "P3" in inventory.stock

    def test_unknown_product_is_not_found(self, service):
        with pytest.raises(ProductNotFoundError):
            service.remove_product("P9", "admin", Role.ADMIN)

    def test_busy_product_raises_contention(self, service, inventory):
        with service.locks.hold(product_key("P3")):
            with pytest.raises(ContentionError):
                service.remove_product("P3", "admin", Role.ADMIN)
        assert "P3" in inventory.stock


class BarrierOrderStore(JsonOrderStore):
    """JsonOrderStore whose readers wait for each other after loading."""

    def __init__(self, config_dir, barrier):
        super().__init__(config_dir)
        self.barrier = barrier

    def find_by_id(self, order_id):
        order = super().find_by_id(order_id)
        self.barrier.wait(timeout=5.0)
        return order


def run_concurrently(*calls):
    """Run each callable in its own thread and collect 'ok' or the exception type."""
    results = []

    def run(fn):
        try:
            fn()
            results.append("ok")
        except Exception as e:
            results.append(type(e))

    threads = [threading.Thread(target=run, args=(fn,)) for fn in calls]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return results


class TestSharedDataDirectory:
    """Two OrderService instances over the same data directory, as two processes would be."""

    @pytest.fixture
    def catalog(self, temp_dir):
        store = JsonInventoryStore(temp_dir)
        store.add_product(Product(id="P1", name="Keyboard", price=10000, stock=10))
        return store

    def confirmed_order(self, temp_dir):
        service = OrderService(JsonOrderStore(temp_dir), JsonInventoryStore(temp_dir))
        order = service.place_order("U1", [make_item("P1", 10000, 3)], Role.USER)
        service.confirm_order(order.order_id, "U1", Role.USER)
        return order.order_id

    def test_double_cancel_with_lock_files_restores_once(self, temp_dir, catalog):
        order_id = self.confirmed_order(temp_dir)
        assert catalog.get_product("P1").stock == 7
        services = [
            OrderService(
                JsonOrderStore(temp_dir),
                JsonInventoryStore(temp_dir),
                lock_timeout=5.0,
                lock_dir=temp_dir / "locks",
            )
            for _ in range(2)
        ]

        results = run_concurrently(
            *(lambda s=s: s.cancel_order(order_id, "U1", Role.USER) for s in services)
        )

        assert results.count("ok") == 1
        assert [r for r in results if r != "ok"] == [StateError]
        assert catalog.get_product("P1").stock == 10
        assert JsonOrderStore(temp_dir).find_by_id(order_id).status is OrderStatus.CANCELLED

    def test_double_cancel_without_lock_files_restores_once(self, temp_dir, catalog):
        order_id = self.confirmed_order(temp_dir)
        barrier = threading.Barrier(2)
        services = [
            OrderService(BarrierOrderStore(temp_dir, barrier), JsonInventoryStore(temp_dir))
            for _ in range(2)
        ]

        results = run_concurrently(
            *(lambda s=s: s.cancel_order(order_id, "U1", Role.USER) for s in services)
        )

        assert results.count("ok") == 1
        assert [r for r in results if r != "ok"] == [StaleOrderError]
        assert catalog.get_product("P1").stock == 10
        stored = JsonOrderStore(temp_dir).find_by_id(order_id)
        assert stored.status is OrderStatus.CANCELLED
        assert len(stored.history) == 2

    def test_double_confirm_without_lock_files_reserves_once(self, temp_dir, catalog):
        setup = OrderService(JsonOrderStore(temp_dir), JsonInventoryStore(temp_dir))
        order_id = setup.place_order("U1", [make_item("P1", 10000, 3)], Role.USER).order_id
        barrier = threading.Barrier(2)
        services = [
            OrderService(BarrierOrderStore(temp_dir, barrier), JsonInventoryStore(temp_dir))
            for _ in range(2)
        ]

        results = run_concurrently(
            *(lambda s=s: s.confirm_order(order_id, "U1", Role.USER) for s in services)
        )

        assert results.count("ok") == 1
        assert [r for r in results if r != "ok"] == [StaleOrderError]
        assert catalog.get_product("P1").stock == 7
        assert JsonOrderStore(temp_dir).find_by_id(order_id).status is OrderStatus.CONFIRMED
