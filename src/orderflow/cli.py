"""Command-line interface for orderflow."""

import argparse
import json
import logging
import os
import sys
from datetime import date

from . import __version__, config
from .cart_store import JsonCartStore
from .errors import OrderflowError, ProductNotInOrderError, ValidationError
from .inventory_store import JsonInventoryStore
from .models import OrderItem, OrderStatus, Product, ProductCategory, Role
from .order_store import JsonOrderStore
from .reports import ReportService
from .service import CartService, OrderService, coerce_role, require_admin
from .utils import (
    format_amount,
    format_cart,
    format_order,
    format_product,
    items_from_catalog,
    parse_item_spec,
)


def get_stores() -> tuple[JsonOrderStore, JsonInventoryStore]:
    """Get the order and inventory stores for the configured data directory."""
    return JsonOrderStore(), JsonInventoryStore()


def get_service() -> tuple[OrderService, JsonInventoryStore]:
    orders, inventory = get_stores()
    service = OrderService(orders, inventory, lock_dir=orders.config_dir / config.LOCKS_DIR)
    return service, inventory


def get_cart_service() -> CartService:
    service, inventory = get_service()
    return CartService(JsonCartStore(), inventory, service)


def get_caller(args: argparse.Namespace) -> tuple[str, Role]:
    """Resolve --user/--role into a caller identity."""
    if not args.user:
        raise ValidationError("user", "pass --user or set ORDERFLOW_USER")
    return args.user, coerce_role(args.role, args.user)


def _fail(e: Exception) -> int:
    print(f"Error: {e}", file=sys.stderr)
    return 1


# --- products ---


def cmd_products_list(args: argparse.Namespace) -> int:
    """List the catalog."""
    try:
        _, inventory = get_stores()
        products = inventory.list_products(args.category)

        if args.json:
            print(json.dumps([p.to_dict() for p in products], indent=2))
            return 0

        if not products:
            print("No products found.")
            return 0

        print(f"Products ({len(products)}):")
        for p in products:
            print(format_product(p))
        return 0

    except OrderflowError as e:
        return _fail(e)


def cmd_products_add(args: argparse.Namespace) -> int:
    """Add a product (admin only)."""
    try:
        require_admin(*get_caller(args))
        _, inventory = get_stores()
        product = inventory.add_product(
            Product(
                id=args.product_id,
                name=args.name,
                price=args.price,
                stock=args.stock,
                category=args.category,
                description=args.desc,
            )
        )
        print(f"Added product: {product.id}")
        print(f"  {format_product(product)}")
        return 0

    except OrderflowError as e:
        return _fail(e)


def cmd_products_restock(args: argparse.Namespace) -> int:
    """Add stock to a product (admin only)."""
    try:
        require_admin(*get_caller(args))
        _, inventory = get_stores()
        product = inventory.restock(args.product_id, args.quantity)
        print(f"Restocked {product.id}: stock is now {product.stock}")
        return 0

    except OrderflowError as e:
        return _fail(e)


def cmd_products_remove(args: argparse.Namespace) -> int:
    """Remove a product no open order references (admin only)."""
    try:
        service, _ = get_service()
        product = service.remove_product(args.product_id, *get_caller(args))
        print(f"Removed product: {product.id}")
        return 0

    except OrderflowError as e:
        return _fail(e)


# --- orders ---


def cmd_orders_place(args: argparse.Namespace) -> int:
    """Place an order from catalog products."""
    try:
        caller_id, role = get_caller(args)
        service, inventory = get_service()

        items = items_from_catalog([parse_item_spec(s) for s in args.items], inventory)
        order = service.place_order(args.owner or caller_id, items, role, caller_id=caller_id)

        print(f"Placed order: {order.order_id}")
        print(f"  Lines: {len(order.items)}")
        print(f"  Total: {format_amount(order.total_price)}")
        return 0

    except OrderflowError as e:
        return _fail(e)


def cmd_orders_list(args: argparse.Namespace) -> int:
    """List orders visible to the caller."""
    try:
        service, _ = get_service()
        orders = service.list_orders(*get_caller(args))
        if args.status:
            wanted = OrderStatus(args.status)
            orders = [o for o in orders if o.status is wanted]

        if args.json:
            print(json.dumps([o.to_dict() for o in orders], indent=2))
            return 0

        if not orders:
            print("No orders found.")
            return 0

        print(f"Orders ({len(orders)}):")
        for order in orders:
            print(format_order(order))
        return 0

    except OrderflowError as e:
        return _fail(e)


def cmd_orders_show(args: argparse.Namespace) -> int:
    """Show one order."""
    try:
        service, _ = get_service()
        order = service.get_order(args.order_id, *get_caller(args))

        if args.json:
            print(json.dumps(order.to_dict(), indent=2))
        else:
            print(format_order(order, verbose=args.verbose))
        return 0

    except OrderflowError as e:
        return _fail(e)


# orders subcommand -> (OrderService method name, past-tense verb)
TRANSITIONS = {
    "confirm": ("confirm_order", "Confirmed"),
    "ship": ("ship_order", "Shipped"),
    "deliver": ("deliver_order", "Delivered"),
    "cancel": ("cancel_order", "Cancelled"),
}


def cmd_orders_transition(args: argparse.Namespace) -> int:
    """Confirm, ship, deliver or cancel an order."""
    try:
        service, _ = get_service()
        method_name, verb = TRANSITIONS[args.orders_command]
        order = getattr(service, method_name)(args.order_id, *get_caller(args))
        print(f"{verb} order: {order.order_id} ({order.status.label})")
        return 0

    except OrderflowError as e:
        return _fail(e)


def cmd_orders_add_item(args: argparse.Namespace) -> int:
    """Add a catalog product to a PENDING order."""
    try:
        service, inventory = get_service()
        product_id, quantity = parse_item_spec(args.item)
        item = OrderItem.from_product(inventory.get_product(product_id), quantity)
        order = service.add_item(args.order_id, item, *get_caller(args))
        print(f"Added {quantity} x {product_id} to {order.order_id}")
        print(f"  Total: {format_amount(order.total_price)}")
        return 0

    except OrderflowError as e:
        return _fail(e)


def cmd_orders_remove_item(args: argparse.Namespace) -> int:
    """Remove a line from a PENDING order."""
    try:
        service, _ = get_service()
        if not service.remove_item(args.order_id, args.product_id, *get_caller(args)):
            raise ProductNotInOrderError(args.order_id, args.product_id)
        print(f"Removed {args.product_id} from {args.order_id}")
        return 0

    except OrderflowError as e:
        return _fail(e)


def cmd_orders_set_qty(args: argparse.Namespace) -> int:
    """Change a line's quantity on a PENDING order."""
    try:
        service, _ = get_service()
        order = service.update_item_qty(
            args.order_id, args.product_id, args.quantity, *get_caller(args)
        )
        print(f"Updated {args.product_id} on {order.order_id}")
        print(f"  Total: {format_amount(order.total_price)}")
        return 0

    except OrderflowError as e:
        return _fail(e)


# --- cart ---


def cmd_cart(args: argparse.Namespace) -> int:
    """Show, edit, clear or check out the caller's cart."""
    try:
        caller_id, role = get_caller(args)
        carts = get_cart_service()
        owner = args.owner or caller_id
        command = args.cart_command

        if command == "show":
            cart = carts.get_cart(owner, caller_id, role)
            if args.json:
                print(json.dumps(cart.to_dict(), indent=2))
            else:
                print(format_cart(cart))
        elif command == "add":
            product_id, quantity = parse_item_spec(args.item)
            cart = carts.add_to_cart(owner, product_id, quantity, caller_id, role)
            print(f"Added {quantity} x {product_id} to cart")
            print(f"  Total: {format_amount(cart.total_price)}")
        elif command == "remove":
            if not carts.remove_from_cart(owner, args.product_id, caller_id, role):
                raise ProductNotInOrderError(None, args.product_id)
            print(f"Removed {args.product_id} from cart")
        elif command == "set-qty":
            cart = carts.update_cart_qty(owner, args.product_id, args.quantity, caller_id, role)
            print(f"Updated {args.product_id} in cart")
            print(f"  Total: {format_amount(cart.total_price)}")
        elif command == "clear":
            carts.clear_cart(owner, caller_id, role)
            print("Cart cleared")
        else:
            order = carts.place_order_from_cart(owner, caller_id, role)
            print(f"Placed order: {order.order_id}")
            print(f"  Lines: {len(order.items)}")
            print(f"  Total: {format_amount(order.total_price)}")
        return 0

    except OrderflowError as e:
        return _fail(e)


# --- reports ---


def cmd_report(args: argparse.Namespace) -> int:
    """Print an aggregate report (admin only)."""
    try:
        require_admin(*get_caller(args))
        orders, _ = get_stores()
        reports = ReportService(orders)

        if args.report_command == "sales":
            total = reports.sales_by_date(args.start, args.end)
            if args.json:
                print(json.dumps({"start": str(args.start), "end": str(args.end), "total": total}))
            else:
                print(f"Sales {args.start} .. {args.end}: {format_amount(total)}")
        elif args.report_command == "top":
            top = reports.top_products(args.limit)
            if args.json:
                print(json.dumps(top, indent=2))
            else:
                for rank, (product_id, qty) in enumerate(top.items(), start=1):
                    print(f"{rank:>3}. {product_id:<10} {qty}")
        else:
            counts = reports.order_count_by_status()
            if args.json:
                print(json.dumps({s.value: n for s, n in counts.items()}, indent=2))
            else:
                for status, n in counts.items():
                    print(f"{status.label:<10} {n}")
        return 0

    except OrderflowError as e:
        return _fail(e)


def cmd_serve(args: argparse.Namespace) -> int:
    """Start the API server."""
    try:
        import uvicorn

        print("Starting orderflow API server...")
        print(f"Data directory: {config.DATA_DIR}")
        print(f"API docs: http://{args.host}:{args.port}/docs")
        print()

        # When reload is enabled, uvicorn requires the app as an import string
        app_target = "orderflow.api:app" if args.reload else None
        if app_target is None:
            from .api import app
            app_target = app

        uvicorn.run(
            app_target,
            host=args.host,
            port=args.port,
            reload=args.reload,
            workers=1,
        )
        return 0

    except Exception as e:
        return _fail(e)


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="orderflow",
        description="Place orders and drive them through confirmation, shipping and delivery.",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    parser.add_argument(
        "--user", "-u", default=os.environ.get("ORDERFLOW_USER"),
        help="Caller user ID (default: $ORDERFLOW_USER)",
    )
    parser.add_argument(
        "--role", "-r", choices=[r.value for r in Role],
        default=os.environ.get("ORDERFLOW_ROLE", Role.USER.value),
        help="Caller role (default: user)",
    )
    parser.add_argument(
        "--debug", action="store_true", help="Enable debug logging"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # products (subcommand group)
    products_parser = subparsers.add_parser("products", help="Manage the product catalog")
    products_subparsers = products_parser.add_subparsers(dest="products_command")

    products_list_parser = products_subparsers.add_parser("list", help="List products")
    products_list_parser.add_argument("--json", action="store_true", help="Output as JSON")
    products_list_parser.add_argument(
        "--category", "-c", type=str.upper,
        choices=[c.value for c in ProductCategory], help="Only this category"
    )

    products_add_parser = products_subparsers.add_parser("add", help="Add a product (admin)")
    products_add_parser.add_argument("product_id", help="Product ID")
    products_add_parser.add_argument("name", help="Display name")
    products_add_parser.add_argument("--price", "-p", type=int, required=True, help="Unit price")
    products_add_parser.add_argument(
        "--stock", "-s", type=int, default=0, help="Initial stock (default: 0)"
    )
    products_add_parser.add_argument("--desc", "-d", help="Description")
    products_add_parser.add_argument(
        "--category", "-c", type=str.upper, default=ProductCategory.OTHER.value,
        choices=[c.value for c in ProductCategory], help="Product category (default: OTHER)",
    )

    products_restock_parser = products_subparsers.add_parser(
        "restock", help="Add stock to a product (admin)"
    )
    products_restock_parser.add_argument("product_id", help="Product ID")
    products_restock_parser.add_argument("quantity", type=int, help="Units to add")

    products_remove_parser = products_subparsers.add_parser(
        "remove", help="Remove a product (admin)"
    )
    products_remove_parser.add_argument("product_id", help="Product ID")

    # orders (subcommand group)
    orders_parser = subparsers.add_parser("orders", help="Place and manage orders")
    orders_subparsers = orders_parser.add_subparsers(dest="orders_command")

    place_parser = orders_subparsers.add_parser("place", help="Place a new order")
    place_parser.add_argument(
        "items", nargs="+", help="Items as 'PRODUCT_ID' or 'PRODUCT_ID:QTY'"
    )
    place_parser.add_argument(
        "--for", dest="owner", help="Place on behalf of another user (admin)"
    )

    orders_list_parser = orders_subparsers.add_parser("list", help="List orders")
    orders_list_parser.add_argument("--json", action="store_true", help="Output as JSON")
    orders_list_parser.add_argument(
        "--status", choices=[s.value for s in OrderStatus], help="Filter by status"
    )

    show_parser = orders_subparsers.add_parser("show", help="Show an order")
    show_parser.add_argument("order_id", help="Order ID")
    show_parser.add_argument("--json", action="store_true", help="Output as JSON")
    show_parser.add_argument(
        "--verbose", "-v", action="store_true", help="Include status history"
    )

    for name in TRANSITIONS:
        transition_parser = orders_subparsers.add_parser(name, help=f"{name.capitalize()} an order")
        transition_parser.add_argument("order_id", help="Order ID")

    add_item_parser = orders_subparsers.add_parser("add-item", help="Add an item to a PENDING order")
    add_item_parser.add_argument("order_id", help="Order ID")
    add_item_parser.add_argument("item", help="'PRODUCT_ID' or 'PRODUCT_ID:QTY'")

    remove_item_parser = orders_subparsers.add_parser(
        "remove-item", help="Remove an item from a PENDING order"
    )
    remove_item_parser.add_argument("order_id", help="Order ID")
    remove_item_parser.add_argument("product_id", help="Product ID")

    set_qty_parser = orders_subparsers.add_parser(
        "set-qty", help="Change an item's quantity (0 removes it)"
    )
    set_qty_parser.add_argument("order_id", help="Order ID")
    set_qty_parser.add_argument("product_id", help="Product ID")
    set_qty_parser.add_argument("quantity", type=int, help="New quantity")

    # cart (subcommand group)
    cart_parser = subparsers.add_parser("cart", help="Shopping cart and checkout")
    cart_parser.add_argument(
        "--for", dest="owner", help="Act on another user's cart (admin)"
    )
    cart_subparsers = cart_parser.add_subparsers(dest="cart_command")

    cart_show_parser = cart_subparsers.add_parser("show", help="Show the cart")
    cart_show_parser.add_argument("--json", action="store_true", help="Output as JSON")

    cart_add_parser = cart_subparsers.add_parser("add", help="Add a product to the cart")
    cart_add_parser.add_argument("item", help="'PRODUCT_ID' or 'PRODUCT_ID:QTY'")

    cart_remove_parser = cart_subparsers.add_parser("remove", help="Remove a product")
    cart_remove_parser.add_argument("product_id", help="Product ID")

    cart_set_qty_parser = cart_subparsers.add_parser(
        "set-qty", help="Change a product's quantity (0 removes it)"
    )
    cart_set_qty_parser.add_argument("product_id", help="Product ID")
    cart_set_qty_parser.add_argument("quantity", type=int, help="New quantity")

    cart_subparsers.add_parser("clear", help="Empty the cart")
    cart_subparsers.add_parser("checkout", help="Place an order from the cart")

    # report (subcommand group)
    report_parser = subparsers.add_parser("report", help="Sales and order reports (admin)")
    report_subparsers = report_parser.add_subparsers(dest="report_command")

    sales_parser = report_subparsers.add_parser("sales", help="Sales total for a date range")
    sales_parser.add_argument("--start", type=date.fromisoformat, required=True, help="YYYY-MM-DD")
    sales_parser.add_argument("--end", type=date.fromisoformat, required=True, help="YYYY-MM-DD")
    sales_parser.add_argument("--json", action="store_true", help="Output as JSON")

    top_parser = report_subparsers.add_parser("top", help="Best-selling products")
    top_parser.add_argument(
        "--limit", "-n", type=int, default=5, help="Number of products (default: 5)"
    )
    top_parser.add_argument("--json", action="store_true", help="Output as JSON")

    status_parser = report_subparsers.add_parser("status", help="Order count per status")
    status_parser.add_argument("--json", action="store_true", help="Output as JSON")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument(
        "--host", default="127.0.0.1", help="Host to bind to (default: 127.0.0.1)"
    )
    serve_parser.add_argument(
        "--port", "-p", type=int, default=8000, help="Port to bind to (default: 8000)"
    )
    serve_parser.add_argument(
        "--reload", action="store_true", help="Enable auto-reload for development"
    )

    return parser


def main() -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else config.LOG_LEVEL,
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        stream=sys.stderr,
    )

    if not args.command:
        parser.print_help()
        return 0

    # Handle products subcommands
    if args.command == "products":
        if not args.products_command:
            parser.parse_args(["products", "--help"])
            return 0
        products_commands = {
            "list": cmd_products_list,
            "add": cmd_products_add,
            "restock": cmd_products_restock,
            "remove": cmd_products_remove,
        }
        return products_commands[args.products_command](args)

    # Handle orders subcommands
    if args.command == "orders":
        if not args.orders_command:
            parser.parse_args(["orders", "--help"])
            return 0
        if args.orders_command in TRANSITIONS:
            return cmd_orders_transition(args)
        orders_commands = {
            "place": cmd_orders_place,
            "list": cmd_orders_list,
            "show": cmd_orders_show,
            "add-item": cmd_orders_add_item,
            "remove-item": cmd_orders_remove_item,
            "set-qty": cmd_orders_set_qty,
        }
        return orders_commands[args.orders_command](args)

    if args.command == "cart":
        if not args.cart_command:
            parser.parse_args(["cart", "--help"])
            return 0
        return cmd_cart(args)

    # Handle report subcommands
    if args.command == "report":
        if not args.report_command:
            parser.parse_args(["report", "--help"])
            return 0
        return cmd_report(args)

    if args.command == "serve":
        return cmd_serve(args)

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
