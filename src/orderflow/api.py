"""FastAPI REST API for orderflow order management."""

from datetime import date
from functools import lru_cache
from typing import Optional

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import __version__, config
from .cart_store import JsonCartStore
from .errors import (
    AuthorizationError,
    ContentionError,
    InvalidSchemaVersionError,
    NotFoundError,
    OrderflowError,
    ProductExistsError,
    ProductNotInOrderError,
    StateError,
    StockError,
    ValidationError,
)
from .inventory_store import JsonInventoryStore
from .models import Cart, Order, OrderItem, OrderStatus, Product, ProductCategory, Role
from .order_store import JsonOrderStore
from .reports import ReportService
from .service import CartService, OrderService, coerce_role, require_admin
from .utils import items_from_catalog


# --- Pydantic Schemas ---


class OrderItemSchema(BaseModel):
    product_id: str
    product_name: str
    unit_price: int
    quantity: int
    line_total: int


class StatusChangeSchema(BaseModel):
    from_status: str
    to_status: str
    changed_at: str
    changed_by: Optional[str] = None


class OrderSchema(BaseModel):
    order_id: str
    user_id: str
    items: list[OrderItemSchema]
    total_price: int
    order_date: str
    status: str
    status_label: str
    history: list[StatusChangeSchema] = []


class OrderListResponse(BaseModel):
    orders: list[OrderSchema]
    count: int


class ItemRequest(BaseModel):
    product_id: str = Field(..., min_length=1)
    quantity: int = Field(default=1, ge=1)


class PlaceOrderRequest(BaseModel):
    """Request body for placing an order. Names and prices come from the catalog."""

    items: list[ItemRequest]
    user_id: Optional[str] = Field(
        None, description="Order owner (defaults to the caller; admins may order for others)"
    )


class UpdateQuantityRequest(BaseModel):
    quantity: int = Field(..., description="New quantity; zero or less removes the line")


class ProductSchema(BaseModel):
    id: str
    name: str
    price: int
    stock: int
    category: str
    description: Optional[str] = None
    created_at: str
    updated_at: str


class ProductCreateRequest(BaseModel):
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    price: int = Field(..., gt=0)
    stock: int = Field(default=0, ge=0)
    category: ProductCategory = ProductCategory.OTHER
    description: Optional[str] = None


class CartSchema(BaseModel):
    user_id: str
    items: list[OrderItemSchema]
    total_price: int
    updated_at: str


class RestockRequest(BaseModel):
    quantity: int = Field(..., ge=1)


class ProductListResponse(BaseModel):
    products: list[ProductSchema]
    count: int


class SalesReportResponse(BaseModel):
    start: date
    end: date
    total: int


class TopProductsResponse(BaseModel):
    products: dict[str, int]


class StatusCountsResponse(BaseModel):
    counts: dict[str, int]


# --- Dependencies ---


@lru_cache(maxsize=1)
def get_order_store() -> JsonOrderStore:
    """Get the global JsonOrderStore."""
    return JsonOrderStore()


@lru_cache(maxsize=1)
def get_inventory() -> JsonInventoryStore:
    """Get the global JsonInventoryStore."""
    return JsonInventoryStore()


@lru_cache(maxsize=1)
def get_order_service() -> OrderService:
    """Get the global OrderService. One instance, so its locks are shared by all requests."""
    store = get_order_store()
    return OrderService(store, get_inventory(), lock_dir=store.config_dir / config.LOCKS_DIR)


@lru_cache(maxsize=1)
def get_cart_store() -> JsonCartStore:
    """Get the global JsonCartStore."""
    return JsonCartStore()


def get_cart_service(
    carts: JsonCartStore = Depends(get_cart_store),
    inventory: JsonInventoryStore = Depends(get_inventory),
    service: OrderService = Depends(get_order_service),
) -> CartService:
    return CartService(carts, inventory, service)


def get_caller(
    x_user_id: str = Header(..., description="ID of the calling user"),
    x_user_role: str = Header(default=Role.USER.value, description="'user' or 'admin'"),
) -> tuple[str, Role]:
    """Caller identity from the X-User-Id and X-User-Role headers."""
    return x_user_id, coerce_role(x_user_role.strip().lower(), x_user_id)


def order_to_schema(order: Order) -> OrderSchema:
    """Convert an Order to its Pydantic schema."""
    return OrderSchema(
        order_id=order.order_id or "",
        user_id=order.user_id,
        items=[
            OrderItemSchema(
                product_id=i.product_id,
                product_name=i.product_name,
                unit_price=i.unit_price,
                quantity=i.quantity,
                line_total=i.line_total,
            )
            for i in order.items
        ],
        total_price=order.total_price,
        order_date=order.order_date,
        status=order.status.value,
        status_label=order.status.label,
        history=[StatusChangeSchema(**h.to_dict()) for h in order.history],
    )


def product_to_schema(product: Product) -> ProductSchema:
    return ProductSchema(**product.to_dict())


# --- FastAPI App ---


app = FastAPI(
    title="orderflow API",
    description="REST API for placing orders and driving them through their lifecycle",
    version=__version__,
)

# CORS for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Global Exception Handler ---


# Map exception types to HTTP status codes; subclasses inherit their base's code
ERROR_STATUS_CODES: dict[type, int] = {
    ValidationError: 400,
    NotFoundError: 404,
    AuthorizationError: 403,
    StateError: 409,
    StockError: 409,
    ProductExistsError: 409,
    ContentionError: 503,
    InvalidSchemaVersionError: 500,
}


def status_code_for(exc: OrderflowError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[cls]
    return 500


@app.exception_handler(OrderflowError)
async def orderflow_error_handler(request: Request, exc: OrderflowError) -> JSONResponse:
    """Map OrderflowError subclasses to appropriate HTTP responses."""
    return JSONResponse(
        status_code=status_code_for(exc),
        content={"detail": str(exc), "error_type": type(exc).__name__},
    )


# --- Endpoints ---


@app.get("/api/health")
def health_check(
    orders: JsonOrderStore = Depends(get_order_store),
    inventory: JsonInventoryStore = Depends(get_inventory),
):
    """Health check endpoint."""
    try:
        return {
            "status": "ok",
            "order_count": len(orders.find_all()),
            "product_count": len(inventory.list_products()),
        }
    except OrderflowError as e:
        return {
            "status": "error",
            "detail": str(e),
        }


# --- Product Endpoints ---


@app.get("/api/products", response_model=ProductListResponse)
def list_products(
    category: Optional[ProductCategory] = Query(default=None),
    inventory: JsonInventoryStore = Depends(get_inventory),
):
    """List the catalog with current stock, optionally one category only."""
    products = inventory.list_products(category)
    return ProductListResponse(
        products=[product_to_schema(p) for p in products],
        count=len(products),
    )


@app.post("/api/products", response_model=ProductSchema, status_code=201)
def create_product(
    request: ProductCreateRequest,
    caller: tuple[str, Role] = Depends(get_caller),
    inventory: JsonInventoryStore = Depends(get_inventory),
):
    """Add a product to the catalog (admin only)."""
    require_admin(*caller)
    product = Product(
        id=request.id,
        name=request.name,
        price=request.price,
        stock=request.stock,
        category=request.category,
        description=request.description,
    )
    return product_to_schema(inventory.add_product(product))


@app.delete("/api/products/{product_id}", response_model=ProductSchema)
def delete_product(
    product_id: str,
    caller: tuple[str, Role] = Depends(get_caller),
    service: OrderService = Depends(get_order_service),
):
    """Remove a product no open order references (admin only)."""
    return product_to_schema(service.remove_product(product_id, *caller))


@app.post("/api/products/{product_id}/restock", response_model=ProductSchema)
def restock_product(
    product_id: str,
    request: RestockRequest,
    caller: tuple[str, Role] = Depends(get_caller),
    inventory: JsonInventoryStore = Depends(get_inventory),
):
    """Add stock to a product (admin only)."""
    require_admin(*caller)
    return product_to_schema(inventory.restock(product_id, request.quantity))


# --- Order Endpoints ---


@app.post("/api/orders", response_model=OrderSchema, status_code=201)
def place_order(
    request: PlaceOrderRequest,
    caller: tuple[str, Role] = Depends(get_caller),
    service: OrderService = Depends(get_order_service),
    inventory: JsonInventoryStore = Depends(get_inventory),
):
    """Place a new PENDING order from catalog products."""
    caller_id, role = caller
    items = items_from_catalog(
        [(i.product_id, i.quantity) for i in request.items], inventory
    )
    order = service.place_order(
        request.user_id or caller_id, items, role, caller_id=caller_id
    )
    return order_to_schema(order)


@app.get("/api/orders", response_model=OrderListResponse)
def list_orders(
    status: Optional[OrderStatus] = Query(default=None),
    caller: tuple[str, Role] = Depends(get_caller),
    service: OrderService = Depends(get_order_service),
):
    """List orders visible to the caller (all orders for admins)."""
    orders = service.list_orders(*caller)
    if status is not None:
        orders = [o for o in orders if o.status is status]
    return OrderListResponse(orders=[order_to_schema(o) for o in orders], count=len(orders))


@app.get("/api/orders/{order_id}", response_model=OrderSchema)
def get_order(
    order_id: str,
    caller: tuple[str, Role] = Depends(get_caller),
    service: OrderService = Depends(get_order_service),
):
    return order_to_schema(service.get_order(order_id, *caller))


@app.post("/api/orders/{order_id}/confirm", response_model=OrderSchema)
def confirm_order(
    order_id: str,
    caller: tuple[str, Role] = Depends(get_caller),
    service: OrderService = Depends(get_order_service),
):
    """Reserve stock and confirm a PENDING order."""
    return order_to_schema(service.confirm_order(order_id, *caller))


@app.post("/api/orders/{order_id}/ship", response_model=OrderSchema)
def ship_order(
    order_id: str,
    caller: tuple[str, Role] = Depends(get_caller),
    service: OrderService = Depends(get_order_service),
):
    return order_to_schema(service.ship_order(order_id, *caller))


@app.post("/api/orders/{order_id}/deliver", response_model=OrderSchema)
def deliver_order(
    order_id: str,
    caller: tuple[str, Role] = Depends(get_caller),
    service: OrderService = Depends(get_order_service),
):
    return order_to_schema(service.deliver_order(order_id, *caller))


@app.post("/api/orders/{order_id}/cancel", response_model=OrderSchema)
def cancel_order(
    order_id: str,
    caller: tuple[str, Role] = Depends(get_caller),
    service: OrderService = Depends(get_order_service),
):
    """Cancel a PENDING or CONFIRMED order, returning reserved stock."""
    return order_to_schema(service.cancel_order(order_id, *caller))


# --- Order Item Endpoints ---


@app.post("/api/orders/{order_id}/items", response_model=OrderSchema)
def add_order_item(
    order_id: str,
    request: ItemRequest,
    caller: tuple[str, Role] = Depends(get_caller),
    service: OrderService = Depends(get_order_service),
    inventory: JsonInventoryStore = Depends(get_inventory),
):
    """Add a catalog product to a PENDING order."""
    item = OrderItem.from_product(inventory.get_product(request.product_id), request.quantity)
    return order_to_schema(service.add_item(order_id, item, *caller))


@app.patch("/api/orders/{order_id}/items/{product_id}", response_model=OrderSchema)
def update_order_item(
    order_id: str,
    product_id: str,
    request: UpdateQuantityRequest,
    caller: tuple[str, Role] = Depends(get_caller),
    service: OrderService = Depends(get_order_service),
):
    return order_to_schema(
        service.update_item_qty(order_id, product_id, request.quantity, *caller)
    )


@app.delete("/api/orders/{order_id}/items/{product_id}", response_model=OrderSchema)
def remove_order_item(
    order_id: str,
    product_id: str,
    caller: tuple[str, Role] = Depends(get_caller),
    service: OrderService = Depends(get_order_service),
):
    if not service.remove_item(order_id, product_id, *caller):
        raise ProductNotInOrderError(order_id, product_id)
    return order_to_schema(service.get_order(order_id, *caller))


# --- Cart Endpoints ---


def cart_to_schema(cart: Cart) -> CartSchema:
    return CartSchema(
        user_id=cart.user_id,
        items=[
            OrderItemSchema(line_total=i.line_total, **i.to_dict()) for i in cart.items
        ],
        total_price=cart.total_price,
        updated_at=cart.updated_at,
    )


@app.get("/api/cart", response_model=CartSchema)
def get_cart(
    user_id: Optional[str] = Query(default=None, description="Cart owner (admins only)"),
    caller: tuple[str, Role] = Depends(get_caller),
    carts: CartService = Depends(get_cart_service),
):
    """The caller's cart, or another user's for admins."""
    return cart_to_schema(carts.get_cart(user_id or caller[0], *caller))


@app.post("/api/cart/items", response_model=CartSchema)
def add_cart_item(
    request: ItemRequest,
    caller: tuple[str, Role] = Depends(get_caller),
    carts: CartService = Depends(get_cart_service),
):
    return cart_to_schema(
        carts.add_to_cart(caller[0], request.product_id, request.quantity, *caller)
    )


@app.patch("/api/cart/items/{product_id}", response_model=CartSchema)
def update_cart_item(
    product_id: str,
    request: UpdateQuantityRequest,
    caller: tuple[str, Role] = Depends(get_caller),
    carts: CartService = Depends(get_cart_service),
):
    return cart_to_schema(
        carts.update_cart_qty(caller[0], product_id, request.quantity, *caller)
    )


@app.delete("/api/cart/items/{product_id}", response_model=CartSchema)
def remove_cart_item(
    product_id: str,
    caller: tuple[str, Role] = Depends(get_caller),
    carts: CartService = Depends(get_cart_service),
):
    if not carts.remove_from_cart(caller[0], product_id, *caller):
        raise ProductNotInOrderError(None, product_id)
    return cart_to_schema(carts.get_cart(caller[0], *caller))


@app.delete("/api/cart", status_code=204)
def clear_cart(
    caller: tuple[str, Role] = Depends(get_caller),
    carts: CartService = Depends(get_cart_service),
):
    carts.clear_cart(caller[0], *caller)


@app.post("/api/cart/checkout", response_model=OrderSchema, status_code=201)
def checkout_cart(
    caller: tuple[str, Role] = Depends(get_caller),
    carts: CartService = Depends(get_cart_service),
):
    """Place a PENDING order from the caller's cart and empty it."""
    return order_to_schema(carts.place_order_from_cart(caller[0], *caller))


# --- Report Endpoints ---


def get_report_service(orders: JsonOrderStore = Depends(get_order_store)) -> ReportService:
    return ReportService(orders)


@app.get("/api/reports/sales", response_model=SalesReportResponse)
def sales_report(
    start: date = Query(...),
    end: date = Query(...),
    caller: tuple[str, Role] = Depends(get_caller),
    reports: ReportService = Depends(get_report_service),
):
    """Sales total for orders placed between start and end (admin only)."""
    require_admin(*caller)
    return SalesReportResponse(start=start, end=end, total=reports.sales_by_date(start, end))


@app.get("/api/reports/top-products", response_model=TopProductsResponse)
def top_products_report(
    limit: int = Query(default=5, ge=1, le=100),
    caller: tuple[str, Role] = Depends(get_caller),
    reports: ReportService = Depends(get_report_service),
):
    require_admin(*caller)
    return TopProductsResponse(products=reports.top_products(limit))


@app.get("/api/reports/status-counts", response_model=StatusCountsResponse)
def status_counts_report(
    caller: tuple[str, Role] = Depends(get_caller),
    reports: ReportService = Depends(get_report_service),
):
    require_admin(*caller)
    counts = reports.order_count_by_status()
    return StatusCountsResponse(counts={s.value: n for s, n in counts.items()})
