"""Custom exceptions for orderflow."""


class OrderflowError(Exception):
    """Base exception for all orderflow errors."""

    pass


# --- Validation ---


class ValidationError(OrderflowError):
    """Raised when input values violate a domain constraint."""

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid {field}: {reason}")


# --- Not found ---


class NotFoundError(OrderflowError):
    """Base class for lookups that found nothing."""

    pass


class OrderNotFoundError(NotFoundError):
    """Raised when an order ID doesn't exist."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class ProductNotFoundError(NotFoundError):
    """Raised when a product ID doesn't exist in the catalog."""

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product not found: {product_id}")


class ProductNotInOrderError(NotFoundError):
    """Raised when an order has no line for the given product."""

    def __init__(self, order_id: str | None, product_id: str):
        self.order_id = order_id
        self.product_id = product_id
        super().__init__(f"Product {product_id} is not in order {order_id or '(unsaved)'}")


# --- State ---


class StateError(OrderflowError):
    """Raised when an operation is not allowed in the order's current status."""

    def __init__(self, message: str, status: str | None = None):
        self.status = status
        super().__init__(message)


class InvalidTransitionError(StateError):
    """Raised when a status transition is not in the transition table."""

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        if current == requested:
            msg = f"Idempotent transition is not allowed: {current} -> {requested}"
        else:
            msg = f"Invalid status transition: {current} -> {requested}"
        super().__init__(msg, status=current)


class OrderNotModifiableError(StateError):
    """Raised when items are changed on an order that is no longer PENDING."""

    def __init__(self, order_id: str | None, status: str):
        self.order_id = order_id
        super().__init__(
            f"Items can only be changed while the order is PENDING "
            f"(order {order_id or '(unsaved)'} is {status})",
            status=status,
        )


class ProductInUseError(StateError):
    """Raised when removing a product that open orders still reference."""

    def __init__(self, product_id: str, order_ids: list[str]):
        self.product_id = product_id
        self.order_ids = order_ids
        shown = ", ".join(order_ids[:5]) + (" ..." if len(order_ids) > 5 else "")
        super().__init__(
            f"Product {product_id} is still referenced by open orders: {shown}"
        )


# --- Authorization ---


class AuthorizationError(OrderflowError):
    """Raised when the caller may not act on the target resource."""

    def __init__(self, caller_id: str | None, reason: str):
        self.caller_id = caller_id
        self.reason = reason
        super().__init__(f"Not authorized ({caller_id or 'anonymous'}): {reason}")


# --- Stock ---


class StockError(OrderflowError):
    """Base class for inventory failures."""

    pass


class InsufficientStockError(StockError):
    """Raised when a product doesn't have enough stock for a request."""

    def __init__(self, product_id: str, requested: int, available: int | None = None):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        msg = f"Insufficient stock for {product_id}: requested {requested}"
        if available is not None:
            msg = f"{msg}, available {available}"
        super().__init__(msg)


# --- Concurrency ---


class ContentionError(OrderflowError):
    """Raised when another caller holds or has changed the same resource. Safe to retry."""

    def __init__(self, key: str, timeout: float, message: str | None = None):
        self.key = key
        self.timeout = timeout
        super().__init__(
            message or f"Timed out after {timeout:g}s waiting for lock on {key}; retry later"
        )


class StaleOrderError(ContentionError):
    """Raised when saving an order that another caller saved since it was loaded."""

    def __init__(self, order_id: str, expected: int, found: int):
        self.order_id = order_id
        self.expected = expected
        self.found = found
        super().__init__(
            f"order:{order_id}",
            0.0,
            f"Order {order_id} was changed by another caller "
            f"(stored version {found}, expected {expected}); reload and retry",
        )


# --- Storage ---


class InvalidSchemaVersionError(OrderflowError):
    """Raised when a data file has an unsupported schema version."""

    def __init__(self, found: int, supported: int):
        self.found = found
        self.supported = supported
        super().__init__(
            f"Unsupported schema version {found}. This tool supports version {supported}."
        )


class ProductExistsError(OrderflowError):
    """Raised when adding a product whose ID is already in the catalog."""

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product already exists: {product_id}")
