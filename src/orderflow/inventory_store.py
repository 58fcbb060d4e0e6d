"""File-backed product catalog and stock levels for orderflow."""

import logging
from pathlib import Path
from typing import Any

from . import config
from .errors import (
    InsufficientStockError,
    ProductExistsError,
    ProductNotFoundError,
)
from .models import Product, ProductCategory, _require_positive_int, _utc_now
from .storage import JsonFile

logger = logging.getLogger(__name__)


def _find(data: dict[str, Any], product_id: str) -> dict[str, Any]:
    for record in data.get("products", []):
        if record["id"] == product_id:
            return record
    raise ProductNotFoundError(product_id)


class JsonInventoryStore:
    """
    Catalog of products with stock counts, kept in inventory.json.

    Implements the InventoryPort protocol. Every stock change is a
    read-modify-write under the file lock, so a decrease either fully
    applies or raises without touching the count.
    """

    def __init__(self, config_dir: Path | None = None):
        """
        Initialize JsonInventoryStore.

        Args:
            config_dir: Override data directory (for testing).
        """
        self.config_dir = Path(config_dir) if config_dir else config.DATA_DIR
        self._file = JsonFile(
            self.config_dir / config.INVENTORY_FILE,
            empty={"schema_version": config.SCHEMA_VERSION, "products": []},
        )

    @property
    def path(self) -> Path:
        return self._file.path

    # --- catalog ---

    def list_products(self, category: ProductCategory | str | None = None) -> list[Product]:
        """List products in insertion order, optionally only one category."""
        products = [Product.from_dict(p) for p in self._file.load().get("products", [])]
        if category is not None:
            wanted = ProductCategory.parse(category)
            products = [p for p in products if p.category is wanted]
        return products

    def get_product(self, product_id: str) -> Product:
        """
        Get a product by ID.

        Raises:
            ProductNotFoundError: If product doesn't exist.
        """
        return Product.from_dict(_find(self._file.load(), product_id))

    def add_product(self, product: Product) -> Product:
        """
        Add a new product to the catalog.

        Raises:
            ProductExistsError: If a product with the same ID exists.
        """
        with self._file.lock():
            data = self._file.load()
            products = data.setdefault("products", [])
            if any(p["id"] == product.id for p in products):
                raise ProductExistsError(product.id)
            products.append(product.to_dict())
            self._file.save(data)
        logger.info("Added product %s (stock %d)", product.id, product.stock)
        return product

    def remove_product(self, product_id: str) -> Product:
        """
        Remove a product from the catalog.

        No check is made for orders that still reference it; callers go
        through OrderService.remove_product for that.

        Raises:
            ProductNotFoundError: If product doesn't exist.
        """
        with self._file.lock():
            data = self._file.load()
            products = data.get("products", [])
            for i, p in enumerate(products):
                if p["id"] == product_id:
                    removed = Product.from_dict(products.pop(i))
                    self._file.save(data)
                    return removed
            raise ProductNotFoundError(product_id)

    def set_price(self, product_id: str, price: int) -> Product:
        """Change the catalog price. Existing orders keep their snapshot."""
        _require_positive_int("price", price)
        with self._file.lock():
            data = self._file.load()
            record = _find(data, product_id)
            record["price"] = price
            record["updated_at"] = _utc_now()
            self._file.save(data)
        return Product.from_dict(record)

    def restock(self, product_id: str, quantity: int) -> Product:
        """Add stock and return the updated product."""
        self.increase_stock(product_id, quantity)
        return self.get_product(product_id)

    # --- InventoryPort ---

    def has_stock(self, product_id: str, quantity: int) -> bool:
        record = _find(self._file.load(), product_id)
        return record["stock"] >= quantity

    def decrease_stock(self, product_id: str, quantity: int) -> None:
        _require_positive_int("quantity", quantity)
        with self._file.lock():
            data = self._file.load()
            record = _find(data, product_id)
            if record["stock"] < quantity:
                logger.warning(
                    "Rejected decrease of %s by %d (stock %d)",
                    product_id, quantity, record["stock"],
                )
                raise InsufficientStockError(product_id, quantity, record["stock"])
            record["stock"] -= quantity
            record["updated_at"] = _utc_now()
            self._file.save(data)
        logger.debug("Decreased %s by %d", product_id, quantity)

    def increase_stock(self, product_id: str, quantity: int) -> None:
        _require_positive_int("quantity", quantity)
        with self._file.lock():
            data = self._file.load()
            record = _find(data, product_id)
            record["stock"] += quantity
            record["updated_at"] = _utc_now()
            self._file.save(data)
        logger.debug("Increased %s by %d", product_id, quantity)
