"""File-backed order storage for orderflow."""

import logging
from pathlib import Path
from typing import Any

from . import config
from .errors import StaleOrderError
from .models import Order
from .storage import JsonFile

logger = logging.getLogger(__name__)

ORDER_ID_PREFIX = "ORD-"


class JsonOrderStore:
    """Stores all orders in a single orders.json document."""

    def __init__(self, config_dir: Path | None = None):
        """
        Initialize JsonOrderStore.

        Args:
            config_dir: Override data directory (for testing).
        """
        self.config_dir = Path(config_dir) if config_dir else config.DATA_DIR
        self._file = JsonFile(
            self.config_dir / config.ORDERS_FILE,
            empty={"schema_version": config.SCHEMA_VERSION, "next_seq": 1, "orders": []},
        )

    @property
    def path(self) -> Path:
        return self._file.path

    @staticmethod
    def _reserve_id(data: dict[str, Any]) -> str:
        seq = data.get("next_seq", 1)
        data["next_seq"] = seq + 1
        return f"{ORDER_ID_PREFIX}{seq:06d}"

    def next_id(self) -> str:
        with self._file.lock():
            data = self._file.load()
            order_id = self._reserve_id(data)
            self._file.save(data)
        return order_id

    def save(self, order: Order) -> Order:
        """
        Insert or replace an order, assigning an ID if it has none.

        The stored version must still be the one the order was loaded with;
        on success both the record and order.version are bumped.

        Raises:
            StaleOrderError: If another writer saved the order in between.
        """
        with self._file.lock():
            data = self._file.load()
            if not order.order_id:
                order.order_id = self._reserve_id(data)
                logger.debug("Assigned id %s to new order for %s", order.order_id, order.user_id)

            orders = data.setdefault("orders", [])
            record = order.to_dict()
            record["version"] = order.version + 1
            for i, existing in enumerate(orders):
                if existing["order_id"] == order.order_id:
                    stored = existing.get("version", 0)
                    if stored != order.version:
                        logger.warning(
                            "Rejected stale save of order %s (stored v%d, loaded v%d)",
                            order.order_id, stored, order.version,
                        )
                        raise StaleOrderError(order.order_id, order.version, stored)
                    orders[i] = record
                    break
            else:
                orders.append(record)

            self._file.save(data)
        order.version = record["version"]
        return order

    def find_by_id(self, order_id: str) -> Order | None:
        for record in self._file.load().get("orders", []):
            if record["order_id"] == order_id:
                return Order.from_dict(record)
        return None

    def find_all(self) -> list[Order]:
        return [Order.from_dict(r) for r in self._file.load().get("orders", [])]

    def find_by_user_id(self, user_id: str) -> list[Order]:
        return [
            Order.from_dict(r)
            for r in self._file.load().get("orders", [])
            if r["user_id"] == user_id
        ]
