"""File-backed shopping cart storage for orderflow."""

from pathlib import Path

from . import config
from .models import Cart
from .storage import JsonFile


class JsonCartStore:
    """Stores every user's cart in a single carts.json document."""

    def __init__(self, config_dir: Path | None = None):
        """
        Initialize JsonCartStore.

        Args:
            config_dir: Override data directory (for testing).
        """
        self.config_dir = Path(config_dir) if config_dir else config.DATA_DIR
        self._file = JsonFile(
            self.config_dir / config.CARTS_FILE,
            empty={"schema_version": config.SCHEMA_VERSION, "carts": []},
        )

    @property
    def path(self) -> Path:
        return self._file.path

    def find_by_user_id(self, user_id: str) -> Cart | None:
        for record in self._file.load().get("carts", []):
            if record["user_id"] == user_id:
                return Cart.from_dict(record)
        return None

    def save(self, cart: Cart) -> Cart:
        """Insert or replace the cart of cart.user_id."""
        with self._file.lock():
            data = self._file.load()
            carts = data.setdefault("carts", [])
            record = cart.to_dict()
            for i, existing in enumerate(carts):
                if existing["user_id"] == cart.user_id:
                    carts[i] = record
                    break
            else:
                carts.append(record)
            self._file.save(data)
        return cart

    def delete_by_user_id(self, user_id: str) -> bool:
        with self._file.lock():
            data = self._file.load()
            carts = data.get("carts", [])
            kept = [c for c in carts if c["user_id"] != user_id]
            if len(kept) == len(carts):
                return False
            data["carts"] = kept
            self._file.save(data)
        return True
