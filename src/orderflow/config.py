"""Runtime settings for orderflow.

Values are read from the environment once, at import time.
"""

import os
from pathlib import Path


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return float(value)


# Storage location
# Can be overridden via ORDERFLOW_DATA_DIR environment variable
_default_data_dir = Path(__file__).parent.parent.parent / "data"
DATA_DIR = Path(os.environ.get("ORDERFLOW_DATA_DIR", _default_data_dir))
ORDERS_FILE = "orders.json"
INVENTORY_FILE = "inventory.json"
CARTS_FILE = "carts.json"
# Per-key lock files shared by every process using DATA_DIR
LOCKS_DIR = "locks"
SCHEMA_VERSION = 1

# Order lifecycle policy
ALLOW_IDEMPOTENT_TRANSITIONS = _env_bool("ORDERFLOW_ALLOW_IDEMPOTENT", True)
CHECK_STOCK_ON_PLACE = _env_bool("ORDERFLOW_CHECK_STOCK_ON_PLACE", False)
USER_CANCEL_PENDING_ONLY = _env_bool("ORDERFLOW_USER_CANCEL_PENDING_ONLY", False)

# Seconds to wait for a per-order or per-product lock
LOCK_TIMEOUT = _env_float("ORDERFLOW_LOCK_TIMEOUT", 5.0)

LOG_LEVEL = os.environ.get("ORDERFLOW_LOG_LEVEL", "WARNING").upper()
