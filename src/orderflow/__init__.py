"""orderflow: order lifecycle management with inventory-consistent workflows."""

__version__ = "0.1.0"
