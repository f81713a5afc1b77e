"""Product entity."""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal


@dataclass
class Product:
    """
    A stocked product and its counters.

    `quantity`, `ending_stock`, `new_stock` and `sold_stock` are owned by the ledger
    and only change through stock movements. `display_stock`, `warehouse_stock`
    and `damaged_stock` are informational and editable with the product.
    """

    name: str
    sku: str
    group: str
    unit: str
    unit_cost: Decimal = Decimal("0")
    retail_price: Decimal = Decimal("0")
    quantity: int = 0
    display_stock: int = 0
    warehouse_stock: int = 0
    new_stock: int = 0
    sold_stock: int = 0
    damaged_stock: int = 0
    ending_stock: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None
    id: int | None = None  # Assigned by persistence

    def __post_init__(self) -> None:
        """Post-initialization for validation."""
        if not self.name or not self.name.strip():
            raise ValueError("Product name cannot be empty.")
        if not self.sku or not self.sku.strip():
            raise ValueError("Product SKU cannot be empty.")
