"""Stock transaction entity."""

import enum
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal


class TransactionType(str, enum.Enum):
    IMPORT = "import"
    EXPORT = "export"


@dataclass
class StockTransaction:
    """One recorded import or export of a product."""

    product_id: int
    type: TransactionType
    quantity: int
    unit_price: Decimal | None = None
    user_id: int | None = None
    reason: str | None = None
    note: str | None = None
    summary: str | None = None
    code: str | None = None
    occurred_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    id: int | None = None  # Assigned by persistence

    # Resolved product fields, filled in by reads that join the product
    product_name: str | None = None
    product_sku: str | None = None

    def __post_init__(self) -> None:
        """Post-initialization for validation."""
        self.type = TransactionType(self.type)
        if self.quantity <= 0:
            raise ValueError("Transaction quantity must be positive.")

    @property
    def signed_delta(self) -> int:
        return self.quantity if self.type == TransactionType.IMPORT else -self.quantity
