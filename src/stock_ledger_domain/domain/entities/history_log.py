"""History log entity."""

import enum
from dataclasses import dataclass
from datetime import datetime

from .product import Product


class HistoryAction(str, enum.Enum):
    IMPORT_TRANSACTION = "import_transaction"
    EXPORT_TRANSACTION = "export_transaction"
    UPDATE_TRANSACTION = "update_transaction"
    DELETE_TRANSACTION = "delete_transaction"
    CREATE_PRODUCT = "create_product"
    UPDATE_PRODUCT = "update_product"
    DELETE_PRODUCT = "delete_product"


@dataclass(frozen=True)  # Audit entries are append-only
class HistoryLog:
    """
    An audit entry. Product name and SKU are copied at write time so the entry
    stays readable after the product is renamed or deleted.
    """

    action: HistoryAction
    product_id: int | None
    product_name: str | None
    product_sku: str | None
    user_id: int | None = None
    details: str = ""
    timestamp: datetime | None = None
    id: int | None = None

    @classmethod
    def for_product(
        cls,
        action: HistoryAction,
        product: Product,
        details: str,
        user_id: int | None = None,
        keep_product_reference: bool = True,
    ) -> "HistoryLog":
        return cls(
            action=action,
            product_id=product.id if keep_product_reference else None,
            product_name=product.name,
            product_sku=product.sku,
            user_id=user_id,
            details=details,
        )
