# src/stock_ledger_domain/domain/services/stock_ledger_domain_service.py
"""Business rules of the stock ledger that do not depend on storage."""

from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from src.common.exceptions.custom_exceptions import InvalidQuantityError, InvalidTypeError, ValidationError
from src.stock_ledger_domain.domain.entities.history_log import HistoryAction
from src.stock_ledger_domain.domain.entities.product import Product
from src.stock_ledger_domain.domain.entities.stock_transaction import TransactionType


class StockLedgerDomainService:

    @staticmethod
    def normalize_transaction_type(value: Any) -> TransactionType:
        """Accepts a TransactionType or its string value (case-insensitive)."""
        if isinstance(value, TransactionType):
            return value
        if isinstance(value, str):
            try:
                return TransactionType(value.strip().lower())
            except ValueError:
                pass
        raise InvalidTypeError(value)

    @staticmethod
    def normalize_quantity(value: Any) -> int:
        """
        Converts a payload quantity to a positive int.

        Integral floats and numeric strings ("12", "12.0") are accepted since
        spreadsheet exports commonly produce them. Booleans are rejected.
        """
        if value is None or (isinstance(value, str) and not value.strip()):
            raise InvalidQuantityError("Quantity is required", value)
        if isinstance(value, bool):
            raise InvalidQuantityError("Quantity must be an integer", value)

        if isinstance(value, int):
            quantity = value
        else:
            try:
                number = Decimal(str(value).strip())
            except (InvalidOperation, ValueError):
                raise InvalidQuantityError(f"Quantity must be an integer, got {value!r}", value)
            if not number.is_finite() or number != number.to_integral_value():
                raise InvalidQuantityError(f"Quantity must be an integer, got {value!r}", value)
            quantity = int(number)

        if quantity <= 0:
            raise InvalidQuantityError(f"Quantity must be greater than 0, got {quantity}", value)
        return quantity

    @staticmethod
    def normalize_product_identity(name: Optional[str], sku: Optional[str]) -> tuple[Optional[str], Optional[str]]:
        """Strips name and SKU; at least one of them must be present."""
        name = name.strip() if name else None
        sku = sku.strip() if sku else None
        if not name and not sku:
            raise ValidationError("Product name or SKU is required", field="product_name")
        return name or None, sku or None

    @staticmethod
    def history_action_for(transaction_type: TransactionType) -> HistoryAction:
        if transaction_type == TransactionType.IMPORT:
            return HistoryAction.IMPORT_TRANSACTION
        return HistoryAction.EXPORT_TRANSACTION

    @staticmethod
    def describe_movement(transaction_type: TransactionType, quantity: int, product: Product, note: Optional[str]) -> str:
        verb = "Imported" if transaction_type == TransactionType.IMPORT else "Exported"
        details = f"{verb} {quantity} {product.unit} of {product.name} ({product.sku})."
        if note:
            details += f" {note}"
        return details

    @staticmethod
    def describe_changes(changes: dict[str, tuple[Any, Any]]) -> str:
        """Renders {'field': (old, new)} as 'field: old -> new; ...'."""
        if not changes:
            return "No field changes"
        return "; ".join(f"{name}: {old} -> {new}" for name, (old, new) in changes.items())
