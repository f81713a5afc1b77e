"""Data Transfer Objects for the stock ledger."""

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from src.common.exceptions.custom_exceptions import ValidationError
from src.common.utils.date_utils import parse_datetime


def _pick(data: dict[str, Any], *keys: str) -> Any:
    """Returns the first non-empty value among alternative payload keys."""
    for key in keys:
        value = data.get(key)
        if value is not None and value != "":
            return value
    return None


def _to_decimal(value: Any, field_name: str) -> Optional[Decimal]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be a number", field=field_name)
    try:
        return Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field_name} must be a number, got {value!r}", field=field_name)


def _to_int(value: Any, field_name: str) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be an integer", field=field_name)
    try:
        return int(str(value).strip())
    except ValueError:
        raise ValidationError(f"{field_name} must be an integer, got {value!r}", field=field_name)


def _to_datetime(value: Any, field_name: str) -> Optional[datetime]:
    if value is None:
        return None
    parsed = parse_datetime(value)
    if parsed is None:
        raise ValidationError(f"{field_name} is not a valid date: {value!r}", field=field_name)
    return parsed


def _to_text(value: Any) -> Optional[str]:
    return None if value is None else str(value)


@dataclass
class TransactionIntentDTO:
    """
    A request to record one stock movement.

    The product is referenced either by `product_id` or by `product_name` and an
    optional `sku`; in the latter case an unknown product is created on the fly using
    `group`, `unit`, `unit_cost` and `retail_price` (or the configured defaults).
    `type` and `quantity` are kept as received and normalized by the ledger rules.
    """

    type: Any = None
    quantity: Any = None
    product_id: Optional[int] = None
    product_name: Optional[str] = None
    sku: Optional[str] = None
    unit_price: Optional[Decimal] = None
    reason: Optional[str] = None
    note: Optional[str] = None
    summary: Optional[str] = None
    code: Optional[str] = None
    occurred_at: Optional[datetime] = None
    user_id: Optional[int] = None

    # Only used when the product has to be created
    group: Optional[str] = None
    unit: Optional[str] = None
    unit_cost: Optional[Decimal] = None
    retail_price: Optional[Decimal] = None

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "TransactionIntentDTO":
        """Creates an intent from a bulk/spreadsheet payload row (snake_case or camelCase keys)."""
        if not isinstance(data, dict):
            raise ValidationError(f"Transaction payload must be an object, got {type(data).__name__}")

        mapped_data = {
            "type": _pick(data, "type", "transactionType", "TYPE"),
            "quantity": _pick(data, "quantity", "QUANTITY", "qty"),
            "product_id": _to_int(_pick(data, "product_id", "productId"), "product_id"),
            "product_name": _to_text(_pick(data, "product_name", "productName", "name")),
            "sku": _to_text(_pick(data, "sku", "SKU")),
            "unit_price": _to_decimal(_pick(data, "unit_price", "unitPrice", "price"), "unit_price"),
            "reason": _to_text(_pick(data, "reason")),
            "note": _to_text(_pick(data, "note")),
            "summary": _to_text(_pick(data, "summary")),
            "code": _to_text(_pick(data, "code")),
            "occurred_at": _to_datetime(_pick(data, "occurred_at", "occurredAt", "date"), "occurred_at"),
            "user_id": _to_int(_pick(data, "user_id", "userId"), "user_id"),
            "group": _to_text(_pick(data, "group", "product_group")),
            "unit": _to_text(_pick(data, "unit")),
            "unit_cost": _to_decimal(_pick(data, "unit_cost", "unitCost", "cost"), "unit_cost"),
            "retail_price": _to_decimal(_pick(data, "retail_price", "retailPrice"), "retail_price"),
        }

        valid_keys = {f.name for f in dataclasses.fields(cls)}
        return cls(**{k: v for k, v in mapped_data.items() if k in valid_keys})


@dataclass
class TransactionChangesDTO:
    """Partial update of a recorded transaction. `None` means "leave unchanged"."""

    type: Any = None
    quantity: Any = None
    product_name: Optional[str] = None
    sku: Optional[str] = None
    unit_price: Optional[Decimal] = None
    reason: Optional[str] = None
    note: Optional[str] = None
    summary: Optional[str] = None
    code: Optional[str] = None
    occurred_at: Optional[datetime] = None
    user_id: Optional[int] = None

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "TransactionChangesDTO":
        if not isinstance(data, dict):
            raise ValidationError(f"Transaction payload must be an object, got {type(data).__name__}")
        return cls(
            type=_pick(data, "type", "transactionType"),
            quantity=_pick(data, "quantity", "qty"),
            product_name=_to_text(_pick(data, "product_name", "productName")),
            sku=_to_text(_pick(data, "sku", "SKU")),
            unit_price=_to_decimal(_pick(data, "unit_price", "unitPrice", "price"), "unit_price"),
            reason=_to_text(_pick(data, "reason")),
            note=_to_text(data.get("note")),
            summary=_to_text(data.get("summary")),
            code=_to_text(_pick(data, "code")),
            occurred_at=_to_datetime(_pick(data, "occurred_at", "occurredAt", "date"), "occurred_at"),
            user_id=_to_int(_pick(data, "user_id", "userId"), "user_id"),
        )


@dataclass
class ProductCreateDTO:
    """Explicit product creation. Ledger-owned counters always start at zero."""

    name: str
    sku: str
    group: Optional[str] = None
    unit: Optional[str] = None
    unit_cost: Decimal = Decimal("0")
    retail_price: Decimal = Decimal("0")
    display_stock: int = 0
    warehouse_stock: int = 0
    damaged_stock: int = 0


@dataclass
class ProductChangesDTO:
    """Editable product fields. `None` means "leave unchanged"."""

    name: Optional[str] = None
    sku: Optional[str] = None
    group: Optional[str] = None
    unit: Optional[str] = None
    unit_cost: Optional[Decimal] = None
    retail_price: Optional[Decimal] = None
    display_stock: Optional[int] = None
    warehouse_stock: Optional[int] = None
    damaged_stock: Optional[int] = None


@dataclass
class BatchItemSuccessDTO:
    index: int
    transaction_id: int
    product_id: int
    quantity_after: int


@dataclass
class BatchItemFailureDTO:
    index: int
    payload: Any
    error: str
    error_type: str


@dataclass
class BatchResultDTO:
    """Outcome of a bulk apply. Counts are exact even when `failed` is truncated."""

    total: int
    succeeded: list[BatchItemSuccessDTO] = field(default_factory=list)
    failed: list[BatchItemFailureDTO] = field(default_factory=list)
    succeeded_count: int = 0
    failed_count: int = 0
    unprocessed_count: int = 0
    partial: bool = False
    failed_truncated: bool = False

    @property
    def processed_count(self) -> int:
        return self.succeeded_count + self.failed_count


@dataclass
class DeleteFailureDTO:
    id: int
    error: str


@dataclass
class DeleteResultDTO:
    deleted_count: int = 0
    deleted_ids: list[int] = field(default_factory=list)
    missing_ids: list[int] = field(default_factory=list)
    failed: list[DeleteFailureDTO] = field(default_factory=list)


@dataclass
class StockBalanceDTO:
    """Stored counters of one product next to the totals derived from its transactions."""

    product_id: int
    sku: str
    name: str
    quantity: int
    ending_stock: int
    new_stock: int
    sold_stock: int
    imported_total: int = 0
    exported_total: int = 0

    @property
    def ledger_balance(self) -> int:
        return self.imported_total - self.exported_total


@dataclass
class StockDiscrepancyDTO:
    product_id: int
    sku: str
    name: str
    issues: list[str] = field(default_factory=list)
