"""Stock movement value object."""

from dataclasses import dataclass

from .stock_transaction import TransactionType


@dataclass(frozen=True)  # Value objects are immutable
class StockMovement:
    """
    The change a transaction makes to a product's ledger-owned counters.

    `quantity_delta` is the signed delta applied to both `quantity` and
    `ending_stock`; imports also raise `new_stock`, exports raise `sold_stock`.
    """

    quantity_delta: int = 0
    new_stock_delta: int = 0
    sold_stock_delta: int = 0

    @classmethod
    def for_transaction(cls, transaction_type: TransactionType, quantity: int) -> "StockMovement":
        if transaction_type == TransactionType.IMPORT:
            return cls(quantity_delta=quantity, new_stock_delta=quantity)
        return cls(quantity_delta=-quantity, sold_stock_delta=quantity)

    def reversed(self) -> "StockMovement":
        return StockMovement(-self.quantity_delta, -self.new_stock_delta, -self.sold_stock_delta)

    def __add__(self, other: "StockMovement") -> "StockMovement":
        return StockMovement(
            self.quantity_delta + other.quantity_delta,
            self.new_stock_delta + other.new_stock_delta,
            self.sold_stock_delta + other.sold_stock_delta,
        )

    @property
    def is_zero(self) -> bool:
        return self.quantity_delta == 0 and self.new_stock_delta == 0 and self.sold_stock_delta == 0

    @property
    def reduces_stock(self) -> bool:
        return self.quantity_delta < 0
