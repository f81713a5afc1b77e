# src/stock_ledger_domain/domain/repositories/stock_ledger_repository.py
"""Stock ledger repository and unit-of-work interfaces."""
from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from typing import Optional

from src.common.dtos.ledger_dtos import StockBalanceDTO
from src.stock_ledger_domain.domain.entities.history_log import HistoryAction, HistoryLog
from src.stock_ledger_domain.domain.entities.product import Product
from src.stock_ledger_domain.domain.entities.stock_movement import StockMovement
from src.stock_ledger_domain.domain.entities.stock_transaction import StockTransaction, TransactionType


class IStockLedgerUnitOfWork(ABC):
    """
    All reads and writes issued inside one atomic unit of work.

    Nothing is visible to other units of work until the surrounding
    `IStockLedgerRepository.unit_of_work()` block exits cleanly.
    """

    # --- Products ---

    @abstractmethod
    def get_product_by_id(self, product_id: int, for_update: bool = False) -> Optional[Product]:
        """Retrieves a product by id, optionally locking its row until the unit of work ends."""
        pass

    @abstractmethod
    def get_product_by_sku(self, sku: str, for_update: bool = False) -> Optional[Product]:
        """Retrieves a product by its exact SKU."""
        pass

    @abstractmethod
    def get_product_by_name(self, name: str, for_update: bool = False) -> Optional[Product]:
        """Retrieves the oldest product with exactly this name."""
        pass

    @abstractmethod
    def list_products(
        self, search: Optional[str] = None, group: Optional[str] = None, limit: int = 50, offset: int = 0
    ) -> list[Product]:
        """Lists products ordered by name, optionally filtered by a name/SKU substring and group."""
        pass

    @abstractmethod
    def insert_product(self, product: Product) -> Product:
        """Inserts a product and returns it with its id. Raises DuplicateKeyError on an existing SKU."""
        pass

    @abstractmethod
    def update_product(self, product: Product) -> None:
        """Persists identity, price and informational stock fields. Ledger-owned counters are not written."""
        pass

    @abstractmethod
    def delete_product(self, product_id: int) -> None:
        """Deletes a product. Raises ReferentialIntegrityError while transactions reference it."""
        pass

    @abstractmethod
    def adjust_stock(self, product_id: int, movement: StockMovement, guard_non_negative: bool) -> bool:
        """
        Applies a movement to the ledger-owned counters in a single conditional write.
        With `guard_non_negative`, nothing is written if `quantity` would drop below zero.
        Returns whether the product row was changed.
        """
        pass

    # --- Transactions ---

    @abstractmethod
    def insert_transaction(self, transaction: StockTransaction) -> StockTransaction:
        """Inserts a transaction and returns it with its id and timestamps."""
        pass

    @abstractmethod
    def get_transaction(self, transaction_id: int, for_update: bool = False) -> Optional[StockTransaction]:
        """Retrieves a transaction together with its product's name and SKU."""
        pass

    @abstractmethod
    def list_transactions(
        self,
        transaction_type: Optional[TransactionType] = None,
        product_id: Optional[int] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[StockTransaction]:
        """Lists transactions newest first."""
        pass

    @abstractmethod
    def update_transaction(self, transaction: StockTransaction) -> None:
        """Persists all mutable fields of a transaction."""
        pass

    @abstractmethod
    def delete_transaction(self, transaction_id: int) -> None:
        """Deletes a transaction row."""
        pass

    @abstractmethod
    def count_transactions_for_product(self, product_id: int) -> int:
        """Counts transactions referencing a product."""
        pass

    # --- History ---

    @abstractmethod
    def insert_history_log(self, entry: HistoryLog) -> HistoryLog:
        """Appends an audit entry."""
        pass

    @abstractmethod
    def list_history_logs(
        self,
        action: Optional[HistoryAction] = None,
        product_id: Optional[int] = None,
        user_id: Optional[int] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[HistoryLog]:
        """Lists audit entries newest first."""
        pass

    # --- Consistency ---

    @abstractmethod
    def get_stock_balances(self) -> list[StockBalanceDTO]:
        """Returns every product's stored counters with the import/export totals of its transactions."""
        pass


class IStockLedgerRepository(ABC):
    """Storage handle for the stock ledger with an explicit open/close lifecycle."""

    @abstractmethod
    def open(self) -> None:
        """Acquires the underlying connection resources."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Releases the underlying connection resources."""
        pass

    @abstractmethod
    def create_tables(self) -> None:
        """Creates the ledger tables if they do not exist."""
        pass

    @abstractmethod
    def unit_of_work(self) -> AbstractContextManager[IStockLedgerUnitOfWork]:
        """Opens an atomic unit of work: committed on clean exit, rolled back on any exception."""
        pass

    def max_concurrent_units(self) -> Optional[int]:
        """Upper bound on units of work open at the same time, None when unbounded."""
        return None
