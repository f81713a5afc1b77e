# tests/conftest.py
import copy
import dataclasses
import threading
from contextlib import contextmanager
from decimal import Decimal
from typing import Iterator, Optional

import pytest

from src.common.config.settings import settings
from src.common.dtos.ledger_dtos import ProductCreateDTO, StockBalanceDTO
from src.common.exceptions.custom_exceptions import DuplicateKeyError, ReferentialIntegrityError
from src.common.utils.date_utils import utc_now
from src.stock_ledger_domain.application.history_service import HistoryService
from src.stock_ledger_domain.application.ledger_coordinator import LedgerCoordinator
from src.stock_ledger_domain.application.product_directory_service import ProductDirectoryService
from src.stock_ledger_domain.application.stock_audit_service import StockAuditService
from src.stock_ledger_domain.domain.entities.history_log import HistoryAction, HistoryLog
from src.stock_ledger_domain.domain.entities.product import Product
from src.stock_ledger_domain.domain.entities.stock_movement import StockMovement
from src.stock_ledger_domain.domain.entities.stock_transaction import StockTransaction, TransactionType
from src.stock_ledger_domain.domain.repositories.stock_ledger_repository import (
    IStockLedgerRepository,
    IStockLedgerUnitOfWork,
)


class InMemoryStockLedgerUnitOfWork(IStockLedgerUnitOfWork):
    """Works directly on the repository's state; the repository restores a snapshot on rollback."""

    def __init__(self, repository: "InMemoryStockLedgerRepository") -> None:
        self.repo = repository

    # --- Products ---

    def get_product_by_id(self, product_id: int, for_update: bool = False) -> Optional[Product]:
        product = self.repo.products.get(product_id)
        return copy.copy(product) if product else None

    def get_product_by_sku(self, sku: str, for_update: bool = False) -> Optional[Product]:
        for product in self.repo.products.values():
            if product.sku == sku:
                return copy.copy(product)
        return None

    def get_product_by_name(self, name: str, for_update: bool = False) -> Optional[Product]:
        matches = [p for p in self.repo.products.values() if p.name == name]
        return copy.copy(min(matches, key=lambda p: p.id)) if matches else None

    def list_products(
        self, search: Optional[str] = None, group: Optional[str] = None, limit: int = 50, offset: int = 0
    ) -> list[Product]:
        products = [
            p
            for p in self.repo.products.values()
            if (not search or search in p.name or search in p.sku) and (not group or p.group == group)
        ]
        products.sort(key=lambda p: (p.name, p.id))
        return [copy.copy(p) for p in products[offset : offset + limit]]

    def insert_product(self, product: Product) -> Product:
        if any(p.sku == product.sku for p in self.repo.products.values()):
            raise DuplicateKeyError(product.sku)
        now = utc_now()
        stored = dataclasses.replace(product, id=self.repo.next_id("product"), created_at=now, updated_at=now)
        self.repo.products[stored.id] = stored
        return copy.copy(stored)

    def update_product(self, product: Product) -> None:
        if any(p.sku == product.sku and p.id != product.id for p in self.repo.products.values()):
            raise DuplicateKeyError(product.sku)
        stored = self.repo.products[product.id]
        for field_name in (
            "name",
            "sku",
            "group",
            "unit",
            "unit_cost",
            "retail_price",
            "display_stock",
            "warehouse_stock",
            "damaged_stock",
        ):
            setattr(stored, field_name, getattr(product, field_name))
        stored.updated_at = utc_now()

    def delete_product(self, product_id: int) -> None:
        if self.count_transactions_for_product(product_id):
            raise ReferentialIntegrityError(f"Product {product_id} is still referenced")
        self.repo.products.pop(product_id, None)
        self.repo.history = [
            dataclasses.replace(entry, product_id=None) if entry.product_id == product_id else entry
            for entry in self.repo.history
        ]

    def adjust_stock(self, product_id: int, movement: StockMovement, guard_non_negative: bool) -> bool:
        product = self.repo.products.get(product_id)
        if product is None:
            return False
        if guard_non_negative and product.quantity + movement.quantity_delta < 0:
            return False
        product.quantity += movement.quantity_delta
        product.ending_stock += movement.quantity_delta
        product.new_stock += movement.new_stock_delta
        product.sold_stock += movement.sold_stock_delta
        product.updated_at = utc_now()
        return True

    # --- Transactions ---

    def insert_transaction(self, transaction: StockTransaction) -> StockTransaction:
        if transaction.product_id not in self.repo.products:
            raise ReferentialIntegrityError(f"Product {transaction.product_id} does not exist")
        now = utc_now()
        stored = dataclasses.replace(
            transaction,
            id=self.repo.next_id("transaction"),
            occurred_at=transaction.occurred_at or now,
            created_at=now,
            updated_at=now,
            product_name=None,
            product_sku=None,
        )
        self.repo.transactions[stored.id] = stored
        return self.get_transaction(stored.id)

    def get_transaction(self, transaction_id: int, for_update: bool = False) -> Optional[StockTransaction]:
        transaction = self.repo.transactions.get(transaction_id)
        if transaction is None:
            return None
        product = self.repo.products[transaction.product_id]
        return dataclasses.replace(transaction, product_name=product.name, product_sku=product.sku)

    def list_transactions(
        self,
        transaction_type: Optional[TransactionType] = None,
        product_id: Optional[int] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[StockTransaction]:
        matches = [
            t
            for t in self.repo.transactions.values()
            if (transaction_type is None or t.type == transaction_type)
            and (product_id is None or t.product_id == product_id)
        ]
        matches.sort(key=lambda t: (t.occurred_at, t.id), reverse=True)
        return [self.get_transaction(t.id) for t in matches[offset : offset + limit]]

    def update_transaction(self, transaction: StockTransaction) -> None:
        self.repo.transactions[transaction.id] = dataclasses.replace(
            transaction, updated_at=utc_now(), product_name=None, product_sku=None
        )

    def delete_transaction(self, transaction_id: int) -> None:
        self.repo.transactions.pop(transaction_id, None)

    def count_transactions_for_product(self, product_id: int) -> int:
        return sum(1 for t in self.repo.transactions.values() if t.product_id == product_id)

    # --- History ---

    def insert_history_log(self, entry: HistoryLog) -> HistoryLog:
        if entry.product_id is not None and entry.product_id not in self.repo.products:
            raise ReferentialIntegrityError(f"Product {entry.product_id} does not exist")
        stored = dataclasses.replace(entry, id=self.repo.next_id("history"), timestamp=entry.timestamp or utc_now())
        self.repo.history.append(stored)
        return stored

    def list_history_logs(
        self,
        action: Optional[HistoryAction] = None,
        product_id: Optional[int] = None,
        user_id: Optional[int] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[HistoryLog]:
        matches = [
            e
            for e in self.repo.history
            if (action is None or e.action == action)
            and (product_id is None or e.product_id == product_id)
            and (user_id is None or e.user_id == user_id)
        ]
        matches.sort(key=lambda e: (e.timestamp, e.id), reverse=True)
        return matches[offset : offset + limit]

    # --- Consistency ---

    def get_stock_balances(self) -> list[StockBalanceDTO]:
        balances = []
        for product in sorted(self.repo.products.values(), key=lambda p: p.id):
            transactions = [t for t in self.repo.transactions.values() if t.product_id == product.id]
            balances.append(
                StockBalanceDTO(
                    product_id=product.id,
                    sku=product.sku,
                    name=product.name,
                    quantity=product.quantity,
                    ending_stock=product.ending_stock,
                    new_stock=product.new_stock,
                    sold_stock=product.sold_stock,
                    imported_total=sum(t.quantity for t in transactions if t.type == TransactionType.IMPORT),
                    exported_total=sum(t.quantity for t in transactions if t.type == TransactionType.EXPORT),
                )
            )
        return balances


class InMemoryStockLedgerRepository(IStockLedgerRepository):
    """
    Test double for the MySQL repository. Units of work are serialized by one
    lock and a failed unit of work restores the state it started from.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self.products: dict[int, Product] = {}
        self.transactions: dict[int, StockTransaction] = {}
        self.history: list[HistoryLog] = []
        self._sequences = {"product": 0, "transaction": 0, "history": 0}
        self.is_open = False
        self.commits = 0
        self.rollbacks = 0

    def next_id(self, sequence: str) -> int:
        self._sequences[sequence] += 1
        return self._sequences[sequence]

    def open(self) -> None:
        self.is_open = True

    def close(self) -> None:
        self.is_open = False

    def create_tables(self) -> None:
        pass

    @contextmanager
    def unit_of_work(self) -> Iterator[IStockLedgerUnitOfWork]:
        with self._lock:
            snapshot = copy.deepcopy((self.products, self.transactions, self.history, self._sequences))
            try:
                yield InMemoryStockLedgerUnitOfWork(self)
            except BaseException:
                self.products, self.transactions, self.history, self._sequences = snapshot
                self.rollbacks += 1
                raise
            self.commits += 1


@pytest.fixture(autouse=True)
def mock_settings_database_info(mocker) -> None:
    """Mocks the database settings for consistent testing."""
    mocker.patch.object(settings, "DB_HOST", "localhost")
    mocker.patch.object(settings, "DB_DATABASE", "stock_ledger_test")
    mocker.patch.object(settings, "DB_POOL_SIZE", 3)


@pytest.fixture
def ledger_repository() -> InMemoryStockLedgerRepository:
    """In-memory stock ledger repository."""
    return InMemoryStockLedgerRepository()


@pytest.fixture
def unit_of_work_class() -> type:
    """The in-memory unit-of-work class, for patching single statements."""
    return InMemoryStockLedgerUnitOfWork


@pytest.fixture
def product_directory(ledger_repository) -> ProductDirectoryService:
    return ProductDirectoryService(ledger_repository, default_group="unclassified", default_unit="pcs")


@pytest.fixture
def ledger_coordinator(ledger_repository, product_directory) -> LedgerCoordinator:
    """LedgerCoordinator with explicit tunables so tests do not depend on the environment."""
    return LedgerCoordinator(
        ledger_repository,
        product_directory,
        max_workers=4,
        time_budget_seconds=60,
        failure_list_limit=100,
        delete_log_threshold=200,
        allow_negative_on_reversal=False,
    )


@pytest.fixture
def history_service(ledger_repository) -> HistoryService:
    return HistoryService(ledger_repository)


@pytest.fixture
def stock_audit_service(ledger_repository) -> StockAuditService:
    return StockAuditService(ledger_repository)


@pytest.fixture
def widget_product(product_directory) -> Product:
    """Product 'Widget' with SKU W-1 and no stock."""
    return product_directory.create_product(
        ProductCreateDTO(
            name="Widget",
            sku="W-1",
            unit_cost=Decimal("2.50"),
            retail_price=Decimal("4.00"),
        )
    )


@pytest.fixture
def sample_batch_payloads() -> list[dict]:
    """Three valid rows and one row without a quantity."""
    return [
        {"type": "import", "productName": "Widget", "sku": "W-1", "quantity": 10},
        {"type": "import", "productName": "Gadget", "sku": "G-1", "quantity": "5"},
        {"type": "import", "product_name": "Sprocket", "quantity": 7, "unitPrice": "1.20"},
        {"type": "export", "productName": "Widget", "sku": "W-1"},
    ]
