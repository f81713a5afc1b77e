# src/stock_ledger_domain/infrastructure/persistence/mysql_stock_ledger_repository.py
"""MySQL implementation of the stock ledger repository."""

import logging
import threading
from contextlib import contextmanager
from decimal import Decimal
from typing import Any, Iterator, Optional

from mysql.connector import Error, errorcode, pooling

from src.common.config.settings import settings
from src.common.dtos.ledger_dtos import StockBalanceDTO
from src.common.exceptions.custom_exceptions import (
    ApplicationError,
    DatabaseError,
    DuplicateKeyError,
    ReferentialIntegrityError,
)
from src.common.utils.date_utils import from_db_datetime, to_db_datetime, utc_now
from src.stock_ledger_domain.domain.entities.history_log import HistoryAction, HistoryLog
from src.stock_ledger_domain.domain.entities.product import Product
from src.stock_ledger_domain.domain.entities.stock_movement import StockMovement
from src.stock_ledger_domain.domain.entities.stock_transaction import StockTransaction, TransactionType
from src.stock_ledger_domain.domain.repositories.stock_ledger_repository import (
    IStockLedgerRepository,
    IStockLedgerUnitOfWork,
)

logger = logging.getLogger(__name__)

_PRODUCT_COLUMNS = """
    id, name, sku, product_group, unit, unit_cost, retail_price, quantity, display_stock,
    warehouse_stock, new_stock, sold_stock, damaged_stock, ending_stock, created_at, updated_at
"""

_TRANSACTION_SELECT = """
    SELECT t.id, t.product_id, t.transaction_type, t.quantity, t.unit_price, t.user_id, t.reason,
           t.note, t.summary, t.code, t.occurred_at, t.created_at, t.updated_at,
           p.name AS product_name, p.sku AS product_sku
    FROM wms_transactions t
    JOIN wms_products p ON p.id = t.product_id
"""

_FOREIGN_KEY_ERRORS = (errorcode.ER_ROW_IS_REFERENCED_2, errorcode.ER_NO_REFERENCED_ROW_2)


def _translate_error(e: Error, message: str, sku: Optional[str] = None) -> ApplicationError:
    """Maps a driver error to the application error hierarchy."""
    if e.errno == errorcode.ER_DUP_ENTRY:
        return DuplicateKeyError(sku, original_exception=e)
    if e.errno in _FOREIGN_KEY_ERRORS:
        return ReferentialIntegrityError(f"{message}: referenced record constraint violated", original_exception=e)
    return DatabaseError(f"{message}: {e}", original_exception=e)


class MySQLStockLedgerUnitOfWork(IStockLedgerUnitOfWork):
    """Statements issued on one pooled connection inside one database transaction."""

    def __init__(self, connection) -> None:
        self._connection = connection

    # --- Statement helpers ---

    def _fetch_all(self, query: str, params: tuple = (), error_message: str = "Query failed") -> list[dict]:
        cursor = self._connection.cursor(dictionary=True)
        try:
            cursor.execute(query, params)
            return cursor.fetchall()
        except Error as e:
            raise _translate_error(e, error_message)
        finally:
            cursor.close()

    def _fetch_one(self, query: str, params: tuple = (), error_message: str = "Query failed") -> Optional[dict]:
        rows = self._fetch_all(query, params, error_message)
        return rows[0] if rows else None

    def _write(
        self, query: str, params: tuple = (), error_message: str = "Write failed", sku: Optional[str] = None
    ) -> tuple[int, int]:
        """Executes a data-changing statement and returns (lastrowid, rowcount)."""
        cursor = self._connection.cursor()
        try:
            cursor.execute(query, params)
            return cursor.lastrowid, cursor.rowcount
        except Error as e:
            raise _translate_error(e, error_message, sku)
        finally:
            cursor.close()

    @staticmethod
    def _lock_clause(for_update: bool) -> str:
        return " FOR UPDATE" if for_update else ""

    # --- Row mapping ---

    @staticmethod
    def _row_to_product(row: dict[str, Any]) -> Product:
        return Product(
            id=row["id"],
            name=row["name"],
            sku=row["sku"],
            group=row["product_group"],
            unit=row["unit"],
            unit_cost=row["unit_cost"] if row["unit_cost"] is not None else Decimal("0"),
            retail_price=row["retail_price"] if row["retail_price"] is not None else Decimal("0"),
            quantity=row["quantity"],
            display_stock=row["display_stock"],
            warehouse_stock=row["warehouse_stock"],
            new_stock=row["new_stock"],
            sold_stock=row["sold_stock"],
            damaged_stock=row["damaged_stock"],
            ending_stock=row["ending_stock"],
            created_at=from_db_datetime(row.get("created_at")),
            updated_at=from_db_datetime(row.get("updated_at")),
        )

    @staticmethod
    def _row_to_transaction(row: dict[str, Any]) -> StockTransaction:
        return StockTransaction(
            id=row["id"],
            product_id=row["product_id"],
            type=TransactionType(row["transaction_type"]),
            quantity=row["quantity"],
            unit_price=row["unit_price"],
            user_id=row["user_id"],
            reason=row["reason"],
            note=row["note"],
            summary=row["summary"],
            code=row["code"],
            occurred_at=from_db_datetime(row["occurred_at"]),
            created_at=from_db_datetime(row.get("created_at")),
            updated_at=from_db_datetime(row.get("updated_at")),
            product_name=row.get("product_name"),
            product_sku=row.get("product_sku"),
        )

    @staticmethod
    def _row_to_history_log(row: dict[str, Any]) -> HistoryLog:
        return HistoryLog(
            id=row["id"],
            action=HistoryAction(row["action"]),
            product_id=row["product_id"],
            product_name=row["product_name"],
            product_sku=row["product_sku"],
            user_id=row["user_id"],
            details=row["details"] or "",
            timestamp=from_db_datetime(row["timestamp"]),
        )

    # --- Products ---

    def get_product_by_id(self, product_id: int, for_update: bool = False) -> Optional[Product]:
        row = self._fetch_one(
            f"SELECT {_PRODUCT_COLUMNS} FROM wms_products WHERE id = %s{self._lock_clause(for_update)}",
            (product_id,),
            f"Error retrieving product {product_id}",
        )
        return self._row_to_product(row) if row else None

    def get_product_by_sku(self, sku: str, for_update: bool = False) -> Optional[Product]:
        row = self._fetch_one(
            f"SELECT {_PRODUCT_COLUMNS} FROM wms_products WHERE sku = %s{self._lock_clause(for_update)}",
            (sku,),
            f"Error retrieving product with SKU {sku}",
        )
        return self._row_to_product(row) if row else None

    def get_product_by_name(self, name: str, for_update: bool = False) -> Optional[Product]:
        row = self._fetch_one(
            f"SELECT {_PRODUCT_COLUMNS} FROM wms_products WHERE name = %s ORDER BY id LIMIT 1"
            f"{self._lock_clause(for_update)}",
            (name,),
            f"Error retrieving product named {name}",
        )
        return self._row_to_product(row) if row else None

    def list_products(
        self, search: Optional[str] = None, group: Optional[str] = None, limit: int = 50, offset: int = 0
    ) -> list[Product]:
        conditions = []
        params: list[Any] = []
        if search:
            conditions.append("(name LIKE %s OR sku LIKE %s)")
            params.extend([f"%{search}%", f"%{search}%"])
        if group:
            conditions.append("product_group = %s")
            params.append(group)
        where = f" WHERE {' AND '.join(conditions)}" if conditions else ""
        params.extend([limit, offset])

        rows = self._fetch_all(
            f"SELECT {_PRODUCT_COLUMNS} FROM wms_products{where} ORDER BY name, id LIMIT %s OFFSET %s",
            tuple(params),
            "Error listing products",
        )
        return [self._row_to_product(row) for row in rows]

    def insert_product(self, product: Product) -> Product:
        insert_query = """
        INSERT INTO wms_products
        (name, sku, product_group, unit, unit_cost, retail_price, quantity, display_stock,
         warehouse_stock, new_stock, sold_stock, damaged_stock, ending_stock)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """
        params = (
            product.name,
            product.sku,
            product.group,
            product.unit,
            product.unit_cost,
            product.retail_price,
            product.quantity,
            product.display_stock,
            product.warehouse_stock,
            product.new_stock,
            product.sold_stock,
            product.damaged_stock,
            product.ending_stock,
        )
        product_id, _ = self._write(insert_query, params, f"Error inserting product {product.sku}", sku=product.sku)
        return self.get_product_by_id(product_id)

    def update_product(self, product: Product) -> None:
        update_query = """
        UPDATE wms_products
        SET name = %s, sku = %s, product_group = %s, unit = %s, unit_cost = %s, retail_price = %s,
            display_stock = %s, warehouse_stock = %s, damaged_stock = %s
        WHERE id = %s
        """
        params = (
            product.name,
            product.sku,
            product.group,
            product.unit,
            product.unit_cost,
            product.retail_price,
            product.display_stock,
            product.warehouse_stock,
            product.damaged_stock,
            product.id,
        )
        self._write(update_query, params, f"Error updating product {product.id}", sku=product.sku)

    def delete_product(self, product_id: int) -> None:
        self._write("DELETE FROM wms_products WHERE id = %s", (product_id,), f"Error deleting product {product_id}")

    def adjust_stock(self, product_id: int, movement: StockMovement, guard_non_negative: bool) -> bool:
        adjust_query = """
        UPDATE wms_products
        SET quantity = quantity + %s,
            ending_stock = ending_stock + %s,
            new_stock = new_stock + %s,
            sold_stock = sold_stock + %s
        WHERE id = %s
        """
        params: tuple = (
            movement.quantity_delta,
            movement.quantity_delta,
            movement.new_stock_delta,
            movement.sold_stock_delta,
            product_id,
        )
        if guard_non_negative:
            adjust_query += " AND quantity + %s >= 0"
            params += (movement.quantity_delta,)

        _, rowcount = self._write(adjust_query, params, f"Error adjusting stock of product {product_id}")
        return rowcount > 0

    # --- Transactions ---

    def insert_transaction(self, transaction: StockTransaction) -> StockTransaction:
        insert_query = """
        INSERT INTO wms_transactions
        (product_id, transaction_type, quantity, unit_price, user_id, reason, note, summary, code, occurred_at)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """
        params = (
            transaction.product_id,
            transaction.type.value,
            transaction.quantity,
            transaction.unit_price,
            transaction.user_id,
            transaction.reason,
            transaction.note,
            transaction.summary,
            transaction.code,
            to_db_datetime(transaction.occurred_at or utc_now()),
        )
        transaction_id, _ = self._write(
            insert_query, params, f"Error inserting transaction for product {transaction.product_id}"
        )
        return self.get_transaction(transaction_id)

    def get_transaction(self, transaction_id: int, for_update: bool = False) -> Optional[StockTransaction]:
        row = self._fetch_one(
            f"{_TRANSACTION_SELECT} WHERE t.id = %s{self._lock_clause(for_update)}",
            (transaction_id,),
            f"Error retrieving transaction {transaction_id}",
        )
        return self._row_to_transaction(row) if row else None

    def list_transactions(
        self,
        transaction_type: Optional[TransactionType] = None,
        product_id: Optional[int] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[StockTransaction]:
        conditions = []
        params: list[Any] = []
        if transaction_type is not None:
            conditions.append("t.transaction_type = %s")
            params.append(transaction_type.value)
        if product_id is not None:
            conditions.append("t.product_id = %s")
            params.append(product_id)
        where = f" WHERE {' AND '.join(conditions)}" if conditions else ""
        params.extend([limit, offset])

        rows = self._fetch_all(
            f"{_TRANSACTION_SELECT}{where} ORDER BY t.occurred_at DESC, t.id DESC LIMIT %s OFFSET %s",
            tuple(params),
            "Error listing transactions",
        )
        return [self._row_to_transaction(row) for row in rows]

    def update_transaction(self, transaction: StockTransaction) -> None:
        update_query = """
        UPDATE wms_transactions
        SET product_id = %s, transaction_type = %s, quantity = %s, unit_price = %s, user_id = %s,
            reason = %s, note = %s, summary = %s, code = %s, occurred_at = %s
        WHERE id = %s
        """
        params = (
            transaction.product_id,
            transaction.type.value,
            transaction.quantity,
            transaction.unit_price,
            transaction.user_id,
            transaction.reason,
            transaction.note,
            transaction.summary,
            transaction.code,
            to_db_datetime(transaction.occurred_at),
            transaction.id,
        )
        self._write(update_query, params, f"Error updating transaction {transaction.id}")

    def delete_transaction(self, transaction_id: int) -> None:
        self._write(
            "DELETE FROM wms_transactions WHERE id = %s", (transaction_id,), f"Error deleting transaction {transaction_id}"
        )

    def count_transactions_for_product(self, product_id: int) -> int:
        row = self._fetch_one(
            "SELECT COUNT(*) AS transaction_count FROM wms_transactions WHERE product_id = %s",
            (product_id,),
            f"Error counting transactions of product {product_id}",
        )
        return int(row["transaction_count"]) if row else 0

    # --- History ---

    def insert_history_log(self, entry: HistoryLog) -> HistoryLog:
        insert_query = """
        INSERT INTO wms_history_logs (action, product_id, product_name, product_sku, user_id, details, timestamp)
        VALUES (%s, %s, %s, %s, %s, %s, %s)
        """
        timestamp = entry.timestamp or utc_now()
        params = (
            entry.action.value,
            entry.product_id,
            entry.product_name,
            entry.product_sku,
            entry.user_id,
            entry.details,
            to_db_datetime(timestamp),
        )
        entry_id, _ = self._write(insert_query, params, f"Error writing {entry.action.value} history entry")
        return HistoryLog(
            id=entry_id,
            action=entry.action,
            product_id=entry.product_id,
            product_name=entry.product_name,
            product_sku=entry.product_sku,
            user_id=entry.user_id,
            details=entry.details,
            timestamp=timestamp,
        )

    def list_history_logs(
        self,
        action: Optional[HistoryAction] = None,
        product_id: Optional[int] = None,
        user_id: Optional[int] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[HistoryLog]:
        conditions = []
        params: list[Any] = []
        if action is not None:
            conditions.append("action = %s")
            params.append(action.value)
        if product_id is not None:
            conditions.append("product_id = %s")
            params.append(product_id)
        if user_id is not None:
            conditions.append("user_id = %s")
            params.append(user_id)
        where = f" WHERE {' AND '.join(conditions)}" if conditions else ""
        params.extend([limit, offset])

        rows = self._fetch_all(
            f"""
            SELECT id, action, product_id, product_name, product_sku, user_id, details, timestamp
            FROM wms_history_logs{where}
            ORDER BY timestamp DESC, id DESC
            LIMIT %s OFFSET %s
            """,
            tuple(params),
            "Error listing history entries",
        )
        return [self._row_to_history_log(row) for row in rows]

    # --- Consistency ---

    def get_stock_balances(self) -> list[StockBalanceDTO]:
        rows = self._fetch_all(
            """
            SELECT p.id AS product_id, p.sku, p.name, p.quantity, p.ending_stock, p.new_stock, p.sold_stock,
                   COALESCE(SUM(CASE WHEN t.transaction_type = 'import' THEN t.quantity ELSE 0 END), 0)
                       AS imported_total,
                   COALESCE(SUM(CASE WHEN t.transaction_type = 'export' THEN t.quantity ELSE 0 END), 0)
                       AS exported_total
            FROM wms_products p
            LEFT JOIN wms_transactions t ON t.product_id = p.id
            GROUP BY p.id, p.sku, p.name, p.quantity, p.ending_stock, p.new_stock, p.sold_stock
            ORDER BY p.id
            """,
            (),
            "Error computing stock balances",
        )
        return [
            StockBalanceDTO(
                product_id=row["product_id"],
                sku=row["sku"],
                name=row["name"],
                quantity=row["quantity"],
                ending_stock=row["ending_stock"],
                new_stock=row["new_stock"],
                sold_stock=row["sold_stock"],
                imported_total=int(row["imported_total"]),
                exported_total=int(row["exported_total"]),
            )
            for row in rows
        ]


class MySQLStockLedgerRepository(IStockLedgerRepository):
    """MySQL implementation of the stock ledger repository backed by a connection pool."""

    def __init__(self, pool_size: Optional[int] = None, pool_timeout_seconds: Optional[float] = None) -> None:
        """
        Initializes the repository. No connection is made until open().

        The driver's pool fails immediately when every connection is checked out,
        so borrowers queue on a semaphore sized like the pool and give up after
        `pool_timeout_seconds`.
        """
        self.pool_size = pool_size or settings.DB_POOL_SIZE
        self.pool_timeout_seconds = (
            pool_timeout_seconds if pool_timeout_seconds is not None else settings.DB_POOL_TIMEOUT_SECONDS
        )
        self._pool = None
        self._available = threading.BoundedSemaphore(self.pool_size)

    def open(self) -> None:
        """Creates the connection pool."""
        if self._pool is not None:
            return
        try:
            self._pool = pooling.MySQLConnectionPool(
                pool_name="stock_ledger_pool",
                pool_size=self.pool_size,
                host=settings.DB_HOST,
                port=settings.DB_PORT,
                database=settings.DB_DATABASE,
                user=settings.DB_USER,
                password=settings.DB_PASSWORD,
                autocommit=False,
                charset="utf8mb4",
                use_unicode=True,
                time_zone="+00:00",  # DATETIME columns hold UTC
            )
        except Error as e:
            raise DatabaseError(f"Failed to create MySQL connection pool: {e}", original_exception=e)
        logger.info(f"MySQL connection pool opened ({self.pool_size} connections to {settings.DB_HOST})")

    def close(self) -> None:
        """Drops the pool; connections still checked out are closed when returned."""
        if self._pool is None:
            return
        self._pool = None
        logger.info("MySQL connection pool closed")

    def max_concurrent_units(self) -> Optional[int]:
        return self.pool_size

    def _get_connection(self):
        """Borrows a connection from the pool, waiting for one to be returned if all are in use."""
        if self._pool is None:
            self.open()
        if not self._available.acquire(timeout=self.pool_timeout_seconds):
            raise DatabaseError(
                f"No MySQL connection became available within {self.pool_timeout_seconds}s "
                f"(pool size {self.pool_size})"
            )
        try:
            return self._pool.get_connection()
        except Error as e:
            self._available.release()
            raise DatabaseError(f"Failed to get a MySQL connection from the pool: {e}", original_exception=e)

    def _release_connection(self, conn) -> None:
        try:
            self._release_connection(conn)
        finally:
            self._available.release()

    def create_tables(self) -> None:
        """Creates the 'wms_' tables of the stock ledger."""
        create_products_table_query = """
        CREATE TABLE IF NOT EXISTS wms_products (
            id INT UNSIGNED PRIMARY KEY AUTO_INCREMENT,
            name VARCHAR(255) NOT NULL,
            sku VARCHAR(100) NOT NULL,
            product_group VARCHAR(100) NOT NULL DEFAULT 'unclassified',
            unit VARCHAR(50) NOT NULL DEFAULT 'pcs',
            unit_cost DECIMAL(15, 2) NOT NULL DEFAULT 0,
            retail_price DECIMAL(15, 2) NOT NULL DEFAULT 0,
            quantity INT NOT NULL DEFAULT 0, -- Signed: reversals may be allowed to go negative
            display_stock INT NOT NULL DEFAULT 0,
            warehouse_stock INT NOT NULL DEFAULT 0,
            new_stock INT NOT NULL DEFAULT 0,
            sold_stock INT NOT NULL DEFAULT 0,
            damaged_stock INT NOT NULL DEFAULT 0,
            ending_stock INT NOT NULL DEFAULT 0,
            created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
            updated_at DATETIME DEFAULT CURRENT_TIMESTAMP ON UPDATE CURRENT_TIMESTAMP,
            UNIQUE KEY uk_sku (sku),
            INDEX idx_name (name),
            INDEX idx_product_group (product_group)
        ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4;
        """
        create_transactions_table_query = """
        CREATE TABLE IF NOT EXISTS wms_transactions (
            id INT UNSIGNED PRIMARY KEY AUTO_INCREMENT,
            product_id INT UNSIGNED NOT NULL,
            transaction_type ENUM('import', 'export') NOT NULL,
            quantity INT UNSIGNED NOT NULL,
            unit_price DECIMAL(15, 2),
            user_id INT UNSIGNED,
            reason VARCHAR(255),
            note TEXT,
            summary TEXT,
            code VARCHAR(100),
            occurred_at DATETIME NOT NULL,
            created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
            updated_at DATETIME DEFAULT CURRENT_TIMESTAMP ON UPDATE CURRENT_TIMESTAMP,
            INDEX idx_product_id (product_id),
            INDEX idx_type_occurred (transaction_type, occurred_at),
            CONSTRAINT fk_transactions_product FOREIGN KEY (product_id)
                REFERENCES wms_products (id) ON DELETE RESTRICT
        ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4;
        """
        create_history_logs_table_query = """
        CREATE TABLE IF NOT EXISTS wms_history_logs (
            id BIGINT UNSIGNED PRIMARY KEY AUTO_INCREMENT,
            action VARCHAR(50) NOT NULL,
            product_id INT UNSIGNED NULL,
            product_name VARCHAR(255), -- Snapshot at write time
            product_sku VARCHAR(100),
            user_id INT UNSIGNED,
            details TEXT,
            timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
            INDEX idx_action (action),
            INDEX idx_product_id (product_id),
            INDEX idx_timestamp (timestamp),
            CONSTRAINT fk_history_product FOREIGN KEY (product_id)
                REFERENCES wms_products (id) ON DELETE SET NULL
        ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4;
        """
        conn = self._get_connection()
        cursor = conn.cursor()
        try:
            cursor.execute(create_products_table_query)
            cursor.execute(create_transactions_table_query)
            cursor.execute(create_history_logs_table_query)
            conn.commit()
            logger.info("WMS stock ledger tables checked/created.")
        except Error as e:
            conn.rollback()
            raise DatabaseError(f"Error creating WMS stock ledger tables: {e}", original_exception=e)
        finally:
            cursor.close()
            self._release_connection(conn)

    @contextmanager
    def unit_of_work(self) -> Iterator[IStockLedgerUnitOfWork]:
        """Runs the block in one READ COMMITTED transaction on one pooled connection."""
        conn = self._get_connection()
        try:
            conn.start_transaction(isolation_level="READ COMMITTED")
            yield MySQLStockLedgerUnitOfWork(conn)
            conn.commit()
        except Error as e:
            self._rollback(conn)
            raise DatabaseError(f"Unit of work failed: {e}", original_exception=e)
        except BaseException:
            self._rollback(conn)
            raise
        finally:
            self._release_connection(conn)

    @staticmethod
    def _rollback(conn) -> None:
        try:
            conn.rollback()
        except Error as e:
            logger.error(f"Rollback failed: {e}")
