# src/stock_ledger_domain/application/ledger_coordinator.py
"""Application service recording, editing and reversing stock transactions."""

import concurrent.futures
import dataclasses
import logging
import time
from contextlib import ExitStack
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Optional, Union

from src.common.config.settings import settings
from src.common.dtos.ledger_dtos import (
    BatchItemFailureDTO,
    BatchItemSuccessDTO,
    BatchResultDTO,
    DeleteFailureDTO,
    DeleteResultDTO,
    TransactionChangesDTO,
    TransactionIntentDTO,
)
from src.common.exceptions.custom_exceptions import ApplicationError, InsufficientStockError, NotFoundError
from src.common.utils.date_utils import utc_now
from src.stock_ledger_domain.application.product_directory_service import ProductDirectoryService
from src.stock_ledger_domain.domain.entities.history_log import HistoryAction, HistoryLog
from src.stock_ledger_domain.domain.entities.product import Product
from src.stock_ledger_domain.domain.entities.stock_movement import StockMovement
from src.stock_ledger_domain.domain.entities.stock_transaction import StockTransaction, TransactionType
from src.stock_ledger_domain.domain.repositories.stock_ledger_repository import (
    IStockLedgerRepository,
    IStockLedgerUnitOfWork,
)
from src.stock_ledger_domain.domain.services.stock_ledger_domain_service import StockLedgerDomainService

logger = logging.getLogger(__name__)

_EDITABLE_TRANSACTION_FIELDS = ("unit_price", "reason", "note", "summary", "code", "occurred_at")


@dataclass
class AppliedTransaction:
    """A committed transaction and the product snapshot taken right after it."""

    transaction: StockTransaction
    product: Product


class _BatchProductCache:
    """
    Product ids resolved during one batch, keyed by SKU or name.

    The first item for a key is applied while holding the locks of both its SKU
    and its name, so items naming the same new product by SKU in one row and by
    name in another cannot create it twice. An id is only remembered under the
    item's primary key, and only after the item that resolved it has committed.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._key_locks: dict[tuple[str, str], Lock] = {}
        self._product_ids: dict[tuple[str, str], int] = {}

    @staticmethod
    def key_for(intent: TransactionIntentDTO) -> Optional[tuple[str, str]]:
        sku = (intent.sku or "").strip()
        if sku:
            return ("sku", sku)
        name = (intent.product_name or "").strip()
        if name:
            return ("name", name)
        return None

    @staticmethod
    def keys_for(intent: TransactionIntentDTO) -> list[tuple[str, str]]:
        """All keys naming the intent's product, in a fixed order so locks are always taken alike."""
        keys = []
        name = (intent.product_name or "").strip()
        if name:
            keys.append(("name", name))
        sku = (intent.sku or "").strip()
        if sku:
            keys.append(("sku", sku))
        return keys

    def lock_for(self, key: tuple[str, str]) -> Lock:
        with self._lock:
            return self._key_locks.setdefault(key, Lock())

    def get(self, key: tuple[str, str]) -> Optional[int]:
        with self._lock:
            return self._product_ids.get(key)

    def remember(self, key: tuple[str, str], product_id: int) -> None:
        with self._lock:
            self._product_ids[key] = product_id


class LedgerCoordinator:
    """
    Ties product resolution, transaction rows, stock counters and the audit log
    together. Every public mutation runs in exactly one unit of work.
    """

    def __init__(
        self,
        repository: IStockLedgerRepository,
        directory: ProductDirectoryService,
        max_workers: Optional[int] = None,
        time_budget_seconds: Optional[float] = None,
        failure_list_limit: Optional[int] = None,
        delete_log_threshold: Optional[int] = None,
        allow_negative_on_reversal: Optional[bool] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.repository = repository
        self.directory = directory
        self.max_workers = max_workers or settings.BATCH_MAX_WORKERS
        self.time_budget_seconds = (
            time_budget_seconds if time_budget_seconds is not None else settings.BATCH_TIME_BUDGET_SECONDS
        )
        self.failure_list_limit = (
            failure_list_limit if failure_list_limit is not None else settings.BATCH_FAILURE_LIST_LIMIT
        )
        self.delete_log_threshold = (
            delete_log_threshold if delete_log_threshold is not None else settings.BATCH_DELETE_LOG_THRESHOLD
        )
        self.allow_negative_on_reversal = (
            allow_negative_on_reversal
            if allow_negative_on_reversal is not None
            else settings.ALLOW_NEGATIVE_STOCK_ON_REVERSAL
        )
        self.clock = clock

    # --- Apply ---

    def apply(self, intent: TransactionIntentDTO) -> AppliedTransaction:
        """
        Records one import or export.

        The product is resolved (and created if unknown), its row is locked, an
        export is checked against on-hand stock, then the counters, the transaction
        row and the audit entry are written in the same unit of work.
        """
        with self.repository.unit_of_work() as uow:
            applied = self._apply_within(uow, intent)

        transaction = applied.transaction
        logger.info(
            f"Recorded {transaction.type.value} #{transaction.id}: {transaction.quantity} x {applied.product.sku}, "
            f"stock now {applied.product.quantity}"
        )
        return applied

    def _apply_within(self, uow: IStockLedgerUnitOfWork, intent: TransactionIntentDTO) -> AppliedTransaction:
        transaction_type = StockLedgerDomainService.normalize_transaction_type(intent.type)
        quantity = StockLedgerDomainService.normalize_quantity(intent.quantity)

        if intent.product_id is not None:
            product = uow.get_product_by_id(intent.product_id, for_update=True)
            if product is None:
                raise NotFoundError("Product", intent.product_id)
        else:
            product = self.directory.resolve_within(
                uow,
                intent.product_name,
                intent.sku,
                user_id=intent.user_id,
                group=intent.group,
                unit=intent.unit,
                unit_cost=intent.unit_cost,
                retail_price=intent.retail_price,
                for_update=True,
            )

        if transaction_type == TransactionType.EXPORT and product.quantity < quantity:
            raise InsufficientStockError(product.quantity, quantity, product.sku)

        movement = StockMovement.for_transaction(transaction_type, quantity)
        self._move_stock(uow, product, movement, guard_non_negative=True)

        if intent.unit_price is not None:
            unit_price = intent.unit_price
        elif transaction_type == TransactionType.IMPORT:
            unit_price = product.unit_cost
        else:
            unit_price = product.retail_price

        transaction = uow.insert_transaction(
            StockTransaction(
                product_id=product.id,
                type=transaction_type,
                quantity=quantity,
                unit_price=unit_price,
                user_id=intent.user_id,
                reason=intent.reason,
                note=intent.note,
                summary=intent.summary,
                code=intent.code,
                occurred_at=intent.occurred_at or utc_now(),
            )
        )

        product_after = uow.get_product_by_id(product.id)
        uow.insert_history_log(
            HistoryLog.for_product(
                StockLedgerDomainService.history_action_for(transaction_type),
                product_after,
                details=StockLedgerDomainService.describe_movement(transaction_type, quantity, product_after, intent.note),
                user_id=intent.user_id,
            )
        )

        transaction.product_name = product_after.name
        transaction.product_sku = product_after.sku
        return AppliedTransaction(transaction=transaction, product=product_after)

    def _move_stock(
        self, uow: IStockLedgerUnitOfWork, product: Product, movement: StockMovement, guard_non_negative: bool
    ) -> None:
        """Writes a movement; a guarded reduction that would go below zero raises InsufficientStockError."""
        if movement.is_zero:
            return
        guarded = guard_non_negative and movement.reduces_stock
        if uow.adjust_stock(product.id, movement, guard_non_negative=guarded):
            return
        current = uow.get_product_by_id(product.id)
        raise InsufficientStockError(
            current.quantity if current else product.quantity, -movement.quantity_delta, product.sku
        )

    # --- Update ---

    def update(
        self, transaction_id: int, changes: TransactionChangesDTO, user_id: Optional[int] = None
    ) -> StockTransaction:
        """
        Edits a recorded transaction and keeps both affected products consistent.

        When the product stays the same, the net difference between the new and
        the old movement is applied once. When the transaction moves to another
        product, the old movement is reversed on the old product and the new one
        is applied to the new product. `changes.user_id` (or `user_id`) identifies
        the editor in the audit entry; the transaction keeps its original author.
        """
        actor = changes.user_id if changes.user_id is not None else user_id

        with self.repository.unit_of_work() as uow:
            transaction = uow.get_transaction(transaction_id, for_update=True)
            if transaction is None:
                raise NotFoundError("Transaction", transaction_id)

            new_type = (
                StockLedgerDomainService.normalize_transaction_type(changes.type)
                if changes.type is not None
                else transaction.type
            )
            new_quantity = (
                StockLedgerDomainService.normalize_quantity(changes.quantity)
                if changes.quantity is not None
                else transaction.quantity
            )

            old_product = uow.get_product_by_id(transaction.product_id, for_update=True)
            if old_product is None:
                raise NotFoundError("Product", transaction.product_id)

            new_name = (changes.product_name or "").strip()
            new_sku = (changes.sku or "").strip()
            name_changed = bool(new_name) and new_name != old_product.name
            sku_changed = bool(new_sku) and new_sku != old_product.sku
            target = old_product
            if name_changed or sku_changed:
                target = self.directory.resolve_within(
                    uow,
                    new_name if name_changed else None,
                    new_sku if sku_changed else None,
                    user_id=actor,
                    for_update=True,
                )

            old_movement = StockMovement.for_transaction(transaction.type, transaction.quantity)
            new_movement = StockMovement.for_transaction(new_type, new_quantity)
            reversal_guard = not self.allow_negative_on_reversal

            if target.id == old_product.id:
                self._move_stock(
                    uow,
                    old_product,
                    new_movement + old_movement.reversed(),
                    guard_non_negative=reversal_guard or new_movement.reduces_stock,
                )
            else:
                self._move_stock(uow, old_product, old_movement.reversed(), guard_non_negative=reversal_guard)
                self._move_stock(uow, target, new_movement, guard_non_negative=True)

            diff: dict[str, tuple[Any, Any]] = {}
            if new_type != transaction.type:
                diff["type"] = (transaction.type.value, new_type.value)
            if new_quantity != transaction.quantity:
                diff["quantity"] = (transaction.quantity, new_quantity)
            if target.id != old_product.id:
                diff["product"] = (old_product.sku, target.sku)
            field_updates = {}
            for field_name in _EDITABLE_TRANSACTION_FIELDS:
                new_value = getattr(changes, field_name)
                if new_value is not None and new_value != getattr(transaction, field_name):
                    diff[field_name] = (getattr(transaction, field_name), new_value)
                    field_updates[field_name] = new_value

            updated = dataclasses.replace(
                transaction,
                type=new_type,
                quantity=new_quantity,
                product_id=target.id,
                product_name=target.name,
                product_sku=target.sku,
                **field_updates,
            )
            uow.update_transaction(updated)

            details = f"Transaction #{transaction_id}: {StockLedgerDomainService.describe_changes(diff)}"
            if target.id != old_product.id:
                # The product the transaction left gets its own entry for the reversed movement
                uow.insert_history_log(
                    HistoryLog.for_product(
                        HistoryAction.UPDATE_TRANSACTION,
                        uow.get_product_by_id(old_product.id),
                        details=f"{details}; stock reversed by {old_movement.reversed().quantity_delta:+d}",
                        user_id=actor,
                    )
                )
            product_after = uow.get_product_by_id(target.id)
            uow.insert_history_log(
                HistoryLog.for_product(HistoryAction.UPDATE_TRANSACTION, product_after, details=details, user_id=actor)
            )

        logger.info(f"Updated transaction #{transaction_id} ({', '.join(diff) or 'no changes'})")
        return updated

    # --- Delete ---

    def delete(self, transaction_id: int, user_id: Optional[int] = None) -> None:
        """Reverses a transaction's movement and removes it."""
        with self.repository.unit_of_work() as uow:
            transaction = uow.get_transaction(transaction_id, for_update=True)
            if transaction is None:
                raise NotFoundError("Transaction", transaction_id)
            self._delete_within(uow, transaction, user_id, write_history=True)

        logger.info(
            f"Deleted transaction #{transaction_id}, stock of product id={transaction.product_id} "
            f"changed by {-transaction.signed_delta:+d}"
        )

    def delete_many(self, transaction_ids: list[int], user_id: Optional[int] = None) -> DeleteResultDTO:
        """
        Deletes several transactions in one unit of work.

        Missing ids are skipped. A transaction whose reversal would push stock
        below zero is reported in `failed` and left untouched. Up to
        `delete_log_threshold` ids get one audit entry each, larger batches a
        single summary entry.
        """
        unique_ids = list(dict.fromkeys(transaction_ids))
        log_each = len(unique_ids) <= self.delete_log_threshold
        result = DeleteResultDTO()

        with self.repository.unit_of_work() as uow:
            for transaction_id in unique_ids:
                transaction = uow.get_transaction(transaction_id, for_update=True)
                if transaction is None:
                    result.missing_ids.append(transaction_id)
                    continue
                try:
                    self._delete_within(uow, transaction, user_id, write_history=log_each)
                except InsufficientStockError as e:
                    logger.warning(f"⚠️ Transaction #{transaction_id} not deleted: {e}")
                    result.failed.append(DeleteFailureDTO(id=transaction_id, error=str(e)))
                    continue
                result.deleted_ids.append(transaction_id)

            if not log_each and result.deleted_ids:
                uow.insert_history_log(
                    HistoryLog(
                        action=HistoryAction.DELETE_TRANSACTION,
                        product_id=None,
                        product_name=None,
                        product_sku=None,
                        user_id=user_id,
                        details=f"Batch deleted {len(result.deleted_ids)} transactions "
                        f"(ids {result.deleted_ids[0]}..{result.deleted_ids[-1]})",
                    )
                )

        result.deleted_count = len(result.deleted_ids)
        logger.info(
            f"Batch transaction delete: {result.deleted_count} deleted, {len(result.failed)} refused, "
            f"{len(result.missing_ids)} not found"
        )
        return result

    def _delete_within(
        self, uow: IStockLedgerUnitOfWork, transaction: StockTransaction, user_id: Optional[int], write_history: bool
    ) -> None:
        product = uow.get_product_by_id(transaction.product_id, for_update=True)
        if product is None:
            raise NotFoundError("Product", transaction.product_id)

        reversal = StockMovement.for_transaction(transaction.type, transaction.quantity).reversed()
        self._move_stock(uow, product, reversal, guard_non_negative=not self.allow_negative_on_reversal)
        uow.delete_transaction(transaction.id)

        if write_history:
            product_after = uow.get_product_by_id(product.id)
            uow.insert_history_log(
                HistoryLog.for_product(
                    HistoryAction.DELETE_TRANSACTION,
                    product_after,
                    details=f"Deleted {transaction.type.value} transaction #{transaction.id} of "
                    f"{transaction.quantity} {product_after.unit}; stock reversed by {reversal.quantity_delta:+d}",
                    user_id=user_id,
                )
            )

    # --- Batch apply ---

    def apply_batch(self, items: list[Union[TransactionIntentDTO, dict[str, Any]]]) -> BatchResultDTO:
        """
        Applies many intents with at most `max_workers` in flight, never more than
        the repository can serve connections for.

        Each item runs in its own unit of work and fails on its own. Once the time
        budget is spent no new items are dispatched; in-flight items finish and the
        result is marked partial.
        """
        total = len(items)
        result = BatchResultDTO(total=total)
        if total == 0:
            return result

        workers = self.max_workers
        connection_limit = self.repository.max_concurrent_units()
        if connection_limit:
            workers = min(workers, connection_limit)

        logger.info(f"🚀 Applying batch of {total} transactions with {workers} workers")
        cache = _BatchProductCache()
        successes: list[BatchItemSuccessDTO] = []
        failures: list[BatchItemFailureDTO] = []
        started = self.clock()
        next_index = 0
        budget_exhausted = False

        with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
            future_to_index: dict[concurrent.futures.Future, int] = {}
            while True:
                while not budget_exhausted and next_index < total and len(future_to_index) < workers:
                    if self.clock() - started >= self.time_budget_seconds:
                        budget_exhausted = True
                        break
                    future = executor.submit(self._apply_batch_item, next_index, items[next_index], cache)
                    future_to_index[future] = next_index
                    next_index += 1

                if not future_to_index:
                    break

                done, _ = concurrent.futures.wait(future_to_index, return_when=concurrent.futures.FIRST_COMPLETED)
                for future in done:
                    future_to_index.pop(future)
                    outcome = future.result()
                    if isinstance(outcome, BatchItemSuccessDTO):
                        successes.append(outcome)
                    else:
                        failures.append(outcome)

        successes.sort(key=lambda s: s.index)
        failures.sort(key=lambda f: f.index)
        result.succeeded = successes
        result.succeeded_count = len(successes)
        result.failed_count = len(failures)
        result.failed = failures[: self.failure_list_limit]
        result.failed_truncated = len(failures) > self.failure_list_limit
        result.unprocessed_count = total - next_index
        result.partial = result.unprocessed_count > 0

        if result.partial:
            logger.warning(
                f"⏱️ Batch time budget of {self.time_budget_seconds}s exhausted, "
                f"{result.unprocessed_count} of {total} items not processed"
            )
        logger.info(
            f"✅ Batch finished: {result.succeeded_count} succeeded, {result.failed_count} failed, "
            f"{result.unprocessed_count} unprocessed"
        )
        return result

    def _apply_batch_item(
        self, index: int, item: Union[TransactionIntentDTO, dict[str, Any]], cache: _BatchProductCache
    ) -> Union[BatchItemSuccessDTO, BatchItemFailureDTO]:
        try:
            intent = item if isinstance(item, TransactionIntentDTO) else TransactionIntentDTO.from_payload(item)
            applied = self._apply_cached(intent, cache)
        except ApplicationError as e:
            logger.warning(f"⚠️ Batch item {index} rejected: {e}")
            return BatchItemFailureDTO(index=index, payload=item, error=str(e), error_type=type(e).__name__)
        except Exception as e:
            logger.error(f"❌ Batch item {index} failed unexpectedly: {e}", exc_info=True)
            return BatchItemFailureDTO(index=index, payload=item, error=str(e), error_type=type(e).__name__)

        return BatchItemSuccessDTO(
            index=index,
            transaction_id=applied.transaction.id,
            product_id=applied.product.id,
            quantity_after=applied.product.quantity,
        )

    def _apply_cached(self, intent: TransactionIntentDTO, cache: _BatchProductCache) -> AppliedTransaction:
        key = cache.key_for(intent) if intent.product_id is None else None
        if key is None:
            return self.apply(intent)

        product_id = cache.get(key)
        if product_id is None:
            with ExitStack() as stack:
                for lock_key in cache.keys_for(intent):
                    stack.enter_context(cache.lock_for(lock_key))
                product_id = cache.get(key)
                if product_id is None:
                    applied = self.apply(intent)
                    cache.remember(key, applied.product.id)
                    return applied

        logger.debug(f"Batch cache hit for {key[0]} '{key[1]}' -> product id={product_id}")
        return self.apply(dataclasses.replace(intent, product_id=product_id))

    # --- Queries ---

    def get_transaction(self, transaction_id: int) -> StockTransaction:
        with self.repository.unit_of_work() as uow:
            transaction = uow.get_transaction(transaction_id)
        if transaction is None:
            raise NotFoundError("Transaction", transaction_id)
        return transaction

    def list_transactions(
        self,
        transaction_type: Optional[Any] = None,
        product_id: Optional[int] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[StockTransaction]:
        if transaction_type is not None:
            transaction_type = StockLedgerDomainService.normalize_transaction_type(transaction_type)
        with self.repository.unit_of_work() as uow:
            return uow.list_transactions(
                transaction_type=transaction_type, product_id=product_id, limit=limit, offset=offset
            )
