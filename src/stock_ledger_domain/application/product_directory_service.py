# src/stock_ledger_domain/application/product_directory_service.py
"""Application service resolving, creating and maintaining products."""

import dataclasses
import logging
from decimal import Decimal
from typing import Optional

from src.common.config.settings import settings
from src.common.dtos.ledger_dtos import DeleteFailureDTO, DeleteResultDTO, ProductChangesDTO, ProductCreateDTO
from src.common.exceptions.custom_exceptions import (
    DuplicateKeyError,
    NotFoundError,
    ReferentialIntegrityError,
    ValidationError,
)
from src.common.utils.date_utils import generate_fallback_sku
from src.stock_ledger_domain.domain.entities.history_log import HistoryAction, HistoryLog
from src.stock_ledger_domain.domain.entities.product import Product
from src.stock_ledger_domain.domain.repositories.stock_ledger_repository import (
    IStockLedgerRepository,
    IStockLedgerUnitOfWork,
)
from src.stock_ledger_domain.domain.services.stock_ledger_domain_service import StockLedgerDomainService

logger = logging.getLogger(__name__)

_INFORMATIONAL_STOCK_FIELDS = ("display_stock", "warehouse_stock", "damaged_stock")


class ProductDirectoryService:
    """Maps a (name, SKU) pair to exactly one product and owns product maintenance."""

    def __init__(
        self,
        repository: IStockLedgerRepository,
        default_group: Optional[str] = None,
        default_unit: Optional[str] = None,
    ) -> None:
        self.repository = repository
        self.default_group = default_group or settings.DEFAULT_PRODUCT_GROUP
        self.default_unit = default_unit or settings.DEFAULT_PRODUCT_UNIT

    # --- Resolution ---

    def resolve(self, name: Optional[str], sku: Optional[str] = None, user_id: Optional[int] = None) -> Product:
        """Returns the product matching the SKU, else the name, creating it if neither matches."""
        with self.repository.unit_of_work() as uow:
            return self.resolve_within(uow, name, sku, user_id=user_id)

    def resolve_within(
        self,
        uow: IStockLedgerUnitOfWork,
        name: Optional[str],
        sku: Optional[str] = None,
        user_id: Optional[int] = None,
        group: Optional[str] = None,
        unit: Optional[str] = None,
        unit_cost: Optional[Decimal] = None,
        retail_price: Optional[Decimal] = None,
        for_update: bool = False,
    ) -> Product:
        """
        Resolves a product inside the caller's unit of work so that an implicit
        creation commits or rolls back together with the caller's writes.

        Lookup order: exact SKU, then exact name. When neither matches, a product
        is created with a generated SKU if none was given. A SKU conflict raised by
        a concurrent creator triggers one more lookup before giving up.
        """
        name, sku = StockLedgerDomainService.normalize_product_identity(name, sku)

        existing = self._lookup(uow, name, sku, for_update)
        if existing is not None:
            return existing

        if not name:
            # A bare SKU can reference an existing product but cannot name a new one
            raise NotFoundError("Product", sku)

        product = Product(
            name=name,
            sku=sku or generate_fallback_sku(),
            group=group or self.default_group,
            unit=unit or self.default_unit,
            unit_cost=unit_cost if unit_cost is not None else Decimal("0"),
            retail_price=retail_price if retail_price is not None else Decimal("0"),
        )

        try:
            created = uow.insert_product(product)
        except DuplicateKeyError:
            logger.warning(f"SKU '{product.sku}' was created concurrently, resolving '{name}' again")
            existing = self._lookup(uow, name, sku or product.sku, for_update=True)
            if existing is None:
                raise
            return existing

        uow.insert_history_log(
            HistoryLog.for_product(
                HistoryAction.CREATE_PRODUCT,
                created,
                details="Created automatically from a stock transaction",
                user_id=user_id,
            )
        )
        logger.info(f"Auto-created product '{created.name}' with SKU {created.sku} (id={created.id})")
        return created

    def _lookup(
        self, uow: IStockLedgerUnitOfWork, name: Optional[str], sku: Optional[str], for_update: bool
    ) -> Optional[Product]:
        if sku:
            product = uow.get_product_by_sku(sku, for_update=for_update)
            if product is not None:
                logger.debug(f"Resolved SKU {sku} to product id={product.id}")
                return product
        if name:
            product = uow.get_product_by_name(name, for_update=for_update)
            if product is not None:
                logger.debug(f"Resolved name '{name}' to product id={product.id}")
                return product
        return None

    # --- Maintenance ---

    def create_product(self, data: ProductCreateDTO, user_id: Optional[int] = None) -> Product:
        """Creates a product explicitly. Ledger-owned counters start at zero."""
        name = (data.name or "").strip()
        sku = (data.sku or "").strip()
        if not name or not sku:
            raise ValidationError("Product name and SKU are required", field="name" if not name else "sku")
        for field_name in _INFORMATIONAL_STOCK_FIELDS:
            self._check_non_negative(field_name, getattr(data, field_name))

        with self.repository.unit_of_work() as uow:
            if uow.get_product_by_sku(sku) is not None:
                raise DuplicateKeyError(sku)

            created = uow.insert_product(
                Product(
                    name=name,
                    sku=sku,
                    group=data.group or self.default_group,
                    unit=data.unit or self.default_unit,
                    unit_cost=data.unit_cost,
                    retail_price=data.retail_price,
                    display_stock=data.display_stock,
                    warehouse_stock=data.warehouse_stock,
                    damaged_stock=data.damaged_stock,
                )
            )
            uow.insert_history_log(
                HistoryLog.for_product(
                    HistoryAction.CREATE_PRODUCT, created, details=f"Created product {name}", user_id=user_id
                )
            )

        logger.info(f"Created product '{created.name}' with SKU {created.sku} (id={created.id})")
        return created

    def update_product(self, product_id: int, changes: ProductChangesDTO, user_id: Optional[int] = None) -> Product:
        """Edits identity, price and informational stock fields of a product."""
        with self.repository.unit_of_work() as uow:
            product = uow.get_product_by_id(product_id, for_update=True)
            if product is None:
                raise NotFoundError("Product", product_id)

            diff: dict[str, tuple] = {}
            for field_name in (f.name for f in dataclasses.fields(ProductChangesDTO)):
                new_value = getattr(changes, field_name)
                if new_value is None:
                    continue
                if isinstance(new_value, str):
                    new_value = new_value.strip()
                    if field_name in ("name", "sku") and not new_value:
                        raise ValidationError(f"Product {field_name} cannot be empty", field=field_name)
                if field_name in _INFORMATIONAL_STOCK_FIELDS:
                    self._check_non_negative(field_name, new_value)
                old_value = getattr(product, field_name)
                if new_value != old_value:
                    diff[field_name] = (old_value, new_value)

            if not diff:
                return product

            if "sku" in diff:
                holder = uow.get_product_by_sku(diff["sku"][1])
                if holder is not None and holder.id != product.id:
                    raise DuplicateKeyError(diff["sku"][1])

            updated = dataclasses.replace(product, **{name: new for name, (_, new) in diff.items()})
            uow.update_product(updated)
            uow.insert_history_log(
                HistoryLog.for_product(
                    HistoryAction.UPDATE_PRODUCT,
                    updated,
                    details=StockLedgerDomainService.describe_changes(diff),
                    user_id=user_id,
                )
            )

        logger.info(f"Updated product id={product_id}: {', '.join(diff)}")
        return updated

    def delete_product(self, product_id: int, user_id: Optional[int] = None) -> None:
        """Deletes a product that no transaction references."""
        with self.repository.unit_of_work() as uow:
            product = uow.get_product_by_id(product_id, for_update=True)
            if product is None:
                raise NotFoundError("Product", product_id)
            self._delete_unreferenced(uow, product, user_id, details="Deleted product")

        logger.info(f"Deleted product '{product.name}' ({product.sku})")

    def delete_products(self, product_ids: list[int], user_id: Optional[int] = None) -> DeleteResultDTO:
        """Deletes several products in one unit of work; missing and referenced ones are skipped."""
        result = DeleteResultDTO()
        with self.repository.unit_of_work() as uow:
            for product_id in dict.fromkeys(product_ids):
                product = uow.get_product_by_id(product_id, for_update=True)
                if product is None:
                    result.missing_ids.append(product_id)
                    continue
                try:
                    self._delete_unreferenced(uow, product, user_id, details="Deleted product (batch delete)")
                except ReferentialIntegrityError as e:
                    result.failed.append(DeleteFailureDTO(id=product_id, error=e.message))
                    continue
                result.deleted_ids.append(product_id)

        result.deleted_count = len(result.deleted_ids)
        logger.info(
            f"Batch product delete: {result.deleted_count} deleted, {len(result.failed)} refused, "
            f"{len(result.missing_ids)} not found"
        )
        return result

    def _delete_unreferenced(
        self, uow: IStockLedgerUnitOfWork, product: Product, user_id: Optional[int], details: str
    ) -> None:
        referencing = uow.count_transactions_for_product(product.id)
        if referencing:
            raise ReferentialIntegrityError(
                f"Product {product.sku} is referenced by {referencing} transaction(s) and cannot be deleted"
            )
        uow.delete_product(product.id)
        uow.insert_history_log(
            HistoryLog.for_product(
                HistoryAction.DELETE_PRODUCT, product, details=details, user_id=user_id, keep_product_reference=False
            )
        )

    @staticmethod
    def _check_non_negative(field_name: str, value: int) -> None:
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValidationError(f"{field_name} must be a non-negative integer", field=field_name)

    # --- Queries ---

    def get_product(self, product_id: int) -> Product:
        with self.repository.unit_of_work() as uow:
            product = uow.get_product_by_id(product_id)
        if product is None:
            raise NotFoundError("Product", product_id)
        return product

    def list_products(
        self, search: Optional[str] = None, group: Optional[str] = None, limit: int = 50, offset: int = 0
    ) -> list[Product]:
        if group == "all":
            group = None
        with self.repository.unit_of_work() as uow:
            return uow.list_products(search=search or None, group=group, limit=limit, offset=offset)
