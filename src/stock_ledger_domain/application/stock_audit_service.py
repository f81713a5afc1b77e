# src/stock_ledger_domain/application/stock_audit_service.py
"""Application service checking stored stock counters against the transaction ledger."""

import logging

from src.common.dtos.ledger_dtos import StockBalanceDTO, StockDiscrepancyDTO
from src.stock_ledger_domain.domain.repositories.stock_ledger_repository import IStockLedgerRepository

logger = logging.getLogger(__name__)


class StockAuditService:
    """Reports products whose counters disagree with their imports and exports."""

    def __init__(self, repository: IStockLedgerRepository) -> None:
        self.repository = repository

    def verify_stock_consistency(self) -> list[StockDiscrepancyDTO]:
        """
        Compares every product's counters with the totals of its transactions:
        `quantity` and `ending_stock` must equal imports minus exports,
        `new_stock` the imports and `sold_stock` the exports.
        """
        logger.info("🔎 Verifying stock counters against the transaction ledger...")
        with self.repository.unit_of_work() as uow:
            balances = uow.get_stock_balances()

        discrepancies = []
        for balance in balances:
            issues = self._find_issues(balance)
            if issues:
                discrepancies.append(
                    StockDiscrepancyDTO(product_id=balance.product_id, sku=balance.sku, name=balance.name, issues=issues)
                )

        for discrepancy in discrepancies:
            logger.warning(f"⚠️ {discrepancy.sku} ({discrepancy.name}): {'; '.join(discrepancy.issues)}")

        if discrepancies:
            logger.warning(f"Stock audit found {len(discrepancies)} of {len(balances)} products out of balance")
        else:
            logger.info(f"✅ Stock audit passed for {len(balances)} products")
        return discrepancies

    @staticmethod
    def _find_issues(balance: StockBalanceDTO) -> list[str]:
        issues = []
        expected = balance.ledger_balance
        if balance.quantity != expected:
            issues.append(f"quantity {balance.quantity} != ledger balance {expected}")
        if balance.ending_stock != expected:
            issues.append(f"ending_stock {balance.ending_stock} != ledger balance {expected}")
        if balance.new_stock != balance.imported_total:
            issues.append(f"new_stock {balance.new_stock} != imported {balance.imported_total}")
        if balance.sold_stock != balance.exported_total:
            issues.append(f"sold_stock {balance.sold_stock} != exported {balance.exported_total}")
        return issues
