# src/stock_ledger_domain/application/history_service.py
"""Read access to the audit log."""

import logging
from typing import Any, Optional

from src.common.exceptions.custom_exceptions import ValidationError
from src.stock_ledger_domain.domain.entities.history_log import HistoryAction, HistoryLog
from src.stock_ledger_domain.domain.repositories.stock_ledger_repository import IStockLedgerRepository

logger = logging.getLogger(__name__)


class HistoryService:
    def __init__(self, repository: IStockLedgerRepository) -> None:
        self.repository = repository

    def list_history(
        self,
        action: Optional[Any] = None,
        product_id: Optional[int] = None,
        user_id: Optional[int] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[HistoryLog]:
        """Lists audit entries newest first. `action` may be a HistoryAction or its value; "all" means no filter."""
        if action == "all":
            action = None
        if action is not None and not isinstance(action, HistoryAction):
            try:
                action = HistoryAction(str(action).strip().lower())
            except ValueError:
                raise ValidationError(f"Unknown history action {action!r}", field="action")

        with self.repository.unit_of_work() as uow:
            entries = uow.list_history_logs(
                action=action, product_id=product_id, user_id=user_id, limit=limit, offset=offset
            )
        logger.debug(f"Fetched {len(entries)} history entries")
        return entries
