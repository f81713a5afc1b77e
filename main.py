# main.py
"""Main application entry point for the stock ledger: bulk import and scheduled stock audit."""

import json
import logging
import sys
import time
from dataclasses import dataclass
from datetime import datetime

import pytz
import schedule

from src.common.config.settings import settings
from src.common.dtos.ledger_dtos import BatchResultDTO
from src.common.exceptions.custom_exceptions import ApplicationError, DatabaseError
from src.common.logger_config import setup_logging

# Stock Ledger Domain Imports
from src.stock_ledger_domain.application.history_service import HistoryService
from src.stock_ledger_domain.application.ledger_coordinator import LedgerCoordinator
from src.stock_ledger_domain.application.product_directory_service import ProductDirectoryService
from src.stock_ledger_domain.application.stock_audit_service import StockAuditService
from src.stock_ledger_domain.domain.repositories.stock_ledger_repository import IStockLedgerRepository
from src.stock_ledger_domain.infrastructure.persistence.mysql_stock_ledger_repository import (
    MySQLStockLedgerRepository,
)

logger = logging.getLogger(__name__)


@dataclass
class StockLedgerServices:
    directory: ProductDirectoryService
    coordinator: LedgerCoordinator
    history: HistoryService
    audit: StockAuditService


def setup_stock_ledger_dependencies(repository: IStockLedgerRepository) -> StockLedgerServices:
    """Wires up the stock ledger services around an opened repository."""
    directory = ProductDirectoryService(repository)
    return StockLedgerServices(
        directory=directory,
        coordinator=LedgerCoordinator(repository, directory),
        history=HistoryService(repository),
        audit=StockAuditService(repository),
    )


def load_batch_file(batch_path: str) -> list[dict]:
    """Loads transaction payloads from a JSON file holding a list or {"items": [...]}."""
    try:
        with open(batch_path, "r", encoding="utf-8") as f:
            batch_data = json.load(f)
    except FileNotFoundError:
        raise ApplicationError(f"Batch file not found at {batch_path}")
    except json.JSONDecodeError as e:
        raise ApplicationError(f"Error decoding batch file {batch_path}: {e}")

    # Handle different JSON structures
    if isinstance(batch_data, dict) and "items" in batch_data:
        items = batch_data["items"]
    elif isinstance(batch_data, list):
        items = batch_data
    else:
        raise ApplicationError("Invalid batch file format, expected a list or an object with 'items'")

    if not isinstance(items, list):
        raise ApplicationError("Invalid batch file format, 'items' must be a list")
    return items


def run_bulk_import(coordinator: LedgerCoordinator, batch_path: str) -> BatchResultDTO:
    """Applies every transaction of a batch file and logs the outcome."""
    logger.info(f"\n{'='*80}")
    logger.info(f"📥 Bulk import from {batch_path}")
    logger.info(f"{'='*80}")

    items = load_batch_file(batch_path)
    logger.info(f"📋 Loaded {len(items)} transactions")
    result = coordinator.apply_batch(items)

    logger.info(f"\n{'='*80}")
    logger.info("📊 BULK IMPORT SUMMARY")
    logger.info(f"{'='*80}")
    logger.info(f"✅ Succeeded: {result.succeeded_count}")
    logger.info(f"❌ Failed: {result.failed_count}")
    if result.partial:
        logger.info(f"⏱️  Not processed (time budget exhausted): {result.unprocessed_count}")
    for failure in result.failed[:10]:
        logger.info(f"   Item {failure.index}: {failure.error_type}: {failure.error}")
    if result.failed_count > 10:
        logger.info(f"   ... and {result.failed_count - 10} more failures")
    logger.info(f"{'='*80}")
    return result


def run_stock_audit(audit_service: StockAuditService) -> None:
    """Runs the stock consistency audit. Failures are logged so the scheduler keeps running."""
    logger.info(f"🔎 Stock audit started at {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    try:
        discrepancies = audit_service.verify_stock_consistency()
        logger.info(f"📊 Stock audit finished: {len(discrepancies)} products out of balance")
    except DatabaseError as e:
        logger.error(f"❌ Stock audit failed: {e}")


def main(argv: list[str]) -> None:
    repository = MySQLStockLedgerRepository()
    try:
        repository.open()
        repository.create_tables()
        logger.info("✅ Database tables created/verified successfully")
        services = setup_stock_ledger_dependencies(repository)

        if len(argv) > 1:
            run_bulk_import(services.coordinator, argv[1])

        run_stock_audit(services.audit)

        audit_tz = pytz.timezone(settings.TIMEZONE)
        schedule.every().day.at(settings.STOCK_AUDIT_TIME, audit_tz).do(run_stock_audit, services.audit)
        logger.info(f"⏰ Stock audit scheduled every day at {settings.STOCK_AUDIT_TIME} ({settings.TIMEZONE})")

        while True:
            schedule.run_pending()
            time.sleep(30)
    except ApplicationError as e:
        logger.error(f"💥 Critical error: {e}")
        raise
    except KeyboardInterrupt:
        logger.info("👋 Stopped by user")
    finally:
        repository.close()


if __name__ == "__main__":
    setup_logging()
    logger.info("🎯 Stock Ledger Service")
    main(sys.argv)
