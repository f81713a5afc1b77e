"""Application settings and environment variables."""

import os
from typing import Optional

from dotenv import load_dotenv

load_dotenv()  # Load environment variables from .env file


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings:
    DB_HOST: str = os.getenv("DB_HOST", "localhost")
    DB_PORT: int = int(os.getenv("DB_PORT", "3306"))
    DB_DATABASE: str = os.getenv("DB_NAME", "stock_ledger_db")
    DB_USER: str = os.getenv("DB_USER", "user")
    DB_PASSWORD: str = os.getenv("DB_PASSWORD", "password")
    DB_POOL_SIZE: int = int(os.getenv("DB_POOL_SIZE", "5"))
    DB_POOL_TIMEOUT_SECONDS: float = float(os.getenv("DB_POOL_TIMEOUT_SECONDS", "30"))  # Wait for a free connection

    # Product defaults used when a transaction references an unknown product
    DEFAULT_PRODUCT_GROUP: str = os.getenv("DEFAULT_PRODUCT_GROUP", "unclassified")
    DEFAULT_PRODUCT_UNIT: str = os.getenv("DEFAULT_PRODUCT_UNIT", "pcs")

    # Batch processing
    BATCH_MAX_WORKERS: int = int(os.getenv("BATCH_MAX_WORKERS", "5"))
    BATCH_TIME_BUDGET_SECONDS: float = float(os.getenv("BATCH_TIME_BUDGET_SECONDS", "120"))
    BATCH_FAILURE_LIST_LIMIT: int = int(os.getenv("BATCH_FAILURE_LIST_LIMIT", "100"))
    BATCH_DELETE_LOG_THRESHOLD: int = int(os.getenv("BATCH_DELETE_LOG_THRESHOLD", "200"))

    # When false, deleting or editing a transaction may not push on-hand stock below zero
    ALLOW_NEGATIVE_STOCK_ON_REVERSAL: bool = _env_bool("ALLOW_NEGATIVE_STOCK_ON_REVERSAL")

    # Scheduled consistency audit
    TIMEZONE: str = os.getenv("TIMEZONE", "UTC")
    STOCK_AUDIT_TIME: str = os.getenv("STOCK_AUDIT_TIME", "02:00")

    # Logging settings
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")  # INFO, DEBUG, WARNING, ERROR, CRITICAL
    LOG_FILE: Optional[str] = os.getenv("LOG_FILE")


settings = Settings()
