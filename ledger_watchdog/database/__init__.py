"""
Database layer: idempotent transfer sink and per-source ingestion cursors.

SQLite by default via Database and get_database(); SQLAlchemyBackend when a
DATABASE_URL is configured.
"""

from ledger_watchdog.database.database import (
    Database,
    DatabaseBackend,
    SQLAlchemyBackend,
    SQLiteBackend,
    get_database,
)
from ledger_watchdog.database.models import IngestionCursor, TransferRecord

__all__ = [
    "Database",
    "DatabaseBackend",
    "SQLAlchemyBackend",
    "SQLiteBackend",
    "get_database",
    "IngestionCursor",
    "TransferRecord",
]
