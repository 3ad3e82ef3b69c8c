"""
Storage Services Package

Provides abstract interfaces and the SQLAlchemy implementations for the
receipt repository, the ledger and the audit log.
"""

from budget_receipts.services.storage.interface import (
    AuditStorageInterface,
    ConflictError,
    InvalidTransitionError,
    LedgerInterface,
    NotFoundError,
    ReceiptRepositoryInterface,
    StorageConnectionError,
    StorageError,
)
from budget_receipts.services.storage.database import Base, Database
from budget_receipts.services.storage.sql_repository import (
    SqlAuditStorage,
    SqlLedger,
    SqlReceiptRepository,
)

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "LedgerInterface",
    "ReceiptRepositoryInterface",
    # Exceptions
    "ConflictError",
    "InvalidTransitionError",
    "NotFoundError",
    "StorageConnectionError",
    "StorageError",
    # SQL implementation
    "Base",
    "Database",
    "SqlAuditStorage",
    "SqlLedger",
    "SqlReceiptRepository",
]
