"""
Abstract Storage Interface

DESIGN DECISION: We define abstract interfaces for the receipt repository,
the ledger and the audit log. This allows us to:
1. Keep the pipeline decoupled from SQLAlchemy
2. Substitute failing or slow implementations in tests
3. Swap SQLite for another SQL database without touching the supervisor

The receipt repository is the single source of truth for status. Its
`transition` is a compare-and-swap: it either moves the receipt from the
expected status to the new one, or raises ConflictError and changes nothing.
That is what keeps a receipt from being processed twice.
"""

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from budget_receipts.models.audit import AuditEvent
from budget_receipts.models.receipt import (
    ErrorCode,
    Expense,
    NewExpense,
    Receipt,
    ReceiptStatus,
)


class ReceiptRepositoryInterface(ABC):
    """
    Abstract interface for receipt metadata and lifecycle status.

    Every mutation is durable before the call returns.
    """

    @abstractmethod
    def unit_of_work(self) -> AbstractAsyncContextManager[Any]:
        """
        Open a transaction that ledger writes and a transition can share.

        Yields an opaque session handle to pass as `session=` to
        `transition` and `LedgerInterface.create_expense`. Commits on normal
        exit, rolls back if the block raises or is cancelled.
        """
        pass

    @abstractmethod
    async def create(
        self,
        filename: str,
        receipt_id: Optional[UUID] = None,
        content_type: Optional[str] = None,
        size_bytes: int = 0,
    ) -> Receipt:
        """
        Insert a new receipt with status pending.

        Raises:
            StorageError: If the insert fails
        """
        pass

    @abstractmethod
    async def transition(
        self,
        receipt_id: UUID,
        from_status: ReceiptStatus,
        to_status: ReceiptStatus,
        error_message: Optional[str] = None,
        error_code: Optional[ErrorCode] = None,
        item_count: Optional[int] = None,
        session: Optional[Any] = None,
    ) -> Receipt:
        """
        Move a receipt from `from_status` to `to_status` atomically.

        Returns:
            The receipt after the transition

        Raises:
            ConflictError: Current status is not `from_status` (nothing changed)
            NotFoundError: No receipt with this id
            InvalidTransitionError: The edge is not part of the lifecycle
            StorageError: If the update fails
        """
        pass

    @abstractmethod
    async def get(self, receipt_id: UUID) -> Receipt:
        """
        Retrieve a receipt by its ID.

        Raises:
            NotFoundError: If the receipt doesn't exist
        """
        pass

    @abstractmethod
    async def list_by_status(self, status: ReceiptStatus) -> list[Receipt]:
        """
        List receipts in one status, oldest upload first.
        """
        pass

    @abstractmethod
    async def list_all(self, limit: int = 100) -> list[Receipt]:
        """
        List receipts of every status, newest upload first.
        """
        pass

    @abstractmethod
    async def list_stale(self, older_than: datetime) -> list[Receipt]:
        """
        List processing receipts whose last update is at or before `older_than`.
        """
        pass

    @abstractmethod
    async def delete(self, receipt_id: UUID) -> None:
        """
        Delete a receipt in a terminal status.

        Expenses referencing it are left untouched.

        Raises:
            ConflictError: The receipt is still pending or processing
            NotFoundError: If the receipt doesn't exist
        """
        pass


class LedgerInterface(ABC):
    """
    Write side of the ledger used by reconciliation.

    The ledger itself belongs to the budget CRUD screens; the pipeline only
    appends expenses and reads back the ones a receipt produced.
    """

    @abstractmethod
    async def create_expense(
        self,
        expense: NewExpense,
        session: Optional[Any] = None,
    ) -> Expense:
        """
        Append one expense, inside `session` when given.

        Raises:
            StorageError: If the insert fails
        """
        pass

    @abstractmethod
    async def list_by_receipt(self, receipt_id: UUID) -> list[Expense]:
        """
        List the expenses produced by one receipt.
        """
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """
        Get all events for a correlation ID, in chronological order.
        """
        pass

    @abstractmethod
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: UUID,
    ) -> list[AuditEvent]:
        """
        Get all events for a specific entity, in chronological order.
        """
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """
        Get the most recent audit events (newest first).
        """
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class StorageConnectionError(StorageError):
    """Could not connect to storage backend."""
    pass


class ConflictError(Exception):
    """
    Compare-and-swap lost: the receipt is no longer in the expected status.

    Not a failure. Another worker (or the user) already moved the receipt,
    so the caller skips it.
    """

    def __init__(
        self,
        receipt_id: UUID,
        actual: ReceiptStatus,
        expected: Optional[ReceiptStatus] = None,
    ):
        self.receipt_id = receipt_id
        self.actual = ReceiptStatus(actual)
        self.expected = ReceiptStatus(expected) if expected is not None else None
        if self.expected is not None:
            message = f"Receipt {receipt_id} is {self.actual.value}, expected {self.expected.value}"
        else:
            message = f"Receipt {receipt_id} is {self.actual.value}; not allowed in this status"
        super().__init__(message)


class InvalidTransitionError(ValueError):
    """The requested status change is not part of the receipt lifecycle."""

    def __init__(self, from_status: ReceiptStatus, to_status: ReceiptStatus):
        self.from_status = ReceiptStatus(from_status)
        self.to_status = ReceiptStatus(to_status)
        super().__init__(
            f"Transition {self.from_status.value} -> {self.to_status.value} is not allowed"
        )
