"""
SQLAlchemy implementations of the storage interfaces.

DESIGN DECISION: `transition` is a single conditional UPDATE
(`WHERE id = ? AND status = ?`). The row count tells us whether we won.
No worker holds a lock across a network call, and the database, not
process memory, decides which of several concurrent claimers proceeds.
"""

from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Any, Optional
from uuid import UUID, uuid4

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from budget_receipts.models.audit import (
    AuditEvent,
    AuditEventType,
    AuditSeverity,
)
from budget_receipts.models.receipt import (
    ErrorCode,
    Expense,
    NewExpense,
    Receipt,
    ReceiptStatus,
    TERMINAL_STATUSES,
    is_allowed_transition,
    utcnow,
)
from budget_receipts.services.storage.database import (
    AuditEventRow,
    Database,
    ExpenseRow,
    ReceiptRow,
)
from budget_receipts.services.storage.interface import (
    AuditStorageInterface,
    ConflictError,
    InvalidTransitionError,
    LedgerInterface,
    NotFoundError,
    ReceiptRepositoryInterface,
    StorageError,
)

logger = structlog.get_logger(__name__)

MAX_ERROR_MESSAGE_LENGTH = 1000


async def _flush(session: AsyncSession) -> None:
    try:
        await session.flush()
    except SQLAlchemyError as e:
        raise StorageError(f"Database write failed: {e}") from e


class SqlReceiptRepository(ReceiptRepositoryInterface):
    """
    Receipt repository backed by the `receipts` table.
    """

    def __init__(self, database: Database):
        self._db = database

    def unit_of_work(self) -> AbstractAsyncContextManager[AsyncSession]:
        return self._db.session()

    async def create(
        self,
        filename: str,
        receipt_id: Optional[UUID] = None,
        content_type: Optional[str] = None,
        size_bytes: int = 0,
    ) -> Receipt:
        now = utcnow()
        row = ReceiptRow(
            id=str(receipt_id or uuid4()),
            filename=filename.strip() or "receipt",
            status=ReceiptStatus.PENDING.value,
            uploaded_at=now,
            updated_at=now,
            content_type=content_type,
            size_bytes=size_bytes,
            attempt_count=0,
        )
        async with self._db.session() as session:
            session.add(row)
            await _flush(session)

        receipt = Receipt.model_validate(row)
        logger.info("receipt_created", receipt_id=str(receipt.id), filename=receipt.filename)
        return receipt

    def _transition_values(
        self,
        to_status: ReceiptStatus,
        error_message: Optional[str],
        error_code: Optional[ErrorCode],
        item_count: Optional[int],
    ) -> dict[str, Any]:
        now = utcnow()
        values: dict[str, Any] = {"status": to_status.value, "updated_at": now}

        if to_status == ReceiptStatus.PROCESSING:
            values["attempt_count"] = ReceiptRow.attempt_count + 1
        elif to_status == ReceiptStatus.PENDING:
            values.update(
                processed_at=None,
                error_message=None,
                error_code=None,
                item_count=None,
            )
        elif to_status == ReceiptStatus.COMPLETED:
            values.update(
                processed_at=now,
                error_message=None,
                error_code=None,
                item_count=item_count or 0,
            )
        elif to_status == ReceiptStatus.FAILED:
            values.update(
                processed_at=now,
                error_message=error_message.strip()[:MAX_ERROR_MESSAGE_LENGTH],
                error_code=ErrorCode(error_code or ErrorCode.INTERNAL_ERROR).value,
                item_count=None,
            )
        return values

    async def _apply_transition(
        self,
        session: AsyncSession,
        receipt_id: UUID,
        from_status: ReceiptStatus,
        values: dict[str, Any],
    ) -> Receipt:
        try:
            result = await session.execute(
                update(ReceiptRow)
                .where(
                    ReceiptRow.id == str(receipt_id),
                    ReceiptRow.status == from_status.value,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                current = await session.scalar(
                    select(ReceiptRow.status).where(ReceiptRow.id == str(receipt_id))
                )
                if current is None:
                    raise NotFoundError(f"Receipt {receipt_id} not found")
                raise ConflictError(receipt_id, actual=current, expected=from_status)

            row = await session.scalar(
                select(ReceiptRow)
                .where(ReceiptRow.id == str(receipt_id))
                .execution_options(populate_existing=True)
            )
        except SQLAlchemyError as e:
            raise StorageError(f"Status update failed: {e}") from e

        return Receipt.model_validate(row)

    async def transition(
        self,
        receipt_id: UUID,
        from_status: ReceiptStatus,
        to_status: ReceiptStatus,
        error_message: Optional[str] = None,
        error_code: Optional[ErrorCode] = None,
        item_count: Optional[int] = None,
        session: Optional[AsyncSession] = None,
    ) -> Receipt:
        from_status = ReceiptStatus(from_status)
        to_status = ReceiptStatus(to_status)

        if not is_allowed_transition(from_status, to_status):
            raise InvalidTransitionError(from_status, to_status)
        if to_status == ReceiptStatus.FAILED and not (error_message and error_message.strip()):
            raise ValueError("A failed receipt needs a non-empty error message")

        values = self._transition_values(to_status, error_message, error_code, item_count)

        if session is not None:
            receipt = await self._apply_transition(session, receipt_id, from_status, values)
        else:
            async with self._db.session() as own_session:
                receipt = await self._apply_transition(
                    own_session, receipt_id, from_status, values
                )

        logger.debug(
            "receipt_transitioned",
            receipt_id=str(receipt_id),
            from_status=from_status.value,
            to_status=to_status.value,
        )
        return receipt

    async def get(self, receipt_id: UUID) -> Receipt:
        async with self._db.session() as session:
            row = await session.get(ReceiptRow, str(receipt_id))
            if row is None:
                raise NotFoundError(f"Receipt {receipt_id} not found")
            return Receipt.model_validate(row)

    async def list_by_status(self, status: ReceiptStatus) -> list[Receipt]:
        status = ReceiptStatus(status)
        async with self._db.session() as session:
            rows = await session.scalars(
                select(ReceiptRow)
                .where(ReceiptRow.status == status.value)
                .order_by(ReceiptRow.uploaded_at.asc(), ReceiptRow.id.asc())
            )
            return [Receipt.model_validate(row) for row in rows]

    async def list_all(self, limit: int = 100) -> list[Receipt]:
        async with self._db.session() as session:
            rows = await session.scalars(
                select(ReceiptRow)
                .order_by(ReceiptRow.uploaded_at.desc(), ReceiptRow.id.desc())
                .limit(limit)
            )
            return [Receipt.model_validate(row) for row in rows]

    async def list_stale(self, older_than: datetime) -> list[Receipt]:
        async with self._db.session() as session:
            rows = await session.scalars(
                select(ReceiptRow)
                .where(
                    ReceiptRow.status == ReceiptStatus.PROCESSING.value,
                    ReceiptRow.updated_at <= older_than,
                )
                .order_by(ReceiptRow.updated_at.asc())
            )
            return [Receipt.model_validate(row) for row in rows]

    async def delete(self, receipt_id: UUID) -> None:
        terminal = [status.value for status in TERMINAL_STATUSES]
        async with self._db.session() as session:
            result = await session.execute(
                delete(ReceiptRow)
                .where(
                    ReceiptRow.id == str(receipt_id),
                    ReceiptRow.status.in_(terminal),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                current = await session.scalar(
                    select(ReceiptRow.status).where(ReceiptRow.id == str(receipt_id))
                )
                if current is None:
                    raise NotFoundError(f"Receipt {receipt_id} not found")
                raise ConflictError(receipt_id, actual=current)

        logger.info("receipt_deleted", receipt_id=str(receipt_id))


class SqlLedger(LedgerInterface):
    """
    Expense writer backed by the `expenses` table.
    """

    def __init__(self, database: Database):
        self._db = database

    def _to_row(self, expense: NewExpense) -> ExpenseRow:
        now = utcnow()
        return ExpenseRow(
            description=expense.description,
            source=expense.source,
            amount=expense.amount,
            expense_type=expense.expense_type.value,
            item_code=expense.item_code,
            expense_date=expense.expense_date,
            month=expense.expense_date.month,
            year=expense.expense_date.year,
            source_receipt_id=(
                str(expense.source_receipt_id) if expense.source_receipt_id else None
            ),
            created_at=now,
            updated_at=now,
        )

    async def create_expense(
        self,
        expense: NewExpense,
        session: Optional[AsyncSession] = None,
    ) -> Expense:
        row = self._to_row(expense)
        if session is not None:
            session.add(row)
            await _flush(session)
        else:
            async with self._db.session() as own_session:
                own_session.add(row)
                await _flush(own_session)
        return Expense.model_validate(row)

    async def list_by_receipt(self, receipt_id: UUID) -> list[Expense]:
        async with self._db.session() as session:
            rows = await session.scalars(
                select(ExpenseRow)
                .where(ExpenseRow.source_receipt_id == str(receipt_id))
                .order_by(ExpenseRow.id.asc())
            )
            return [Expense.model_validate(row) for row in rows]


class SqlAuditStorage(AuditStorageInterface):
    """
    Audit log backed by the `audit_events` table.
    """

    def __init__(self, database: Database):
        self._db = database

    @staticmethod
    def _to_row(event: AuditEvent) -> AuditEventRow:
        return AuditEventRow(
            event_id=str(event.event_id),
            timestamp=event.timestamp,
            event_type=event.event_type.value,
            severity=event.severity.value,
            entity_type=event.entity_type,
            entity_id=str(event.entity_id) if event.entity_id else None,
            correlation_id=str(event.correlation_id) if event.correlation_id else None,
            description=event.description,
            details=event.model_dump(mode="json")["details"],
            error_code=event.error_code,
            error_message=event.error_message,
            is_user_action=event.is_user_action,
        )

    @staticmethod
    def _to_event(row: AuditEventRow) -> AuditEvent:
        return AuditEvent(
            event_id=UUID(row.event_id),
            timestamp=row.timestamp,
            event_type=AuditEventType(row.event_type),
            severity=AuditSeverity(row.severity),
            entity_type=row.entity_type,
            entity_id=UUID(row.entity_id) if row.entity_id else None,
            correlation_id=UUID(row.correlation_id) if row.correlation_id else None,
            description=row.description,
            details=row.details or {},
            error_code=row.error_code,
            error_message=row.error_message,
            is_user_action=row.is_user_action,
        )

    async def append_event(self, event: AuditEvent) -> bool:
        async with self._db.session() as session:
            session.add(self._to_row(event))
            await _flush(session)
        return True

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        async with self._db.session() as session:
            rows = await session.scalars(
                select(AuditEventRow)
                .where(AuditEventRow.correlation_id == str(correlation_id))
                .order_by(AuditEventRow.timestamp.asc())
            )
            return [self._to_event(row) for row in rows]

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: UUID,
    ) -> list[AuditEvent]:
        async with self._db.session() as session:
            rows = await session.scalars(
                select(AuditEventRow)
                .where(
                    AuditEventRow.entity_type == entity_type,
                    AuditEventRow.entity_id == str(entity_id),
                )
                .order_by(AuditEventRow.timestamp.asc())
            )
            return [self._to_event(row) for row in rows]

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        async with self._db.session() as session:
            rows = await session.scalars(
                select(AuditEventRow)
                .order_by(AuditEventRow.timestamp.desc())
                .limit(limit)
            )
            return [self._to_event(row) for row in rows]
