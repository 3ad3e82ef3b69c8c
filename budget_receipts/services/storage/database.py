"""
SQL schema and session management.

DESIGN DECISION: One async engine, one transaction per `session()` block.
The block commits when it exits normally and rolls back on any exception,
including task cancellation during shutdown, so a half-finished
reconciliation can never be committed.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import structlog
from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.engine import make_url
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base

from budget_receipts.config import DatabaseSettings, get_settings
from budget_receipts.services.storage.interface import (
    StorageConnectionError,
    StorageError,
)

logger = structlog.get_logger(__name__)

Base = declarative_base()


class ReceiptRow(Base):
    """One uploaded receipt and its lifecycle status."""
    __tablename__ = "receipts"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_receipts_status",
        ),
        Index("ix_receipts_status", "status"),
    )

    id = Column(String(36), primary_key=True)
    filename = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    uploaded_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)
    processed_at = Column(DateTime)
    error_message = Column(Text)
    error_code = Column(String(40))
    content_type = Column(String(100))
    size_bytes = Column(Integer, nullable=False, default=0)
    attempt_count = Column(Integer, nullable=False, default=0)
    item_count = Column(Integer)


class ExpenseRow(Base):
    """
    Ledger expense.

    source_receipt_id is a weak reference: no foreign key, so removing a
    receipt never removes the expenses it produced.
    """
    __tablename__ = "expenses"
    __table_args__ = (
        CheckConstraint(
            "expense_type IN ('weekly', 'monthly', 'misc', 'tax')",
            name="ck_expenses_type",
        ),
        Index("ix_expenses_month_year", "year", "month"),
        Index("ix_expenses_source_receipt_id", "source_receipt_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    description = Column(String(255), nullable=False)
    source = Column(String(255), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    expense_type = Column(String(10), nullable=False)
    item_code = Column(String(64))
    expense_date = Column(Date, nullable=False)
    month = Column(Integer, nullable=False)
    year = Column(Integer, nullable=False)
    source_receipt_id = Column(String(36))
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)


class AuditEventRow(Base):
    """Append-only audit trail."""
    __tablename__ = "audit_events"

    event_id = Column(String(36), primary_key=True)
    timestamp = Column(DateTime, nullable=False, index=True)
    event_type = Column(String(50), nullable=False)
    severity = Column(String(20), nullable=False)
    entity_type = Column(String(50))
    entity_id = Column(String(36), index=True)
    correlation_id = Column(String(36), index=True)
    description = Column(String(500), nullable=False)
    details = Column(JSON, nullable=False, default=dict)
    error_code = Column(String(40))
    error_message = Column(Text)
    is_user_action = Column(Boolean, nullable=False, default=False)


class Database:
    """
    Async database handle shared by the repository, ledger and audit storage.
    """

    def __init__(
        self,
        settings: Optional[DatabaseSettings] = None,
        engine: Optional[AsyncEngine] = None,
    ):
        self._settings = settings or get_settings().database
        self.engine = engine or self._create_engine()
        self._sessionmaker = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    def _create_engine(self) -> AsyncEngine:
        url = make_url(self._settings.url)
        connect_args = {}
        if url.get_backend_name() == "sqlite":
            # Concurrent writers wait for the lock instead of failing at once
            connect_args["timeout"] = self._settings.busy_timeout_seconds

        return create_async_engine(
            url,
            echo=self._settings.echo,
            connect_args=connect_args,
            pool_pre_ping=True,
        )

    async def create_tables(self) -> None:
        """Create any missing tables and indexes."""
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as e:
            raise StorageConnectionError(f"Could not create tables: {e}") from e
        logger.info("database_ready", url=self.engine.url.render_as_string(hide_password=True))

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """
        One transaction.

        SQLAlchemy errors are translated into StorageError so callers only
        deal with the storage exception hierarchy.
        """
        try:
            async with self._sessionmaker() as session:
                async with session.begin():
                    yield session
        except OperationalError as e:
            logger.warning("database_transaction_rolled_back", error=str(e))
            raise StorageConnectionError(f"Database unavailable: {e}") from e
        except SQLAlchemyError as e:
            logger.warning("database_transaction_rolled_back", error=str(e))
            raise StorageError(f"Database operation failed: {e}") from e

    async def check_connection(self) -> bool:
        """Check the database answers a trivial query."""
        try:
            async with self.session() as session:
                result = await session.execute(text("SELECT 1"))
                return result.scalar() == 1
        except StorageError as e:
            logger.error("database_connection_check_failed", error=str(e))
            return False

    async def dispose(self) -> None:
        """Close every pooled connection."""
        await self.engine.dispose()
