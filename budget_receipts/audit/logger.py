"""
Audit Logger

DESIGN DECISION: Every lifecycle step of a receipt is logged.
This provides:
1. Traceability from upload to ledger rows
2. A record of why a receipt failed or lost items
3. Debugging capability for the background worker

The audit logger:
- Is async to not block the pipeline
- Gracefully handles failures (a broken audit table never fails a receipt)
- Uses the receipt id as correlation id for every worker-side event
"""

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

import structlog

from budget_receipts.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity
from budget_receipts.services.storage import AuditStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for operators)
    2. The audit_events table (for persistence)
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger("budget_receipts.audit")

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
            self._logger.error("audit_event", **log_dict)
        elif event.severity == AuditSeverity.WARNING:
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_receipt_submitted(
        self,
        receipt_id: UUID,
        filename: str,
        size_bytes: int,
        content_type: Optional[str],
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.receipt_submitted(
            receipt_id=receipt_id,
            filename=filename,
            size_bytes=size_bytes,
            content_type=content_type,
            correlation_id=correlation_id,
        ))

    async def log_receipt_claimed(self, receipt_id: UUID, attempt_count: int) -> None:
        await self.log(AuditEventBuilder.receipt_claimed(receipt_id, attempt_count))

    async def log_retry_scheduled(
        self,
        receipt_id: UUID,
        attempt: int,
        delay_seconds: float,
        error_code: str,
        error_message: str,
    ) -> None:
        """Log a transient extraction failure that will be retried."""
        await self.log(AuditEventBuilder.extraction_retry_scheduled(
            receipt_id=receipt_id,
            attempt=attempt,
            delay_seconds=delay_seconds,
            error_code=error_code,
            error_message=error_message,
        ))

    async def log_extraction_failed(
        self,
        receipt_id: UUID,
        attempts: int,
        error_code: str,
        error_message: str,
    ) -> None:
        await self.log(AuditEventBuilder.extraction_failed(
            receipt_id=receipt_id,
            attempts=attempts,
            error_code=error_code,
            error_message=error_message,
        ))

    async def log_items_dropped(
        self,
        receipt_id: UUID,
        dropped: list[dict],
        kept: int,
    ) -> None:
        """Log line items the validator refused."""
        await self.log(AuditEventBuilder.items_dropped(receipt_id, dropped, kept))

    async def log_receipt_completed(self, receipt_id: UUID, item_count: int) -> None:
        await self.log(AuditEventBuilder.receipt_completed(receipt_id, item_count))

    async def log_receipt_failed(
        self,
        receipt_id: UUID,
        error_code: str,
        error_message: str,
    ) -> None:
        await self.log(AuditEventBuilder.receipt_failed(receipt_id, error_code, error_message))

    async def log_receipt_requeued(self, receipt_id: UUID) -> None:
        await self.log(AuditEventBuilder.receipt_requeued(receipt_id))

    async def log_stale_recovered(self, receipt_id: UUID, last_update: datetime) -> None:
        await self.log(AuditEventBuilder.stale_receipt_recovered(receipt_id, last_update))

    async def log_receipt_deleted(self, receipt_id: UUID) -> None:
        await self.log(AuditEventBuilder.receipt_deleted(receipt_id))

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        await self.log(AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        ))

    async def log_external_service_error(
        self,
        service: str,
        error_code: str,
        error_message: str,
        correlation_id: UUID,
    ) -> None:
        """Log external service error."""
        await self.log(AuditEventBuilder.external_service_error(
            service=service,
            error_code=error_code,
            error_message=error_message,
            correlation_id=correlation_id,
        ))


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a user action (e.g. an upload) and pass it
    through the operations that follow.
    """
    return uuid4()
