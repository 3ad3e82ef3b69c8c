"""
Audit Models for Budget Receipts

Every lifecycle step of a receipt is logged for audit purposes.
This provides:
1. Traceability from upload to ledger rows
2. Debugging information when extraction goes wrong
3. A history the UI can show next to a failed receipt

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from budget_receipts.models.receipt import utcnow


class AuditEventType(str, Enum):
    """
    Types of events we audit.

    Every step of the receipt lifecycle has its own event type.
    """
    # Ingestion
    RECEIPT_SUBMITTED = "receipt_submitted"
    RECEIPT_DELETED = "receipt_deleted"

    # Dispatch
    RECEIPT_CLAIMED = "receipt_claimed"
    STALE_RECEIPT_RECOVERED = "stale_receipt_recovered"
    RECEIPT_REQUEUED = "receipt_requeued"

    # Extraction
    EXTRACTION_RETRY_SCHEDULED = "extraction_retry_scheduled"
    EXTRACTION_FAILED = "extraction_failed"

    # Parsing
    ITEMS_DROPPED = "items_dropped"

    # Terminal states
    RECEIPT_COMPLETED = "receipt_completed"
    RECEIPT_FAILED = "receipt_failed"

    # System events
    SYSTEM_ERROR = "system_error"
    EXTERNAL_SERVICE_ERROR = "external_service_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    Every significant action creates one of these.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=utcnow,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - what entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'receipt')"
    )
    entity_id: Optional[UUID] = Field(
        default=None,
        description="ID of the entity this event relates to"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., all events of one upload)"
    )

    # Event details
    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    # Error information (if applicable)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    is_user_action: bool = Field(
        default=False,
        description="Was this triggered by a user action?"
    )

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": str(self.entity_id) if self.entity_id else None,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "is_user_action": self.is_user_action,
        }


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.receipt_submitted(receipt_id, filename, size, correlation_id)
        event = AuditEventBuilder.receipt_failed(receipt_id, code, message)
    """

    @staticmethod
    def receipt_submitted(
        receipt_id: UUID,
        filename: str,
        size_bytes: int,
        content_type: Optional[str],
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECEIPT_SUBMITTED,
            entity_type="receipt",
            entity_id=receipt_id,
            correlation_id=correlation_id,
            description=f"Receipt uploaded: {filename}",
            details={
                "filename": filename,
                "size_bytes": size_bytes,
                "content_type": content_type,
            },
            is_user_action=True,
        )

    @staticmethod
    def receipt_claimed(receipt_id: UUID, attempt_count: int) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECEIPT_CLAIMED,
            entity_type="receipt",
            entity_id=receipt_id,
            correlation_id=receipt_id,
            description="Receipt picked up for extraction",
            details={"attempt_count": attempt_count},
        )

    @staticmethod
    def extraction_retry_scheduled(
        receipt_id: UUID,
        attempt: int,
        delay_seconds: float,
        error_code: str,
        error_message: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXTRACTION_RETRY_SCHEDULED,
            severity=AuditSeverity.WARNING,
            entity_type="receipt",
            entity_id=receipt_id,
            correlation_id=receipt_id,
            description=f"Extraction attempt {attempt} failed, retrying in {delay_seconds:.1f}s",
            details={"attempt": attempt, "delay_seconds": delay_seconds},
            error_code=error_code,
            error_message=error_message,
        )

    @staticmethod
    def extraction_failed(
        receipt_id: UUID,
        attempts: int,
        error_code: str,
        error_message: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXTRACTION_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="receipt",
            entity_id=receipt_id,
            correlation_id=receipt_id,
            description=f"Extraction gave up after {attempts} attempt(s)",
            details={"attempts": attempts},
            error_code=error_code,
            error_message=error_message,
        )

    @staticmethod
    def items_dropped(receipt_id: UUID, dropped: list[dict], kept: int) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ITEMS_DROPPED,
            severity=AuditSeverity.WARNING,
            entity_type="receipt",
            entity_id=receipt_id,
            correlation_id=receipt_id,
            description=f"Dropped {len(dropped)} extracted items, kept {kept}",
            details={"dropped": dropped, "kept": kept},
        )

    @staticmethod
    def receipt_completed(receipt_id: UUID, item_count: int) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECEIPT_COMPLETED,
            entity_type="receipt",
            entity_id=receipt_id,
            correlation_id=receipt_id,
            description=f"Receipt reconciled into {item_count} expenses",
            details={"item_count": item_count},
        )

    @staticmethod
    def receipt_failed(
        receipt_id: UUID,
        error_code: str,
        error_message: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECEIPT_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="receipt",
            entity_id=receipt_id,
            correlation_id=receipt_id,
            description=f"Receipt processing failed: {error_code}",
            error_code=error_code,
            error_message=error_message,
        )

    @staticmethod
    def receipt_requeued(receipt_id: UUID) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECEIPT_REQUEUED,
            entity_type="receipt",
            entity_id=receipt_id,
            correlation_id=receipt_id,
            description="Failed receipt queued for another extraction",
            is_user_action=True,
        )

    @staticmethod
    def stale_receipt_recovered(receipt_id: UUID, last_update: datetime) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.STALE_RECEIPT_RECOVERED,
            severity=AuditSeverity.WARNING,
            entity_type="receipt",
            entity_id=receipt_id,
            correlation_id=receipt_id,
            description="Orphaned receipt returned to the queue",
            details={"last_update": last_update.isoformat()},
        )

    @staticmethod
    def receipt_deleted(receipt_id: UUID) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECEIPT_DELETED,
            entity_type="receipt",
            entity_id=receipt_id,
            correlation_id=receipt_id,
            description="Receipt and its image deleted; expenses kept",
            is_user_action=True,
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )

    @staticmethod
    def external_service_error(
        service: str,
        error_code: str,
        error_message: str,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXTERNAL_SERVICE_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"External service error: {service}",
            error_code=error_code,
            error_message=error_message,
            details={
                "service": service,
            },
            correlation_id=correlation_id,
        )
