"""
Data Models Package

This package contains all Pydantic models used by the receipt pipeline.
All data flowing through the system must conform to these schemas.
"""

from budget_receipts.models.receipt import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    DroppedItem,
    ErrorCode,
    Expense,
    ExpenseType,
    ExtractedItem,
    ItemResult,
    NewExpense,
    ParsedReceipt,
    RawExtractionResponse,
    Receipt,
    ReceiptStatus,
    ReceiptView,
    ValidItem,
    is_allowed_transition,
    utcnow,
)
from budget_receipts.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Receipt models
    "ALLOWED_TRANSITIONS",
    "TERMINAL_STATUSES",
    "DroppedItem",
    "ErrorCode",
    "Expense",
    "ExpenseType",
    "ExtractedItem",
    "ItemResult",
    "NewExpense",
    "ParsedReceipt",
    "RawExtractionResponse",
    "Receipt",
    "ReceiptStatus",
    "ReceiptView",
    "ValidItem",
    "is_allowed_transition",
    "utcnow",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
