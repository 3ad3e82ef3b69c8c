"""
Core Data Models for Budget Receipts

These models define the strict schemas for data flowing through the
extraction pipeline:
1. Receipt - the persisted lifecycle record of one upload
2. ExtractedItem - one validated line item (never stored verbatim)
3. NewExpense / Expense - ledger rows written by reconciliation

DESIGN DECISION: The lifecycle graph is data, not scattered if-statements.
ALLOWED_TRANSITIONS is the only place that says which status may follow
which, and the repository refuses anything else.
"""

import datetime as dt
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Literal, Optional, Union
from uuid import UUID

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
)


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class ReceiptStatus(str, Enum):
    """
    Receipt processing status.

    pending -> processing -> completed | failed
    """
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({ReceiptStatus.COMPLETED, ReceiptStatus.FAILED})

# failed -> pending is user-initiated requeue; processing -> pending is
# only used by the startup staleness sweep.
ALLOWED_TRANSITIONS: frozenset[tuple[ReceiptStatus, ReceiptStatus]] = frozenset({
    (ReceiptStatus.PENDING, ReceiptStatus.PROCESSING),
    (ReceiptStatus.PROCESSING, ReceiptStatus.COMPLETED),
    (ReceiptStatus.PROCESSING, ReceiptStatus.FAILED),
    (ReceiptStatus.FAILED, ReceiptStatus.PENDING),
    (ReceiptStatus.PROCESSING, ReceiptStatus.PENDING),
})


def is_allowed_transition(from_status: ReceiptStatus, to_status: ReceiptStatus) -> bool:
    """Check an edge against the lifecycle graph."""
    return (ReceiptStatus(from_status), ReceiptStatus(to_status)) in ALLOWED_TRANSITIONS


class ExpenseType(str, Enum):
    """
    Ledger expense types.

    Weekly and monthly are the recurring budget buckets; tax lines are
    tracked on their own; everything else is misc.
    """
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    MISC = "misc"
    TAX = "tax"


class ErrorCode(str, Enum):
    """Machine-readable reason stored next to a failed receipt."""
    TIMEOUT = "TIMEOUT"
    RATE_LIMIT = "RATE_LIMIT"
    NETWORK_ERROR = "NETWORK_ERROR"
    API_ERROR = "API_ERROR"
    AUTHENTICATION_ERROR = "AUTHENTICATION_ERROR"
    INVALID_DOCUMENT = "INVALID_DOCUMENT"
    PARSE_ERROR = "PARSE_ERROR"
    IMAGE_MISSING = "IMAGE_MISSING"
    STORAGE_ERROR = "STORAGE_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# =============================================================================
# RECEIPT LIFECYCLE
# =============================================================================

class Receipt(BaseModel):
    """
    An uploaded receipt plus its processing lifecycle record.

    Only the receipt repository changes `status`.
    """
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    filename: str
    status: ReceiptStatus
    uploaded_at: datetime
    updated_at: datetime
    processed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    error_code: Optional[ErrorCode] = None
    content_type: Optional[str] = None
    size_bytes: int = Field(default=0, ge=0)
    attempt_count: int = Field(default=0, ge=0)
    item_count: Optional[int] = Field(default=None, ge=0)


class ReceiptView(BaseModel):
    """What the status query boundary exposes about a receipt."""

    id: UUID
    filename: str
    status: ReceiptStatus
    uploaded_at: datetime
    processed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    error_code: Optional[ErrorCode] = None
    item_count: Optional[int] = None
    can_requeue: bool = False

    @classmethod
    def from_receipt(cls, receipt: Receipt) -> "ReceiptView":
        return cls(
            id=receipt.id,
            filename=receipt.filename,
            status=receipt.status,
            uploaded_at=receipt.uploaded_at,
            processed_at=receipt.processed_at,
            error_message=receipt.error_message,
            error_code=receipt.error_code,
            item_count=receipt.item_count,
            can_requeue=receipt.status == ReceiptStatus.FAILED,
        )


# =============================================================================
# EXTRACTION
# =============================================================================

class RawExtractionResponse(BaseModel):
    """
    Untouched output of one extraction call.

    Never a half-parsed domain object: the parser owns interpretation.
    """

    text: str
    model_name: str
    mime_type: str
    latency_ms: Optional[int] = None


class ExtractedItem(BaseModel):
    """
    One validated line item from a receipt.

    Produced by the parser, consumed immediately by the reconciler.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    description: str = Field(
        ...,
        min_length=1,
        max_length=255,
    )
    amount: Decimal = Field(
        ...,
        ge=0,
        decimal_places=2,
    )
    date: Optional[dt.date] = None
    category_hint: Optional[str] = None
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    item_code: Optional[str] = Field(default=None, max_length=64)

    # Provenance flags
    date_defaulted: bool = False
    description_missing: bool = False

    @field_validator('amount')
    @classmethod
    def amount_must_be_finite(cls, v: Decimal) -> Decimal:
        if not v.is_finite():
            raise ValueError("Amount must be a finite number")
        return v


class ValidItem(BaseModel):
    """An item that survived validation."""

    kind: Literal["valid"] = "valid"
    index: int
    item: ExtractedItem


class DroppedItem(BaseModel):
    """An item that was rejected, with the reason."""

    kind: Literal["dropped"] = "dropped"
    index: int
    reason: str


ItemResult = Annotated[Union[ValidItem, DroppedItem], Field(discriminator="kind")]


class ParsedReceipt(BaseModel):
    """
    Batch outcome of parsing one extraction response.

    Per-item results are kept in model order so dropped reasons can be
    reported next to the items that did make it.
    """

    results: list[ItemResult] = Field(default_factory=list)
    store_name: Optional[str] = None
    declared_total: Optional[Decimal] = None
    declared_tax: Optional[Decimal] = None

    @property
    def items(self) -> list[ExtractedItem]:
        return [r.item for r in self.results if isinstance(r, ValidItem)]

    @property
    def dropped(self) -> list[DroppedItem]:
        return [r for r in self.results if isinstance(r, DroppedItem)]


# =============================================================================
# LEDGER
# =============================================================================

class NewExpense(BaseModel):
    """An expense row about to be written to the ledger."""
    model_config = ConfigDict(str_strip_whitespace=True)

    amount: Decimal = Field(..., ge=0)
    expense_date: date
    expense_type: ExpenseType
    description: str = Field(..., min_length=1, max_length=255)
    source: str = Field(default="Unknown", min_length=1, max_length=255)
    item_code: Optional[str] = Field(default=None, max_length=64)
    source_receipt_id: Optional[UUID] = None


class Expense(NewExpense):
    """A persisted ledger expense."""
    model_config = ConfigDict(from_attributes=True, str_strip_whitespace=True)

    id: int
    month: int = Field(..., ge=1, le=12)
    year: int
    created_at: datetime
