"""
Tests for Budget Receipts models

Test strategy:
1. Unit tests for individual components (models, parser, mapping)
2. Integration tests for the pipeline against a temporary SQLite database
3. No real API calls in tests (extraction is scripted)
"""

import pytest
from datetime import date, datetime
from decimal import Decimal
from uuid import uuid4

from pydantic import ValidationError

from budget_receipts.models.receipt import (
    ALLOWED_TRANSITIONS,
    DroppedItem,
    ErrorCode,
    ExpenseType,
    ExtractedItem,
    NewExpense,
    ParsedReceipt,
    Receipt,
    ReceiptStatus,
    ReceiptView,
    ValidItem,
    is_allowed_transition,
)
from budget_receipts.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)


class TestReceiptLifecycle:
    """Tests for the status graph."""

    def test_forward_edges_allowed(self):
        """Test the normal processing path is allowed."""
        assert is_allowed_transition(ReceiptStatus.PENDING, ReceiptStatus.PROCESSING)
        assert is_allowed_transition(ReceiptStatus.PROCESSING, ReceiptStatus.COMPLETED)
        assert is_allowed_transition(ReceiptStatus.PROCESSING, ReceiptStatus.FAILED)

    def test_requeue_and_sweep_edges_allowed(self):
        """Test failed -> pending and processing -> pending are allowed."""
        assert is_allowed_transition(ReceiptStatus.FAILED, ReceiptStatus.PENDING)
        assert is_allowed_transition(ReceiptStatus.PROCESSING, ReceiptStatus.PENDING)

    def test_completed_is_final(self):
        """Test nothing leaves completed."""
        for status in ReceiptStatus:
            assert not is_allowed_transition(ReceiptStatus.COMPLETED, status)

    def test_pending_cannot_skip_processing(self):
        """Test pending cannot jump straight to a terminal status."""
        assert not is_allowed_transition(ReceiptStatus.PENDING, ReceiptStatus.COMPLETED)
        assert not is_allowed_transition(ReceiptStatus.PENDING, ReceiptStatus.FAILED)

    def test_graph_has_five_edges(self):
        """Test the graph holds exactly the documented edges."""
        assert len(ALLOWED_TRANSITIONS) == 5

    def test_terminal_flag(self):
        """Test completed and failed are terminal."""
        assert ReceiptStatus.COMPLETED.is_terminal
        assert ReceiptStatus.FAILED.is_terminal
        assert not ReceiptStatus.PENDING.is_terminal
        assert not ReceiptStatus.PROCESSING.is_terminal

    def test_accepts_string_statuses(self):
        """Test raw status strings are accepted."""
        assert is_allowed_transition("failed", "pending")


class TestReceiptView:
    """Tests for the status boundary view."""

    def _receipt(self, status: ReceiptStatus) -> Receipt:
        now = datetime(2024, 3, 2, 12, 0)
        return Receipt(
            id=uuid4(),
            filename="receipt.jpg",
            status=status,
            uploaded_at=now,
            updated_at=now,
            error_message="The receipt reader took too long to respond" if status == ReceiptStatus.FAILED else None,
            error_code=ErrorCode.TIMEOUT if status == ReceiptStatus.FAILED else None,
        )

    def test_failed_receipt_can_be_requeued(self):
        """Test a failed receipt exposes its error and is requeueable."""
        view = ReceiptView.from_receipt(self._receipt(ReceiptStatus.FAILED))
        assert view.can_requeue
        assert view.error_code == ErrorCode.TIMEOUT
        assert "too long" in view.error_message

    def test_pending_receipt_cannot_be_requeued(self):
        """Test only failed receipts are requeueable."""
        view = ReceiptView.from_receipt(self._receipt(ReceiptStatus.PENDING))
        assert not view.can_requeue
        assert view.error_message is None


class TestExtractedItem:
    """Tests for the validated item model."""

    def test_creation(self):
        """Test ExtractedItem creation."""
        item = ExtractedItem(
            description="Whole Milk",
            amount=Decimal("3.49"),
            date=date(2024, 3, 2),
            category_hint="weekly",
        )
        assert item.description == "Whole Milk"
        assert item.amount == Decimal("3.49")
        assert not item.date_defaulted

    def test_rejects_negative_amount(self):
        """Test that negative amounts are rejected."""
        with pytest.raises(ValidationError):
            ExtractedItem(description="Refund", amount=Decimal("-1.00"))

    def test_rejects_non_finite_amount(self):
        """Test that NaN amounts are rejected."""
        with pytest.raises(ValidationError):
            ExtractedItem(description="Broken", amount=Decimal("NaN"))

    def test_rejects_sub_cent_precision(self):
        """Test amounts carry at most two decimal places."""
        with pytest.raises(ValidationError):
            ExtractedItem(description="Fuel", amount=Decimal("1.005"))

    def test_rejects_out_of_range_confidence(self):
        """Test confidence must be within [0, 1]."""
        with pytest.raises(ValidationError):
            ExtractedItem(description="Milk", amount=Decimal("1.00"), confidence=1.5)

    def test_strips_description(self):
        """Test whitespace is stripped from descriptions."""
        item = ExtractedItem(description="  Bread  ", amount=Decimal("2.00"))
        assert item.description == "Bread"


class TestParsedReceipt:
    """Tests for the batch parse outcome."""

    def test_partitions_results(self):
        """Test items and dropped are split from the tagged results."""
        parsed = ParsedReceipt(results=[
            ValidItem(index=0, item=ExtractedItem(description="Milk", amount=Decimal("1.00"))),
            DroppedItem(index=1, reason="negative amount -2"),
        ])
        assert [i.description for i in parsed.items] == ["Milk"]
        assert [d.index for d in parsed.dropped] == [1]

    def test_discriminates_by_kind(self):
        """Test results round-trip through plain dicts by their kind tag."""
        parsed = ParsedReceipt.model_validate({
            "results": [
                {"kind": "dropped", "index": 0, "reason": "missing amount"},
                {"kind": "valid", "index": 1, "item": {"description": "Eggs", "amount": "2.50"}},
            ]
        })
        assert isinstance(parsed.results[0], DroppedItem)
        assert isinstance(parsed.results[1], ValidItem)


class TestNewExpense:
    """Tests for ledger expense input."""

    def test_defaults_source(self):
        """Test source defaults to Unknown."""
        expense = NewExpense(
            amount=Decimal("3.49"),
            expense_date=date(2024, 3, 2),
            expense_type=ExpenseType.WEEKLY,
            description="Whole Milk",
        )
        assert expense.source == "Unknown"

    def test_rejects_unknown_type(self):
        """Test the expense type is one of the four budget types."""
        with pytest.raises(ValidationError):
            NewExpense(
                amount=Decimal("1.00"),
                expense_date=date(2024, 3, 2),
                expense_type="luxury",
                description="Caviar",
            )


class TestAuditModels:
    """Tests for audit event models."""

    def test_audit_event_creation(self):
        """Test AuditEvent creation."""
        event = AuditEvent(
            event_type=AuditEventType.RECEIPT_SUBMITTED,
            description="Receipt uploaded: receipt.jpg",
        )
        assert event.event_type == AuditEventType.RECEIPT_SUBMITTED
        assert event.severity == AuditSeverity.INFO

    def test_audit_event_to_log_dict(self):
        """Test AuditEvent serialization for logging."""
        event = AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description="Test error",
            error_message="Something went wrong",
        )
        log_dict = event.to_log_dict()
        assert log_dict["event_type"] == "system_error"
        assert log_dict["severity"] == "error"
        assert log_dict["error_message"] == "Something went wrong"

    def test_builder_receipt_failed(self):
        """Test the failure builder carries code and message."""
        receipt_id = uuid4()
        event = AuditEventBuilder.receipt_failed(receipt_id, "PARSE_ERROR", "no items")
        assert event.event_type == AuditEventType.RECEIPT_FAILED
        assert event.severity == AuditSeverity.ERROR
        assert event.entity_id == receipt_id
        assert event.correlation_id == receipt_id
        assert event.error_code == "PARSE_ERROR"

    def test_builder_receipt_submitted_is_user_action(self):
        """Test uploads are recorded as user actions."""
        event = AuditEventBuilder.receipt_submitted(
            receipt_id=uuid4(),
            filename="receipt.jpg",
            size_bytes=1024,
            content_type="image/jpeg",
            correlation_id=uuid4(),
        )
        assert event.is_user_action
        assert event.details["size_bytes"] == 1024
