"""
Tests for category mapping and atomic reconciliation.
"""

from datetime import date
from decimal import Decimal
from typing import Optional

import pytest

from budget_receipts.config import PipelineSettings
from budget_receipts.models.receipt import (
    ExpenseType,
    ExtractedItem,
    NewExpense,
    ParsedReceipt,
    ReceiptStatus,
    ValidItem,
)
from budget_receipts.reconciliation import CategoryMapper, Reconciler
from budget_receipts.reconciliation import reconciler as reconciler_module
from budget_receipts.services.storage import ConflictError, SqlLedger, StorageError


def _parsed(*items: ExtractedItem, store: Optional[str] = "Corner Market", total=None) -> ParsedReceipt:
    return ParsedReceipt(
        results=[ValidItem(index=i, item=item) for i, item in enumerate(items)],
        store_name=store,
        declared_total=total,
    )


def _item(description: str, amount: str, hint: Optional[str] = None, **kwargs) -> ExtractedItem:
    return ExtractedItem(description=description, amount=Decimal(amount), category_hint=hint, **kwargs)


async def _processing_receipt(repository):
    receipt = await repository.create("receipt.jpg")
    return await repository.transition(receipt.id, ReceiptStatus.PENDING, ReceiptStatus.PROCESSING)


class FailingLedger(SqlLedger):
    """Writes the first expenses, then fails."""

    def __init__(self, database, fail_on: int):
        super().__init__(database)
        self.fail_on = fail_on
        self.calls = 0

    async def create_expense(self, expense: NewExpense, session=None):
        self.calls += 1
        if self.calls == self.fail_on:
            raise StorageError("disk full")
        return await super().create_expense(expense, session=session)


class TestCategoryMapper:
    """Tests for hint to expense type mapping."""

    @pytest.mark.parametrize("hint,expected", [
        ("weekly", ExpenseType.WEEKLY),
        ("Monthly", ExpenseType.MONTHLY),
        ("tax", ExpenseType.TAX),
        ("sales tax", ExpenseType.TAX),
        ("VAT", ExpenseType.TAX),
        ("groceries", ExpenseType.WEEKLY),
        ("household", ExpenseType.MONTHLY),
        ("Milk (weekly)", ExpenseType.WEEKLY),
        ("Diapers (monthly)", ExpenseType.MONTHLY),
        ("electronics", ExpenseType.MISC),
        (None, ExpenseType.MISC),
        ("", ExpenseType.MISC),
    ])
    def test_resolve(self, hint, expected):
        """Test the fixed mapping table."""
        assert CategoryMapper().resolve(hint) == expected

    def test_configured_mappings_extend_table(self):
        """Test configuration adds and overrides hints."""
        mapper = CategoryMapper({"snacks": "weekly", "household": "misc"})
        assert mapper.resolve("Snacks") == ExpenseType.WEEKLY
        assert mapper.resolve("household") == ExpenseType.MISC

    def test_invalid_configured_type_ignored(self):
        """Test a mapping to an unknown type is skipped."""
        mapper = CategoryMapper({"snacks": "luxury"})
        assert mapper.resolve("snacks") == ExpenseType.MISC


class TestReconcile:
    """Tests for writing expenses and completing the receipt."""

    async def test_writes_expenses_and_completes(self, repository, ledger, reconciler):
        """Test every item becomes an expense and the receipt completes."""
        receipt = await _processing_receipt(repository)
        parsed = _parsed(
            _item("Whole Milk", "3.49", "weekly", date=date(2024, 3, 2)),
            _item("Dish Soap", "3.99", "household", date=date(2024, 3, 2)),
            _item("Tax", "0.37", "tax", item_code="TAX", date=date(2024, 3, 2)),
        )

        count = await reconciler.reconcile(receipt, parsed)

        assert count == 3
        expenses = await ledger.list_by_receipt(receipt.id)
        assert [e.expense_type for e in expenses] == [ExpenseType.WEEKLY, ExpenseType.MONTHLY, ExpenseType.TAX]
        assert all(e.source == "Corner Market" for e in expenses)
        assert all(e.month == 3 and e.year == 2024 for e in expenses)
        stored = await repository.get(receipt.id)
        assert stored.status == ReceiptStatus.COMPLETED
        assert stored.item_count == 3

    async def test_zero_items_completes(self, repository, ledger, reconciler):
        """Test an empty receipt completes with no expenses."""
        receipt = await _processing_receipt(repository)
        assert await reconciler.reconcile(receipt, _parsed()) == 0
        stored = await repository.get(receipt.id)
        assert stored.status == ReceiptStatus.COMPLETED
        assert stored.item_count == 0

    async def test_missing_store_is_unknown(self, repository, ledger, reconciler):
        """Test expenses without a store name get "Unknown"."""
        receipt = await _processing_receipt(repository)
        await reconciler.reconcile(receipt, _parsed(_item("Milk", "1.00"), store=None))
        expenses = await ledger.list_by_receipt(receipt.id)
        assert expenses[0].source == "Unknown"

    async def test_undated_item_uses_upload_date(self, repository, ledger, reconciler):
        """Test an item without a date is booked on the upload day."""
        receipt = await _processing_receipt(repository)
        await reconciler.reconcile(receipt, _parsed(_item("Milk", "1.00")))
        expenses = await ledger.list_by_receipt(receipt.id)
        assert expenses[0].expense_date == receipt.uploaded_at.date()

    async def test_tax_code_without_hint(self, repository, ledger, reconciler):
        """Test a TAX item code classifies an unhinted line as tax."""
        receipt = await _processing_receipt(repository)
        await reconciler.reconcile(receipt, _parsed(_item("Sales Tax", "0.50", item_code="TAX")))
        expenses = await ledger.list_by_receipt(receipt.id)
        assert expenses[0].expense_type == ExpenseType.TAX

    async def test_ledger_failure_rolls_back_everything(self, database, repository, pipeline_settings):
        """Test a failing insert leaves no expenses and the receipt processing."""
        receipt = await _processing_receipt(repository)
        failing = FailingLedger(database, fail_on=3)
        reconciler = Reconciler(repository, failing, pipeline_settings)
        parsed = _parsed(_item("A", "1.00"), _item("B", "2.00"), _item("C", "3.00"))

        with pytest.raises(StorageError):
            await reconciler.reconcile(receipt, parsed)

        assert await SqlLedger(database).list_by_receipt(receipt.id) == []
        assert (await repository.get(receipt.id)).status == ReceiptStatus.PROCESSING

    async def test_lost_race_rolls_back_expenses(self, repository, ledger, reconciler):
        """Test expenses are discarded when the receipt already moved on."""
        receipt = await _processing_receipt(repository)
        await repository.transition(receipt.id, "processing", "pending")

        with pytest.raises(ConflictError):
            await reconciler.reconcile(receipt, _parsed(_item("Milk", "1.00")))

        assert await ledger.list_by_receipt(receipt.id) == []

    async def test_configured_category_map(self, repository, ledger):
        """Test reconciliation uses the configured mappings."""
        settings = PipelineSettings(category_map={"snacks": "weekly"})
        reconciler = Reconciler(repository, ledger, settings)
        receipt = await _processing_receipt(repository)
        await reconciler.reconcile(receipt, _parsed(_item("Chips", "2.00", "snacks")))
        expenses = await ledger.list_by_receipt(receipt.id)
        assert expenses[0].expense_type == ExpenseType.WEEKLY

    async def test_total_mismatch_still_completes(self, repository, ledger, reconciler):
        """Test a declared total that does not add up is only a warning."""
        receipt = await _processing_receipt(repository)
        count = await reconciler.reconcile(receipt, _parsed(_item("Milk", "1.00"), total=Decimal("9.99")))
        assert count == 1
        assert (await repository.get(receipt.id)).status == ReceiptStatus.COMPLETED

    async def test_receipt_level_tax_logged(self, repository, reconciler, monkeypatch):
        """Test tax reported only at receipt level is surfaced in the log."""
        warnings = []

        class RecordingLogger:
            def warning(self, event, **kwargs):
                warnings.append((event, kwargs))

            def info(self, event, **kwargs):
                pass

            def debug(self, event, **kwargs):
                pass

        monkeypatch.setattr(reconciler_module, "logger", RecordingLogger())
        receipt = await _processing_receipt(repository)
        parsed = _parsed(_item("Milk", "1.00"), total=Decimal("1.08"))
        parsed.declared_tax = Decimal("0.08")

        await reconciler.reconcile(receipt, parsed)

        events = [event for event, _ in warnings]
        assert "receipt_tax_not_itemized" in events
        tax_warning = dict(warnings)["receipt_tax_not_itemized"]
        assert tax_warning["declared_tax"] == "0.08"
