"""
Reconciler

Maps validated line items to ledger expenses and commits them together with
the receipt's `completed` status.

DESIGN DECISION: One transaction for everything. The expense inserts and the
processing -> completed transition share a unit of work; if any insert fails,
or the transition loses a race, nothing is committed and the error
propagates to the supervisor's failure path. A receipt is therefore never
`completed` with half its expenses, and never `failed` with any.

Category hints from the model are advisory. They are mapped to an
ExpenseType through a fixed table (extendable through configuration);
anything unrecognized becomes misc.
"""

import re
from decimal import Decimal
from typing import Optional

import structlog

from budget_receipts.config import PipelineSettings, get_settings
from budget_receipts.models.receipt import (
    ExpenseType,
    ExtractedItem,
    NewExpense,
    ParsedReceipt,
    Receipt,
    ReceiptStatus,
)
from budget_receipts.services.storage.interface import (
    LedgerInterface,
    ReceiptRepositoryInterface,
)

logger = structlog.get_logger(__name__)

UNKNOWN_SOURCE = "Unknown"

# Hint (lowercase) -> expense type
DEFAULT_CATEGORY_MAP: dict[str, ExpenseType] = {
    "weekly": ExpenseType.WEEKLY,
    "monthly": ExpenseType.MONTHLY,
    "misc": ExpenseType.MISC,
    "miscellaneous": ExpenseType.MISC,
    "other": ExpenseType.MISC,
    "tax": ExpenseType.TAX,
    "sales tax": ExpenseType.TAX,
    "vat": ExpenseType.TAX,
    "gst": ExpenseType.TAX,
    "hst": ExpenseType.TAX,
    "pst": ExpenseType.TAX,
    "grocery": ExpenseType.WEEKLY,
    "groceries": ExpenseType.WEEKLY,
    "produce": ExpenseType.WEEKLY,
    "dairy": ExpenseType.WEEKLY,
    "meat": ExpenseType.WEEKLY,
    "bakery": ExpenseType.WEEKLY,
    "household": ExpenseType.MONTHLY,
    "pantry": ExpenseType.MONTHLY,
    "toiletries": ExpenseType.MONTHLY,
    "baby": ExpenseType.MONTHLY,
    "cleaning": ExpenseType.MONTHLY,
}

# "Milk (weekly)" -> "weekly"
_PARENTHESIZED_TYPE_RE = re.compile(r"\(([^()]+)\)\s*$")


class CategoryMapper:
    """
    Resolves model category hints to expense types.
    """

    def __init__(self, extra_mappings: Optional[dict[str, str]] = None):
        self._table = dict(DEFAULT_CATEGORY_MAP)
        for hint, type_name in (extra_mappings or {}).items():
            try:
                self._table[hint.strip().lower()] = ExpenseType(type_name.strip().lower())
            except ValueError:
                logger.warning("category_mapping_ignored", hint=hint, expense_type=type_name)

    def resolve(self, hint: Optional[str]) -> ExpenseType:
        """Map a hint to an expense type; unrecognized hints are misc."""
        if not hint:
            return ExpenseType.MISC
        normalized = " ".join(hint.strip().lower().split())

        if normalized in self._table:
            return self._table[normalized]

        match = _PARENTHESIZED_TYPE_RE.search(normalized)
        if match:
            inner = match.group(1).strip()
            if inner in self._table:
                return self._table[inner]

        return ExpenseType.MISC


class Reconciler:
    """
    Writes a receipt's validated items to the ledger atomically.
    """

    def __init__(
        self,
        repository: ReceiptRepositoryInterface,
        ledger: LedgerInterface,
        settings: Optional[PipelineSettings] = None,
    ):
        self._repository = repository
        self._ledger = ledger
        self._settings = settings or get_settings().pipeline
        self._mapper = CategoryMapper(self._settings.category_map)

    def to_expense(
        self,
        item: ExtractedItem,
        receipt: Receipt,
        source: Optional[str],
    ) -> NewExpense:
        """Map one validated item to a ledger expense."""
        expense_type = self._mapper.resolve(item.category_hint)
        # Tax lines are sometimes labelled only by their description
        if expense_type == ExpenseType.MISC and item.item_code and item.item_code.upper() == "TAX":
            expense_type = ExpenseType.TAX

        return NewExpense(
            amount=item.amount,
            expense_date=item.date or receipt.uploaded_at.date(),
            expense_type=expense_type,
            description=item.description,
            source=source or UNKNOWN_SOURCE,
            item_code=item.item_code,
            source_receipt_id=receipt.id,
        )

    async def reconcile(self, receipt: Receipt, parsed: ParsedReceipt) -> int:
        """
        Persist every validated item and mark the receipt completed.

        Returns:
            Number of expenses written

        Raises:
            StorageError: If any write fails (nothing is committed)
            ConflictError: If the receipt is no longer processing (nothing is committed)
        """
        expenses = [self.to_expense(item, receipt, parsed.store_name) for item in parsed.items]

        async with self._repository.unit_of_work() as session:
            for expense in expenses:
                await self._ledger.create_expense(expense, session=session)
            await self._repository.transition(
                receipt.id,
                ReceiptStatus.PROCESSING,
                ReceiptStatus.COMPLETED,
                item_count=len(expenses),
                session=session,
            )

        self._check_total(receipt, parsed, expenses)
        logger.info(
            "receipt_reconciled",
            receipt_id=str(receipt.id),
            expense_count=len(expenses),
            source=parsed.store_name or UNKNOWN_SOURCE,
        )
        return len(expenses)

    def _check_total(
        self,
        receipt: Receipt,
        parsed: ParsedReceipt,
        expenses: list[NewExpense],
    ) -> None:
        if parsed.declared_tax and not any(e.expense_type == ExpenseType.TAX for e in expenses):
            # Tax reported only at receipt level is not booked
            logger.warning(
                "receipt_tax_not_itemized",
                receipt_id=str(receipt.id),
                declared_tax=str(parsed.declared_tax),
            )
        if parsed.declared_total is None or not expenses:
            return
        reconciled = sum((e.amount for e in expenses), Decimal("0"))
        if abs(reconciled - parsed.declared_total) > Decimal("0.01"):
            logger.warning(
                "receipt_total_mismatch",
                receipt_id=str(receipt.id),
                declared_total=str(parsed.declared_total),
                reconciled_total=str(reconciled),
            )
