"""Ledger reconciliation package."""

from budget_receipts.reconciliation.reconciler import (
    DEFAULT_CATEGORY_MAP,
    CategoryMapper,
    Reconciler,
)

__all__ = [
    "DEFAULT_CATEGORY_MAP",
    "CategoryMapper",
    "Reconciler",
]
