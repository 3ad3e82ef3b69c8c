"""
Budget Receipts - Source Package

Receipt ingestion and AI-assisted extraction for a personal budget tracker.
An uploaded receipt is stored, read by a vision model, validated, and
reconciled into ledger expenses while its lifecycle is tracked.

DESIGN PRINCIPLES:
1. The database is the single source of truth for receipt status
2. Model output is untrusted and validated item by item
3. Ledger writes are all-or-nothing per receipt
4. One bad receipt never takes the application down
5. Every lifecycle step is auditable
"""

__version__ = "1.0.0"
__author__ = "Budget Receipts Team"
