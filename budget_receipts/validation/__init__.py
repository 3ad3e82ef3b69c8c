"""Model response parsing and validation package."""

from budget_receipts.validation.parser import (
    ParseError,
    ResponseParser,
    parse_amount,
    parse_confidence,
    parse_date,
    strip_code_fences,
)

__all__ = [
    "ParseError",
    "ResponseParser",
    "parse_amount",
    "parse_confidence",
    "parse_date",
    "strip_code_fences",
]
