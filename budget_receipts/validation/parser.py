"""
Response Parser & Validator

Turns the vision model's raw text into validated line items.

DESIGN DECISION: Validation is per item, not per response.
Each candidate item becomes either ValidItem or DroppedItem(reason); one bad
line does not sink a receipt. The batch only fails (ParseError) when the
text holds no JSON at all, or when there were items and every single one
was dropped, i.e. nothing trustworthy was extracted.

Rules per item:
- amount must be a finite, non-negative number, otherwise the item is dropped
- an unreadable date is dropped on its own; the upload date is used instead
- a missing description is replaced by a placeholder; the amount is what
  matters for a budget ledger
- an out-of-range confidence is dropped on its own

IMPORTANT: ParseError is the only exception that leaves this module.
Unexpected shapes degrade to dropped items, never to a crash.
"""

import json
import re
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional

import structlog
from pydantic import ValidationError

from budget_receipts.config import PipelineSettings, get_settings
from budget_receipts.models.receipt import (
    DroppedItem,
    ExtractedItem,
    ParsedReceipt,
    RawExtractionResponse,
    ValidItem,
)

logger = structlog.get_logger(__name__)

CENTS = Decimal("0.01")
MAX_DESCRIPTION_LENGTH = 255
MAX_ITEM_CODE_LENGTH = 64

DESCRIPTION_KEYS = ("description", "item_name", "name")
AMOUNT_KEYS = ("amount", "item_price", "price")
CATEGORY_KEYS = ("category_hint", "category", "item_type")
ITEM_CODE_KEYS = ("item_code", "code", "sku")
STORE_KEYS = ("store", "source", "merchant")

DATE_FORMATS = ["%Y-%m-%d", "%Y/%m/%d", "%m/%d/%Y", "%m/%d/%y", "%d.%m.%Y", "%b %d, %Y", "%d %b %Y"]

_FENCE_RE = re.compile(r"^\s*```[a-zA-Z]*\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)
_NUMBER_NOISE_RE = re.compile(r"[\s$€£¥₹]")
# 1,234 or 1,234.50
_THOUSANDS_COMMA_RE = re.compile(r"^-?\d{1,3}(,\d{3})+(\.\d+)?$")
# 4,50 or 1.234,50
_DECIMAL_COMMA_RE = re.compile(r"^-?(\d{1,3}(\.\d{3})+|\d+),\d{2}$")
# Codes the model uses to say "nothing here"
_EMPTY_CODES = {"", "n/a", "na", "none", "null", "-"}


class ParseError(Exception):
    """The model response yielded nothing trustworthy."""

    def __init__(self, message: str, dropped: Optional[list[DroppedItem]] = None):
        self.dropped = dropped or []
        super().__init__(message)


def strip_code_fences(text: str) -> str:
    """Remove a surrounding ```json ... ``` block if the model added one."""
    match = _FENCE_RE.match(text)
    return match.group(1) if match else text


def _first(record: dict, keys: tuple[str, ...]) -> Any:
    for key in keys:
        if key in record and record[key] is not None:
            return record[key]
    return None


def _locate_json(text: str) -> list[str]:
    """
    Candidate JSON documents inside model text.

    For each kind of opening bracket, takes everything from its first
    occurrence to the last matching closing bracket, which tolerates chatter
    before and after. Candidates are ordered by where they start.
    """
    candidates = []
    for opener, closer in (("{", "}"), ("[", "]")):
        start = text.find(opener)
        end = text.rfind(closer)
        if 0 <= start < end:
            candidates.append((start, text[start:end + 1]))
    return [candidate for _, candidate in sorted(candidates)]


def _normalize_separators(text: str) -> Optional[str]:
    """
    Resolve commas in a printed amount.

    A comma is either a thousands separator (1,234.50) or, with exactly two
    digits after it, the decimal point (4,50 and 1.234,50). Anything else
    with a comma is ambiguous and returns None.
    """
    if "," not in text:
        return text
    if _THOUSANDS_COMMA_RE.match(text):
        return text.replace(",", "")
    if _DECIMAL_COMMA_RE.match(text):
        return text.replace(".", "").replace(",", ".")
    return None


def parse_amount(value: Any) -> tuple[Optional[Decimal], Optional[str]]:
    """
    Parse a money amount.

    Returns: (amount, None) on success, (None, reason) otherwise
    """
    if value is None:
        return None, "missing amount"
    if isinstance(value, bool):
        return None, "amount is not a number"
    try:
        if isinstance(value, (int, float)):
            amount = Decimal(str(value))
        elif isinstance(value, str):
            cleaned = _NUMBER_NOISE_RE.sub("", value)
            if not cleaned:
                return None, "missing amount"
            normalized = _normalize_separators(cleaned)
            if normalized is None:
                return None, f"amount {value!r} has ambiguous separators"
            amount = Decimal(normalized)
        else:
            return None, "amount is not a number"
    except (InvalidOperation, ValueError):
        return None, f"amount {value!r} is not a number"

    if not amount.is_finite():
        return None, "amount is not finite"
    if amount < 0:
        return None, f"negative amount {amount}"
    try:
        return amount.quantize(CENTS, rounding=ROUND_HALF_UP), None
    except InvalidOperation:
        return None, f"amount {amount} is out of range"


def parse_date(value: Any) -> Optional[date]:
    """Parse a calendar date; None if absent or invalid."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        pass
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def parse_confidence(value: Any) -> Optional[float]:
    """Parse a confidence score in [0, 1]; None if absent or out of range."""
    if value is None or isinstance(value, bool):
        return None
    try:
        score = float(value)
    except (TypeError, ValueError):
        return None
    if score != score or not 0.0 <= score <= 1.0:
        return None
    return score


def _clean_text(value: Any, max_length: int) -> Optional[str]:
    if value is None or isinstance(value, (dict, list, bool)):
        return None
    text = " ".join(str(value).split())
    return text[:max_length] or None


class ResponseParser:
    """
    Parses one extraction response into a ParsedReceipt.
    """

    def __init__(self, settings: Optional[PipelineSettings] = None):
        self._settings = settings or get_settings().pipeline

    def _load(self, text: str) -> Any:
        """
        Decode the JSON payload.

        Returns None for a blank response (no items); raises ParseError when
        there is text but no usable JSON.
        """
        body = strip_code_fences(text).strip()
        if not body:
            return None
        try:
            return json.loads(body)
        except json.JSONDecodeError:
            pass

        candidates = _locate_json(body)
        if not candidates:
            raise ParseError("The receipt reader did not return structured data")
        error = None
        for candidate in candidates:
            try:
                return json.loads(candidate)
            except json.JSONDecodeError as e:
                error = e
        raise ParseError(f"The receipt reader returned malformed data: {error.msg}") from error

    def _validate_item(
        self,
        index: int,
        record: Any,
        fallback_date: date,
    ):
        if not isinstance(record, dict):
            return DroppedItem(index=index, reason="item is not an object")

        amount, reason = parse_amount(_first(record, AMOUNT_KEYS))
        if amount is None:
            return DroppedItem(index=index, reason=reason)

        description = _clean_text(_first(record, DESCRIPTION_KEYS), MAX_DESCRIPTION_LENGTH)
        description_missing = description is None

        raw_date = record.get("date")
        item_date = parse_date(raw_date)
        if item_date is None and raw_date not in (None, ""):
            logger.debug("item_date_dropped", index=index, raw_date=str(raw_date)[:40])
        date_defaulted = item_date is None

        hint = _clean_text(_first(record, CATEGORY_KEYS), 100)
        item_code = _clean_text(_first(record, ITEM_CODE_KEYS), MAX_ITEM_CODE_LENGTH)
        if item_code is not None and item_code.lower() in _EMPTY_CODES:
            item_code = None

        try:
            item = ExtractedItem(
                description=description or self._settings.placeholder_description,
                amount=amount,
                date=item_date or fallback_date,
                category_hint=hint.lower() if hint else None,
                confidence=parse_confidence(record.get("confidence")),
                item_code=item_code,
                date_defaulted=date_defaulted,
                description_missing=description_missing,
            )
        except ValidationError as e:
            return DroppedItem(index=index, reason=f"invalid item: {e.errors()[0]['msg']}")
        return ValidItem(index=index, item=item)

    def parse(
        self,
        raw: RawExtractionResponse,
        fallback_date: date,
    ) -> ParsedReceipt:
        """
        Parse and validate a raw extraction response.

        Args:
            raw: The untouched model response
            fallback_date: Date used for items without a readable date
                (the receipt's upload date)

        Returns:
            ParsedReceipt with one result per candidate item

        Raises:
            ParseError: No JSON at all, or every candidate item was dropped
        """
        payload = self._load(raw.text)

        store_name = None
        declared_total = None
        declared_tax = None
        if payload is None:
            candidates: list = []
        elif isinstance(payload, list):
            candidates = payload
        elif isinstance(payload, dict):
            candidates = payload.get("items")
            if candidates is None:
                candidates = []
            elif not isinstance(candidates, list):
                raise ParseError("The receipt reader returned items in an unexpected shape")
            store_name = _clean_text(_first(payload, STORE_KEYS), MAX_DESCRIPTION_LENGTH)
            if store_name and store_name.lower() in ("unknown", "null", "none"):
                store_name = None
            declared_total, _ = parse_amount(payload.get("total"))
            declared_tax, _ = parse_amount(payload.get("tax"))
        else:
            raise ParseError("The receipt reader returned items in an unexpected shape")

        results = [
            self._validate_item(index, record, fallback_date)
            for index, record in enumerate(candidates)
        ]
        parsed = ParsedReceipt(
            results=results,
            store_name=store_name,
            declared_total=declared_total,
            declared_tax=declared_tax,
        )

        for dropped in parsed.dropped:
            logger.info("extracted_item_dropped", index=dropped.index, reason=dropped.reason)

        if candidates and not parsed.items:
            raise ParseError(
                f"None of the {len(candidates)} items read from the receipt were usable",
                dropped=parsed.dropped,
            )

        logger.info(
            "extraction_parsed",
            candidates=len(candidates),
            kept=len(parsed.items),
            dropped=len(parsed.dropped),
        )
        return parsed
