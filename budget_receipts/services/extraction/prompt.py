"""
Instruction prompt for receipt extraction.

The prompt asks for one JSON object. The parser still treats whatever comes
back as untrusted text.
"""

from pydantic import BaseModel, Field

_TEMPLATE = """You are a precise receipt reader for a household budget. Extract every purchased line item from the attached receipt.

=== RULES ===
1. Extract EVERY line item, top to bottom, in the order printed.
2. "description": a readable name for the item (expand abbreviations, e.g. "ORG BANAN" -> "Organic Bananas").
3. "item_code": the code or abbreviation exactly as printed, or null.
4. "amount": the price paid as a plain decimal number, without currency symbols.
5. Discounts, coupons and refunds belong to the item they reduce: report the reduced price. Never output a negative amount.
6. "date": the purchase date printed on the receipt as YYYY-MM-DD, or null if it is not legible.
7. "category_hint": match the item against the budget categories below and answer with the type in parentheses (e.g. "Milk (weekly)" -> "weekly"). Use "misc" when nothing matches. Do not guess.
8. Tax lines (sales tax, VAT, GST, HST, PST) are mandatory: output each one as its own item with description "Tax", item_code "TAX" and category_hint "tax".
9. "confidence": how sure you are about the item, from 0.0 to 1.0.
10. If the image is not a receipt or nothing is legible, return an empty "items" list.

=== BUDGET CATEGORIES ===
{categories}

=== OUTPUT ===
Return ONLY a raw JSON object, no markdown, no code fences, no commentary:
{{
  "store": "Store name from the header, or null",
  "total": 0.00,
  "items": [
    {{
      "description": "Item name",
      "item_code": "CODE",
      "amount": 0.00,
      "date": "YYYY-MM-DD",
      "category_hint": "weekly|monthly|misc|tax",
      "confidence": 0.9
    }}
  ]
}}"""


class ExtractionPrompt(BaseModel):
    """Instruction template plus the budget categories offered to the model."""

    budget_categories: list[str] = Field(
        default_factory=list,
        description='Categories in "Name (type)" form'
    )

    def render(self) -> str:
        categories = ", ".join(c.strip() for c in self.budget_categories if c.strip())
        return _TEMPLATE.format(categories=categories or "None")
