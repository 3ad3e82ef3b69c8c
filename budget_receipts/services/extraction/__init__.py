"""Vision model extraction package."""

from budget_receipts.services.extraction.prompt import ExtractionPrompt
from budget_receipts.services.extraction.interface import (
    ExtractionClientInterface,
    ExtractionError,
    PermanentExtractionError,
    TransientExtractionError,
)
from budget_receipts.services.extraction.gemini_client import (
    GeminiExtractionClient,
    classify_failure,
)

__all__ = [
    "ExtractionClientInterface",
    "ExtractionError",
    "ExtractionPrompt",
    "GeminiExtractionClient",
    "PermanentExtractionError",
    "TransientExtractionError",
    "classify_failure",
]
