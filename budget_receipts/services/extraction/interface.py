"""
Abstract Extraction Client Interface

The extraction client is the boundary to the vision model. It sends the
receipt payload plus an instruction prompt and hands back raw text. It never
interprets that text.

Its one other job is to classify what went wrong:
- TransientExtractionError: may succeed if tried again (timeouts, rate
  limits, 5xx, network trouble). The supervisor retries these.
- PermanentExtractionError: will fail the same way every time (bad or
  unsupported payload, rejected credentials). No retry.
"""

from abc import ABC, abstractmethod

from budget_receipts.models.receipt import ErrorCode, RawExtractionResponse
from budget_receipts.services.extraction.prompt import ExtractionPrompt


class ExtractionClientInterface(ABC):
    """Sends one receipt payload to a vision model."""

    @abstractmethod
    async def extract(
        self,
        image_bytes: bytes,
        prompt: ExtractionPrompt,
    ) -> RawExtractionResponse:
        """
        Run one extraction call within the configured timeout.

        Raises:
            TransientExtractionError: Retry-eligible failure
            PermanentExtractionError: Failure that retrying cannot fix
        """
        pass


class ExtractionError(Exception):
    """Base exception for extraction errors."""

    retryable = False

    def __init__(self, message: str, code: ErrorCode = ErrorCode.API_ERROR):
        self.code = ErrorCode(code)
        super().__init__(message)


class TransientExtractionError(ExtractionError):
    """Extraction failed for a reason expected to clear up on its own."""

    retryable = True


class PermanentExtractionError(ExtractionError):
    """Extraction was rejected outright."""

    retryable = False
