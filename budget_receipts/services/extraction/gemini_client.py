"""
Extraction Client using Gemini

DESIGN DECISION: We use a Gemini vision model because:
1. It reads photos and PDFs of receipts directly, no separate OCR step
2. It can be asked for JSON output
3. One call per attempt keeps cost and latency predictable

This adapter:
1. Checks the payload is an image or PDF the model accepts
2. Sends payload + prompt, bounded by the per-call timeout
3. Returns the raw text untouched
4. Classifies every failure as transient or permanent

CRITICAL: The response is untrusted. Nothing here parses it.
"""

import asyncio
import time
from typing import Any, Optional

import google.generativeai as genai
import structlog
from google.api_core import exceptions as google_exceptions
from google.generativeai.types import BlockedPromptException, StopCandidateException

from budget_receipts.config import GeminiSettings, get_settings
from budget_receipts.models.receipt import ErrorCode, RawExtractionResponse
from budget_receipts.services.extraction.interface import (
    ExtractionClientInterface,
    ExtractionError,
    PermanentExtractionError,
    TransientExtractionError,
)
from budget_receipts.services.extraction.prompt import ExtractionPrompt
from budget_receipts.services.image.inspection import detect_content_type

logger = structlog.get_logger(__name__)


def classify_failure(exc: BaseException) -> ExtractionError:
    """
    Map an exception raised during a model call to our taxonomy.

    Order matters: the google.api_core hierarchy nests (DeadlineExceeded
    is a ServerError, ResourceExhausted is a TooManyRequests).
    """
    message = str(exc) or exc.__class__.__name__

    if isinstance(exc, (asyncio.TimeoutError, google_exceptions.DeadlineExceeded)):
        return TransientExtractionError(
            "The receipt reader took too long to respond", ErrorCode.TIMEOUT
        )
    if isinstance(exc, google_exceptions.TooManyRequests):
        return TransientExtractionError(
            f"The receipt reader is rate limited: {message}", ErrorCode.RATE_LIMIT
        )
    if isinstance(exc, (google_exceptions.Unauthorized, google_exceptions.Forbidden)):
        return PermanentExtractionError(
            "The receipt reader rejected our credentials", ErrorCode.AUTHENTICATION_ERROR
        )
    if isinstance(exc, (google_exceptions.ServerError, google_exceptions.RetryError)):
        return TransientExtractionError(
            f"The receipt reader is unavailable: {message}", ErrorCode.API_ERROR
        )
    if isinstance(exc, google_exceptions.BadRequest):
        return PermanentExtractionError(
            f"The receipt reader rejected this file: {message}", ErrorCode.INVALID_DOCUMENT
        )
    if isinstance(exc, google_exceptions.ClientError):
        return PermanentExtractionError(
            f"The receipt reader refused the request: {message}", ErrorCode.API_ERROR
        )
    if isinstance(exc, (BlockedPromptException, StopCandidateException)):
        return PermanentExtractionError(
            "The receipt reader declined to read this file", ErrorCode.INVALID_DOCUMENT
        )
    if isinstance(exc, (ConnectionError, OSError)):
        return TransientExtractionError(
            f"Network error while contacting the receipt reader: {message}",
            ErrorCode.NETWORK_ERROR,
        )
    return PermanentExtractionError(
        f"Unexpected receipt reader error: {message}", ErrorCode.API_ERROR
    )


class GeminiExtractionClient(ExtractionClientInterface):
    """
    Extraction client backed by a Gemini vision model.
    """

    def __init__(
        self,
        settings: Optional[GeminiSettings] = None,
        model: Optional[Any] = None,
    ):
        self._settings = settings or get_settings().gemini
        self._model = model

    def _get_model(self) -> Any:
        """Get or create the Gemini model."""
        if self._model is None:
            genai.configure(api_key=self._settings.api_key)
            self._model = genai.GenerativeModel(
                model_name=self._settings.model_name,
                generation_config={
                    "temperature": self._settings.temperature,
                    "max_output_tokens": self._settings.max_tokens,
                    "response_mime_type": "application/json",
                }
            )
        return self._model

    def _check_payload(self, image_bytes: bytes) -> str:
        mime_type = detect_content_type(image_bytes)
        if mime_type is None:
            raise PermanentExtractionError(
                "The upload is not a readable image or PDF", ErrorCode.INVALID_DOCUMENT
            )
        if mime_type not in self._settings.supported_mime_types:
            raise PermanentExtractionError(
                f"Unsupported receipt format: {mime_type}", ErrorCode.INVALID_DOCUMENT
            )
        return mime_type

    @staticmethod
    def _response_text(response: Any) -> str:
        # .text raises ValueError when the candidate has no text parts,
        # e.g. when generation stopped for safety reasons
        try:
            return response.text
        except ValueError as e:
            raise PermanentExtractionError(
                f"The receipt reader returned no text: {e}", ErrorCode.INVALID_DOCUMENT
            ) from e

    async def extract(
        self,
        image_bytes: bytes,
        prompt: ExtractionPrompt,
    ) -> RawExtractionResponse:
        mime_type = self._check_payload(image_bytes)
        model = self._get_model()
        timeout = self._settings.request_timeout_seconds

        started = time.monotonic()
        try:
            response = await asyncio.wait_for(
                model.generate_content_async(
                    [prompt.render(), {"mime_type": mime_type, "data": image_bytes}],
                    request_options={"timeout": timeout},
                ),
                timeout=timeout,
            )
            text = self._response_text(response)
        except ExtractionError:
            raise
        except Exception as e:
            error = classify_failure(e)
            logger.warning(
                "extraction_call_failed",
                error_code=error.code.value,
                retryable=error.retryable,
                error=str(e),
            )
            raise error from e

        latency_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "extraction_call_succeeded",
            model=self._settings.model_name,
            mime_type=mime_type,
            latency_ms=latency_ms,
            response_chars=len(text),
        )
        return RawExtractionResponse(
            text=text,
            model_name=self._settings.model_name,
            mime_type=mime_type,
            latency_ms=latency_ms,
        )
