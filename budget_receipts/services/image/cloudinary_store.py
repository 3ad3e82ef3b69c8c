"""
Image Store using Cloudinary

DESIGN DECISION: Receipts are uploaded as "raw" resources. Cloudinary keeps
the bytes exactly as sent (no re-encoding, no enhancement), which is what
the extraction pipeline expects from its image store. Reads go through the
delivery URL over HTTPS.

The Cloudinary SDK is synchronous, so its calls run in a worker thread.
Uploads are retried; overwrite=True makes a repeated upload harmless.
"""

import asyncio
from io import BytesIO
from typing import Optional
from uuid import UUID

import cloudinary
import cloudinary.exceptions
import cloudinary.uploader
import cloudinary.utils
import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from budget_receipts.config import CloudinarySettings, get_settings
from budget_receipts.services.image.interface import (
    ImageNotFoundError,
    ImageStoreError,
    ImageStoreInterface,
)

logger = structlog.get_logger(__name__)

RESOURCE_TYPE = "raw"


class CloudinaryImageStore(ImageStoreInterface):
    """
    Stores receipt bytes in Cloudinary.

    Public ids are "<folder>/<receipt id>".
    """

    def __init__(
        self,
        settings: Optional[CloudinarySettings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        download_timeout: float = 30.0,
    ):
        self._settings = settings or get_settings().cloudinary
        self._http_client = http_client
        self._download_timeout = download_timeout
        self._configured = False

    def _configure(self):
        """Configure Cloudinary SDK."""
        if not self._configured:
            cloudinary.config(
                cloud_name=self._settings.cloud_name,
                api_key=self._settings.api_key,
                api_secret=self._settings.api_secret,
                secure=True,
            )
            self._configured = True

    def _public_id(self, receipt_id: UUID) -> str:
        return f"{self._settings.folder}/{receipt_id}"

    def delivery_url(self, receipt_id: UUID) -> str:
        """HTTPS URL the stored bytes are served from."""
        self._configure()
        url, _ = cloudinary.utils.cloudinary_url(
            self._public_id(receipt_id),
            resource_type=RESOURCE_TYPE,
            secure=True,
        )
        return url

    @retry(
        retry=retry_if_exception_type(ImageStoreError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def put(self, receipt_id: UUID, data: bytes) -> None:
        self._configure()
        try:
            result = await asyncio.to_thread(
                cloudinary.uploader.upload,
                BytesIO(data),
                public_id=self._public_id(receipt_id),
                resource_type=RESOURCE_TYPE,
                overwrite=True,
                invalidate=True,
            )
        except cloudinary.exceptions.Error as e:
            raise ImageStoreError(f"Cloudinary upload failed: {e}") from e

        logger.debug(
            "image_stored",
            receipt_id=str(receipt_id),
            size_bytes=len(data),
            url=result.get("secure_url"),
        )

    async def _download(self, client: httpx.AsyncClient, url: str) -> httpx.Response:
        return await client.get(url, follow_redirects=True)

    async def get(self, receipt_id: UUID) -> bytes:
        url = self.delivery_url(receipt_id)
        try:
            if self._http_client is not None:
                response = await self._download(self._http_client, url)
            else:
                async with httpx.AsyncClient(timeout=self._download_timeout) as client:
                    response = await self._download(client, url)
        except httpx.HTTPError as e:
            raise ImageStoreError(f"Could not download image for receipt {receipt_id}: {e}") from e

        if response.status_code == 404:
            raise ImageNotFoundError(f"No image stored for receipt {receipt_id}")
        if response.status_code >= 400:
            raise ImageStoreError(
                f"Cloudinary returned HTTP {response.status_code} for receipt {receipt_id}"
            )
        return response.content

    async def delete(self, receipt_id: UUID) -> None:
        self._configure()
        try:
            result = await asyncio.to_thread(
                cloudinary.uploader.destroy,
                self._public_id(receipt_id),
                resource_type=RESOURCE_TYPE,
                invalidate=True,
            )
        except cloudinary.exceptions.Error as e:
            raise ImageStoreError(f"Cloudinary delete failed: {e}") from e

        # "not found" is fine: delete is idempotent
        logger.debug("image_deleted", receipt_id=str(receipt_id), result=result.get("result"))
