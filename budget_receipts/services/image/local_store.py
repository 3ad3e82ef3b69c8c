"""
Filesystem image store.

Each receipt is one file named after its id under the configured root.
Writes go to a temporary file first and are moved into place, so a reader
never sees a partially written image.
"""

import asyncio
import os
import tempfile
from pathlib import Path
from typing import Optional
from uuid import UUID

import structlog

from budget_receipts.config import ImageStoreSettings, get_settings
from budget_receipts.services.image.interface import (
    ImageNotFoundError,
    ImageStoreError,
    ImageStoreInterface,
)

logger = structlog.get_logger(__name__)


class LocalImageStore(ImageStoreInterface):
    """Stores receipt bytes on the local filesystem."""

    def __init__(
        self,
        root: Optional[Path] = None,
        settings: Optional[ImageStoreSettings] = None,
    ):
        if root is None:
            settings = settings or get_settings().image_store
            root = Path(settings.local_root)
        self._root = Path(root)

    def _path(self, receipt_id: UUID) -> Path:
        return self._root / str(UUID(str(receipt_id)))

    def _write(self, path: Path, data: bytes) -> None:
        self._root.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._root, prefix=".upload-")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    async def put(self, receipt_id: UUID, data: bytes) -> None:
        path = self._path(receipt_id)
        try:
            await asyncio.to_thread(self._write, path, data)
        except OSError as e:
            raise ImageStoreError(f"Could not write image for receipt {receipt_id}: {e}") from e
        logger.debug("image_stored", receipt_id=str(receipt_id), size_bytes=len(data))

    async def get(self, receipt_id: UUID) -> bytes:
        path = self._path(receipt_id)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as e:
            raise ImageNotFoundError(f"No image stored for receipt {receipt_id}") from e
        except OSError as e:
            raise ImageStoreError(f"Could not read image for receipt {receipt_id}: {e}") from e

    async def delete(self, receipt_id: UUID) -> None:
        path = self._path(receipt_id)
        try:
            await asyncio.to_thread(path.unlink, missing_ok=True)
        except OSError as e:
            raise ImageStoreError(f"Could not delete image for receipt {receipt_id}: {e}") from e
        logger.debug("image_deleted", receipt_id=str(receipt_id))
