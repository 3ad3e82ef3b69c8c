"""
Abstract Image Store Interface

Receipt bytes are addressed by receipt id, never by content hash. A receipt
image is only ever replaced by deleting and uploading again; the pipeline
itself only reads.
"""

from abc import ABC, abstractmethod
from uuid import UUID

from budget_receipts.services.storage.interface import NotFoundError, StorageError


class ImageStoreInterface(ABC):
    """
    Durable storage of uploaded receipt bytes.

    Bytes are stored and returned exactly as given.
    """

    @abstractmethod
    async def put(self, receipt_id: UUID, data: bytes) -> None:
        """
        Store the bytes for a receipt, replacing any previous copy.

        Raises:
            ImageStoreError: If the write fails
        """
        pass

    @abstractmethod
    async def get(self, receipt_id: UUID) -> bytes:
        """
        Read the bytes for a receipt.

        Raises:
            ImageNotFoundError: Nothing stored for this receipt
            ImageStoreError: If the read fails
        """
        pass

    @abstractmethod
    async def delete(self, receipt_id: UUID) -> None:
        """
        Remove the bytes for a receipt. Deleting a missing image is not an error.
        """
        pass


class ImageStoreError(StorageError):
    """Base exception for image store operations."""
    pass


class ImageNotFoundError(ImageStoreError, NotFoundError):
    """No image stored for the receipt."""
    pass
