"""Receipt image storage package."""

from budget_receipts.services.image.interface import (
    ImageNotFoundError,
    ImageStoreError,
    ImageStoreInterface,
)
from budget_receipts.services.image.inspection import detect_content_type
from budget_receipts.services.image.local_store import LocalImageStore
from budget_receipts.services.image.cloudinary_store import CloudinaryImageStore

__all__ = [
    "CloudinaryImageStore",
    "ImageNotFoundError",
    "ImageStoreError",
    "ImageStoreInterface",
    "LocalImageStore",
    "detect_content_type",
]
