"""Services package."""

from budget_receipts.services.extraction import (
    ExtractionClientInterface,
    ExtractionError,
    ExtractionPrompt,
    GeminiExtractionClient,
    PermanentExtractionError,
    TransientExtractionError,
)
from budget_receipts.services.image import (
    CloudinaryImageStore,
    ImageNotFoundError,
    ImageStoreError,
    ImageStoreInterface,
    LocalImageStore,
)
from budget_receipts.services.storage import (
    AuditStorageInterface,
    ConflictError,
    Database,
    LedgerInterface,
    NotFoundError,
    ReceiptRepositoryInterface,
    SqlAuditStorage,
    SqlLedger,
    SqlReceiptRepository,
    StorageError,
)

__all__ = [
    # Extraction
    "ExtractionClientInterface",
    "ExtractionError",
    "ExtractionPrompt",
    "GeminiExtractionClient",
    "PermanentExtractionError",
    "TransientExtractionError",
    # Image store
    "CloudinaryImageStore",
    "ImageNotFoundError",
    "ImageStoreError",
    "ImageStoreInterface",
    "LocalImageStore",
    # Storage
    "AuditStorageInterface",
    "ConflictError",
    "Database",
    "LedgerInterface",
    "NotFoundError",
    "ReceiptRepositoryInterface",
    "SqlAuditStorage",
    "SqlLedger",
    "SqlReceiptRepository",
    "StorageError",
]
