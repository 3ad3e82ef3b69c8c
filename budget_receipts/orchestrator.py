"""
Receipt Service

This module ties together all the components and defines the
caller-facing operations:
1. Submit (bytes -> image store -> pending row -> supervisor notified)
2. Status (get / list receipts)
3. Requeue (failed -> pending)
4. Cleanup (delete a finished receipt and its image)

DESIGN DECISION: The service never runs extraction itself.
Submitting only stores the bytes and records a `pending` receipt; the job
supervisor picks it up in the background. The caller learns the outcome by
polling `get_receipt`.

Ordering on submit: image first, row second. A crash between the two leaves
an unreferenced image, never a receipt whose image is missing.
"""

from pathlib import Path
from typing import Optional
from uuid import UUID, uuid4

import structlog

from budget_receipts.audit import AuditLogger, create_correlation_id
from budget_receipts.config import AppSettings, Settings, get_settings
from budget_receipts.models.receipt import (
    Expense,
    ReceiptStatus,
    ReceiptView,
)
from budget_receipts.reconciliation import Reconciler
from budget_receipts.services.extraction import GeminiExtractionClient
from budget_receipts.services.image import (
    CloudinaryImageStore,
    ImageStoreError,
    ImageStoreInterface,
    LocalImageStore,
    detect_content_type,
)
from budget_receipts.services.storage import (
    Database,
    LedgerInterface,
    ReceiptRepositoryInterface,
    SqlAuditStorage,
    SqlLedger,
    SqlReceiptRepository,
    StorageError,
)
from budget_receipts.supervisor import JobSupervisor
from budget_receipts.validation import ResponseParser

logger = structlog.get_logger(__name__)


class UploadRejectedError(ValueError):
    """The upload is empty or larger than allowed."""
    pass


class ReceiptService:
    """
    Ingestion, status and requeue boundary.

    The supervisor is optional: without one, submitted receipts simply wait
    in `pending` for a worker process to pick them up.
    """

    def __init__(
        self,
        repository: ReceiptRepositoryInterface,
        image_store: ImageStoreInterface,
        ledger: LedgerInterface,
        supervisor: Optional[JobSupervisor] = None,
        audit_logger: Optional[AuditLogger] = None,
        app_settings: Optional[AppSettings] = None,
    ):
        self._repository = repository
        self._image_store = image_store
        self._ledger = ledger
        self._supervisor = supervisor
        self._audit_logger = audit_logger or AuditLogger()
        self._app_settings = app_settings or get_settings().app

    def _notify(self) -> None:
        if self._supervisor is not None:
            self._supervisor.notify()

    async def submit_receipt(self, filename: str, data: bytes) -> UUID:
        """
        Accept an uploaded receipt for background extraction.

        The bytes are not inspected beyond their size; a file the model
        cannot read fails later with a readable error.

        Returns:
            The new receipt's id

        Raises:
            UploadRejectedError: Empty or oversized upload
            StorageError: The image or the row could not be stored
        """
        if not data:
            raise UploadRejectedError("The uploaded file is empty")
        limit = self._app_settings.max_upload_size_bytes
        if len(data) > limit:
            raise UploadRejectedError(
                f"The uploaded file is {len(data) / (1024 * 1024):.1f} MB; "
                f"the limit is {self._app_settings.max_upload_size_mb} MB"
            )

        correlation_id = create_correlation_id()
        receipt_id = uuid4()
        name = Path(filename or "").name.strip() or "receipt"

        try:
            await self._image_store.put(receipt_id, data)
        except ImageStoreError as e:
            await self._audit_logger.log_external_service_error(
                service="image_store",
                error_code=type(e).__name__,
                error_message=str(e),
                correlation_id=correlation_id,
            )
            raise

        try:
            receipt = await self._repository.create(
                name,
                receipt_id=receipt_id,
                content_type=detect_content_type(data),
                size_bytes=len(data),
            )
        except StorageError:
            try:
                await self._image_store.delete(receipt_id)
            except ImageStoreError as cleanup_error:
                logger.warning(
                    "orphaned_image_not_removed",
                    receipt_id=str(receipt_id),
                    error=str(cleanup_error),
                )
            raise

        await self._audit_logger.log_receipt_submitted(
            receipt_id=receipt.id,
            filename=receipt.filename,
            size_bytes=receipt.size_bytes,
            content_type=receipt.content_type,
            correlation_id=correlation_id,
        )
        logger.info(
            "receipt_submitted",
            receipt_id=str(receipt.id),
            filename=receipt.filename,
            size_bytes=receipt.size_bytes,
        )
        self._notify()
        return receipt.id

    async def get_receipt(self, receipt_id: UUID) -> ReceiptView:
        """
        Raises:
            NotFoundError: Unknown receipt id
        """
        receipt = await self._repository.get(receipt_id)
        return ReceiptView.from_receipt(receipt)

    async def list_receipts(
        self,
        status: Optional[ReceiptStatus] = None,
        limit: int = 100,
    ) -> list[ReceiptView]:
        """List receipts, newest first, or every receipt in one status (oldest first)."""
        if status is None:
            receipts = await self._repository.list_all(limit=limit)
        else:
            receipts = await self._repository.list_by_status(ReceiptStatus(status))
        return [ReceiptView.from_receipt(r) for r in receipts]

    async def requeue(self, receipt_id: UUID) -> ReceiptView:
        """
        Send a failed receipt back for another extraction.

        Raises:
            ConflictError: The receipt is not `failed`
            NotFoundError: Unknown receipt id
        """
        receipt = await self._repository.transition(
            receipt_id,
            ReceiptStatus.FAILED,
            ReceiptStatus.PENDING,
        )
        await self._audit_logger.log_receipt_requeued(receipt.id)
        logger.info("receipt_requeued", receipt_id=str(receipt.id))
        self._notify()
        return ReceiptView.from_receipt(receipt)

    async def list_expenses(self, receipt_id: UUID) -> list[Expense]:
        """Expenses a receipt produced."""
        return await self._ledger.list_by_receipt(receipt_id)

    async def delete_receipt(self, receipt_id: UUID) -> None:
        """
        Remove a finished receipt and its image. Its expenses stay in the ledger.

        Raises:
            ConflictError: The receipt is still pending or processing
            NotFoundError: Unknown receipt id
        """
        await self._repository.delete(receipt_id)
        try:
            await self._image_store.delete(receipt_id)
        except ImageStoreError as e:
            logger.warning("receipt_image_not_removed", receipt_id=str(receipt_id), error=str(e))
        await self._audit_logger.log_receipt_deleted(receipt_id)


def create_image_store(settings: Optional[Settings] = None) -> ImageStoreInterface:
    """Image store selected by IMAGE_STORE_BACKEND."""
    settings = settings or get_settings()
    image_settings = settings.image_store
    if image_settings.backend == "cloudinary":
        return CloudinaryImageStore(settings.cloudinary)
    return LocalImageStore(settings=image_settings)


def create_app_components(
    settings: Optional[Settings] = None,
) -> tuple[ReceiptService, JobSupervisor, Database]:
    """
    Factory function to create all application components.

    Returns:
        (receipt_service, job_supervisor, database)

    The caller owns the database: create tables before use and dispose of it
    on exit.
    """
    settings = settings or get_settings()
    pipeline = settings.pipeline

    database = Database(settings.database)
    repository = SqlReceiptRepository(database)
    ledger = SqlLedger(database)
    audit_logger = AuditLogger(SqlAuditStorage(database))
    image_store = create_image_store(settings)

    gemini = settings.gemini
    supervisor = JobSupervisor(
        repository=repository,
        image_store=image_store,
        extraction_client=GeminiExtractionClient(gemini),
        parser=ResponseParser(pipeline),
        reconciler=Reconciler(repository, ledger, pipeline),
        audit_logger=audit_logger,
        settings=pipeline,
        request_timeout=gemini.request_timeout_seconds,
    )

    service = ReceiptService(
        repository=repository,
        image_store=image_store,
        ledger=ledger,
        supervisor=supervisor,
        audit_logger=audit_logger,
        app_settings=settings.app,
    )

    return service, supervisor, database
