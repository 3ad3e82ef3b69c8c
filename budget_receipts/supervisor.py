"""
Job Supervisor

Owns the background side of the pipeline: finding pending receipts,
claiming them, running extraction -> parse -> reconcile in a bounded pool,
and turning every failure into receipt state.

DESIGN DECISION: The database decides who works on a receipt.
A receipt is claimed with a conditional `pending -> processing` update;
losing that race (another worker, another process) is an ordinary
ConflictError that is skipped quietly. The in-process set of running ids is
only a hint to avoid pointless claims.

Failure handling:
- Transient extraction errors are retried (extraction call only), with
  exponential backoff, up to max_attempts
- Everything else that goes wrong inside a job ends as `failed` with a
  readable message and an error code
- Cancellation (shutdown) leaves the receipt in `processing`; the open
  transaction rolls back and the next startup sweep returns it to `pending`

IMPORTANT: This module is the only place where exceptions become receipt
state. Nothing a job raises escapes into the dispatch loop.
"""

import asyncio
import functools
from datetime import timedelta
from typing import Optional
from uuid import UUID

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from budget_receipts.audit import AuditLogger
from budget_receipts.config import PipelineSettings, get_settings
from budget_receipts.models.audit import AuditEvent, AuditEventBuilder
from budget_receipts.models.receipt import (
    ErrorCode,
    RawExtractionResponse,
    Receipt,
    ReceiptStatus,
    utcnow,
)
from budget_receipts.reconciliation import Reconciler
from budget_receipts.services.extraction import (
    ExtractionClientInterface,
    ExtractionError,
    ExtractionPrompt,
    TransientExtractionError,
)
from budget_receipts.services.image import ImageNotFoundError, ImageStoreInterface
from budget_receipts.services.storage import (
    ConflictError,
    ReceiptRepositoryInterface,
    StorageError,
)
from budget_receipts.validation import ParseError, ResponseParser

logger = structlog.get_logger(__name__)


class JobSupervisor:
    """
    Dispatches pending receipts to a bounded pool of extraction jobs.

    Usage:
        supervisor = JobSupervisor(repository, image_store, client, parser, reconciler)
        await supervisor.run()          # until shutdown() is called
        await supervisor.shutdown()
    """

    def __init__(
        self,
        repository: ReceiptRepositoryInterface,
        image_store: ImageStoreInterface,
        extraction_client: ExtractionClientInterface,
        parser: ResponseParser,
        reconciler: Reconciler,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[PipelineSettings] = None,
        request_timeout: Optional[float] = None,
    ):
        """
        Args:
            request_timeout: Per-call extraction timeout, used to derive the
                job budget when `job_budget_seconds` is not configured.
                Defaults to the Gemini request timeout.
        """
        self._repository = repository
        self._image_store = image_store
        self._client = extraction_client
        self._parser = parser
        self._reconciler = reconciler
        self._audit_logger = audit_logger or AuditLogger()
        self._settings = settings or get_settings().pipeline

        if self._settings.job_budget_seconds is not None:
            self._job_budget = self._settings.job_budget_seconds
        else:
            if request_timeout is None:
                request_timeout = get_settings().gemini.request_timeout_seconds
            self._job_budget = self._settings.effective_job_budget(request_timeout)

        # A processing receipt younger than the job budget may have a live job
        self._stale_after = self._settings.stale_after_seconds
        if self._stale_after <= self._job_budget:
            logger.warning(
                "stale_threshold_raised",
                configured_seconds=self._stale_after,
                job_budget_seconds=self._job_budget,
            )
            self._stale_after = self._job_budget * 2

        self._prompt = ExtractionPrompt(budget_categories=self._settings.budget_categories)
        self._slots = asyncio.Semaphore(self._settings.max_concurrency)
        self._tasks: dict[UUID, asyncio.Task] = {}
        self._wakeup = asyncio.Event()
        self._stopping = asyncio.Event()

    @property
    def job_budget(self) -> float:
        return self._job_budget

    @property
    def stale_after(self) -> float:
        return self._stale_after

    @property
    def in_flight(self) -> set[UUID]:
        """Ids of receipts with a job running in this process."""
        return set(self._tasks)

    def notify(self) -> None:
        """Wake the dispatch loop (new or requeued work, or a freed slot)."""
        self._wakeup.set()

    # =========================================================================
    # RECOVERY
    # =========================================================================

    async def recover_stale(self) -> int:
        """
        Return orphaned `processing` receipts to `pending`.

        A receipt is orphaned when its job died with the process that ran
        it. Anything updated within the staleness threshold (always above the
        job budget) is left alone, as another live worker may still own it.

        Returns:
            Number of receipts recovered
        """
        cutoff = utcnow() - timedelta(seconds=self._stale_after)
        stale = await self._repository.list_stale(cutoff)

        recovered = 0
        for receipt in stale:
            if receipt.id in self._tasks:
                continue
            try:
                await self._repository.transition(
                    receipt.id,
                    ReceiptStatus.PROCESSING,
                    ReceiptStatus.PENDING,
                )
            except ConflictError:
                logger.debug("stale_receipt_already_moved", receipt_id=str(receipt.id))
                continue
            recovered += 1
            await self._audit_logger.log_stale_recovered(receipt.id, receipt.updated_at)

        if recovered:
            logger.warning("stale_receipts_recovered", count=recovered)
        return recovered

    # =========================================================================
    # DISPATCH
    # =========================================================================

    async def dispatch_pending(self) -> int:
        """
        One dispatch pass: claim pending receipts while worker slots are free.

        Returns:
            Number of jobs started
        """
        try:
            pending = await self._repository.list_by_status(ReceiptStatus.PENDING)
        except StorageError as e:
            logger.error("pending_poll_failed", error=str(e))
            return 0

        started = 0
        for receipt in pending:
            if self._stopping.is_set():
                break
            if receipt.id in self._tasks:
                continue
            if self._slots.locked():
                break

            await self._slots.acquire()
            claimed = None
            try:
                claimed = await self._repository.transition(
                    receipt.id,
                    ReceiptStatus.PENDING,
                    ReceiptStatus.PROCESSING,
                )
            except ConflictError as e:
                logger.debug("receipt_claim_lost", receipt_id=str(receipt.id), actual=e.actual)
            except StorageError as e:
                logger.error("receipt_claim_failed", receipt_id=str(receipt.id), error=str(e))
            finally:
                if claimed is None:
                    self._slots.release()

            if claimed is None:
                continue

            task = asyncio.create_task(
                self._run_job(claimed),
                name=f"receipt-{claimed.id}",
            )
            self._tasks[claimed.id] = task
            task.add_done_callback(functools.partial(self._job_done, claimed.id))
            started += 1

        return started

    async def run(self) -> None:
        """
        Sweep stale receipts, then dispatch until shutdown.

        Each pass runs when notified or after `poll_interval_seconds`,
        whichever comes first.
        """
        logger.info(
            "supervisor_started",
            max_concurrency=self._settings.max_concurrency,
            max_attempts=self._settings.max_attempts,
            job_budget_seconds=self._job_budget,
        )
        try:
            await self.recover_stale()
        except StorageError as e:
            logger.error("stale_sweep_failed", error=str(e))

        while not self._stopping.is_set():
            self._wakeup.clear()
            await self.dispatch_pending()
            try:
                await asyncio.wait_for(
                    self._wakeup.wait(),
                    timeout=self._settings.poll_interval_seconds,
                )
            except asyncio.TimeoutError:
                pass

        logger.info("supervisor_stopped")

    async def run_once(self) -> int:
        """Dispatch one pass and wait for every job it started."""
        started = await self.dispatch_pending()
        await self.wait_for_idle()
        return started

    async def wait_for_idle(self) -> None:
        """Wait until no job is running in this process."""
        while self._tasks:
            await asyncio.wait(list(self._tasks.values()))

    async def shutdown(self, grace_seconds: Optional[float] = None) -> None:
        """
        Stop dispatching and cancel in-flight jobs.

        Cancelled jobs commit nothing; their receipts stay `processing`
        until the next startup sweep.
        """
        grace = self._settings.shutdown_grace_seconds if grace_seconds is None else grace_seconds
        self._stopping.set()
        self._wakeup.set()

        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            _, still_running = await asyncio.wait(tasks, timeout=grace)
            if still_running:
                logger.warning("jobs_still_running_after_shutdown", count=len(still_running))
        logger.info("supervisor_shutdown", cancelled=len(tasks))

    # =========================================================================
    # JOB
    # =========================================================================

    async def _run_job(self, receipt: Receipt) -> None:
        log = logger.bind(receipt_id=str(receipt.id), attempt_count=receipt.attempt_count)
        await self._audit_logger.log_receipt_claimed(receipt.id, receipt.attempt_count)
        try:
            item_count = await asyncio.wait_for(
                self._process(receipt),
                timeout=self._job_budget,
            )
        except asyncio.TimeoutError:
            await self._mark_failed(
                receipt,
                ErrorCode.TIMEOUT,
                f"Processing did not finish within {self._job_budget:.0f} seconds",
            )
        except ExtractionError as e:
            await self._mark_failed(receipt, e.code, str(e))
        except ParseError as e:
            await self._audit_dropped(receipt, e.dropped, kept=0)
            await self._mark_failed(receipt, ErrorCode.PARSE_ERROR, str(e))
        except ImageNotFoundError:
            await self._mark_failed(
                receipt,
                ErrorCode.IMAGE_MISSING,
                "The uploaded receipt image could not be found",
            )
        except ConflictError as e:
            # Someone else moved the receipt; their state wins
            log.debug("job_superseded", actual=e.actual)
        except StorageError as e:
            log.error("job_storage_failed", error=str(e))
            await self._mark_failed(
                receipt,
                ErrorCode.STORAGE_ERROR,
                f"Saving the receipt failed: {e}",
            )
        except asyncio.CancelledError:
            log.info("job_cancelled")
            raise
        except Exception as e:
            log.exception("job_crashed")
            await self._audit_logger.log_error(
                error_type=type(e).__name__,
                error_message=str(e),
                details={"stage": "receipt_job"},
                correlation_id=receipt.id,
            )
            await self._mark_failed(
                receipt,
                ErrorCode.INTERNAL_ERROR,
                f"Unexpected error while processing the receipt: {type(e).__name__}",
            )
        else:
            log.info("job_completed", item_count=item_count)
            await self._audit_logger.log_receipt_completed(receipt.id, item_count)

    def _job_done(self, receipt_id: UUID, task: asyncio.Task) -> None:
        # Runs even when the task was cancelled before its first step
        self._slots.release()
        self._tasks.pop(receipt_id, None)
        self._wakeup.set()

    async def _process(self, receipt: Receipt) -> int:
        image_bytes = await self._image_store.get(receipt.id)
        raw = await self._extract_with_retry(receipt, image_bytes)
        parsed = self._parser.parse(raw, receipt.uploaded_at.date())
        await self._audit_dropped(receipt, parsed.dropped, kept=len(parsed.items))
        return await self._reconciler.reconcile(receipt, parsed)

    async def _extract_with_retry(
        self,
        receipt: Receipt,
        image_bytes: bytes,
    ) -> RawExtractionResponse:
        """
        Call the extraction client, retrying transient failures only.

        Raises:
            ExtractionError: Permanent failure, or the last transient one
                once attempts are exhausted
        """
        scheduled: list[AuditEvent] = []

        def before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception()
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            logger.warning(
                "extraction_retry_scheduled",
                receipt_id=str(receipt.id),
                attempt=retry_state.attempt_number,
                delay_seconds=delay,
                error_code=error.code.value,
            )
            scheduled.append(AuditEventBuilder.extraction_retry_scheduled(
                receipt_id=receipt.id,
                attempt=retry_state.attempt_number,
                delay_seconds=delay,
                error_code=error.code.value,
                error_message=str(error),
            ))

        retrying = AsyncRetrying(
            retry=retry_if_exception_type(TransientExtractionError),
            stop=stop_after_attempt(self._settings.max_attempts),
            wait=wait_exponential(
                multiplier=self._settings.retry_backoff_multiplier,
                min=self._settings.retry_backoff_min,
                max=self._settings.retry_backoff_max,
            ),
            before_sleep=before_sleep,
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    return await self._client.extract(image_bytes, self._prompt)
        except ExtractionError as e:
            attempts = retrying.statistics.get("attempt_number", 1)
            await self._audit_logger.log_extraction_failed(
                receipt.id,
                attempts=attempts,
                error_code=e.code.value,
                error_message=str(e),
            )
            raise
        finally:
            for event in scheduled:
                await self._audit_logger.log(event)

    async def _audit_dropped(self, receipt: Receipt, dropped: list, kept: int) -> None:
        if not dropped:
            return
        await self._audit_logger.log_items_dropped(
            receipt.id,
            dropped=[{"index": d.index, "reason": d.reason} for d in dropped],
            kept=kept,
        )

    async def _mark_failed(
        self,
        receipt: Receipt,
        code: ErrorCode,
        message: str,
    ) -> None:
        """
        Record `processing -> failed`.

        If the database cannot take the write, the receipt stays
        `processing` and the next startup sweep re-queues it.
        """
        try:
            await self._repository.transition(
                receipt.id,
                ReceiptStatus.PROCESSING,
                ReceiptStatus.FAILED,
                error_message=message,
                error_code=code,
            )
        except ConflictError as e:
            logger.debug("receipt_failure_superseded", receipt_id=str(receipt.id), actual=e.actual)
            return
        except StorageError as e:
            logger.error(
                "receipt_failure_not_recorded",
                receipt_id=str(receipt.id),
                error_code=ErrorCode(code).value,
                error=str(e),
            )
            return

        logger.warning(
            "receipt_failed",
            receipt_id=str(receipt.id),
            error_code=ErrorCode(code).value,
            error_message=message,
        )
        await self._audit_logger.log_receipt_failed(receipt.id, ErrorCode(code).value, message)
