"""
Shared fixtures.

Every test gets its own SQLite file and image directory under tmp_path.
No test talks to Gemini or Cloudinary; extraction is scripted.
"""

import io
from typing import Union

import pytest
from PIL import Image

from budget_receipts.audit import AuditLogger
from budget_receipts.config import AppSettings, DatabaseSettings, PipelineSettings
from budget_receipts.models.receipt import RawExtractionResponse
from budget_receipts.orchestrator import ReceiptService
from budget_receipts.reconciliation import Reconciler
from budget_receipts.services.extraction import (
    ExtractionClientInterface,
    ExtractionPrompt,
)
from budget_receipts.services.image import LocalImageStore
from budget_receipts.services.storage import (
    Database,
    SqlAuditStorage,
    SqlLedger,
    SqlReceiptRepository,
)
from budget_receipts.supervisor import JobSupervisor
from budget_receipts.validation import ResponseParser


GROCERY_RESPONSE = """{
  "store": "Corner Market",
  "total": 7.85,
  "items": [
    {"description": "Whole Milk", "item_code": "MLK", "amount": 3.49,
     "date": "2024-03-02", "category_hint": "weekly", "confidence": 0.95},
    {"description": "Dish Soap", "item_code": "SOAP", "amount": "$3.99",
     "date": "2024-03-02", "category_hint": "household", "confidence": 0.9},
    {"description": "Tax", "item_code": "TAX", "amount": 0.37,
     "date": "2024-03-02", "category_hint": "tax", "confidence": 0.99}
  ]
}"""


Outcome = Union[str, BaseException]


class ScriptedExtractionClient(ExtractionClientInterface):
    """
    Plays back a fixed list of outcomes, one per call.

    The last outcome repeats once the script runs out.
    """

    def __init__(self, *outcomes: Outcome):
        self.outcomes = list(outcomes) or [GROCERY_RESPONSE]
        self.calls = 0
        self.prompts: list[ExtractionPrompt] = []

    async def extract(self, image_bytes: bytes, prompt: ExtractionPrompt) -> RawExtractionResponse:
        self.calls += 1
        self.prompts.append(prompt)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return RawExtractionResponse(
            text=outcome,
            model_name="scripted",
            mime_type="image/png",
            latency_ms=1,
        )


def make_png(width: int = 8, height: int = 8) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color=(255, 255, 255)).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def png_bytes() -> bytes:
    return make_png()


@pytest.fixture
def grocery_response() -> str:
    return GROCERY_RESPONSE


@pytest.fixture
def scripted_client():
    """The scripted client class, for tests that need their own script."""
    return ScriptedExtractionClient


@pytest.fixture
def pipeline_settings() -> PipelineSettings:
    return PipelineSettings(
        max_concurrency=3,
        poll_interval_seconds=0.01,
        max_attempts=3,
        retry_backoff_multiplier=0,
        retry_backoff_min=0,
        retry_backoff_max=0,
        job_budget_seconds=5,
        stale_after_seconds=600,
        shutdown_grace_seconds=1,
    )


@pytest.fixture
def app_settings() -> AppSettings:
    return AppSettings(max_upload_size_mb=1)


@pytest.fixture
async def database(tmp_path):
    db = Database(DatabaseSettings(url=f"sqlite+aiosqlite:///{tmp_path / 'receipts.db'}"))
    await db.create_tables()
    yield db
    await db.dispose()


@pytest.fixture
def repository(database) -> SqlReceiptRepository:
    return SqlReceiptRepository(database)


@pytest.fixture
def ledger(database) -> SqlLedger:
    return SqlLedger(database)


@pytest.fixture
def audit_storage(database) -> SqlAuditStorage:
    return SqlAuditStorage(database)


@pytest.fixture
def audit_logger(audit_storage) -> AuditLogger:
    return AuditLogger(audit_storage)


@pytest.fixture
def image_store(tmp_path) -> LocalImageStore:
    return LocalImageStore(root=tmp_path / "images")


@pytest.fixture
def reconciler(repository, ledger, pipeline_settings) -> Reconciler:
    return Reconciler(repository, ledger, pipeline_settings)


@pytest.fixture
def extraction_client() -> ScriptedExtractionClient:
    return ScriptedExtractionClient(GROCERY_RESPONSE)


@pytest.fixture
def build_supervisor(repository, image_store, reconciler, audit_logger, pipeline_settings):
    """Factory so each test can script its own extraction client."""

    def _build(client: ExtractionClientInterface, settings: PipelineSettings = None) -> JobSupervisor:
        settings = settings or pipeline_settings
        return JobSupervisor(
            repository=repository,
            image_store=image_store,
            extraction_client=client,
            parser=ResponseParser(settings),
            reconciler=reconciler,
            audit_logger=audit_logger,
            settings=settings,
        )

    return _build


@pytest.fixture
def supervisor(build_supervisor, extraction_client) -> JobSupervisor:
    return build_supervisor(extraction_client)


@pytest.fixture
def service(repository, image_store, ledger, supervisor, audit_logger, app_settings) -> ReceiptService:
    return ReceiptService(
        repository=repository,
        image_store=image_store,
        ledger=ledger,
        supervisor=supervisor,
        audit_logger=audit_logger,
        app_settings=app_settings,
    )
