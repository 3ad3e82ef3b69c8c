"""
Configuration Management for Budget Receipts

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
Every tunable of the extraction pipeline (concurrency, retry budget,
backoff, staleness threshold, category mapping) lives in one place so the
policy can be changed without touching the pipeline code.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Receipt repository and ledger database configuration."""

    model_config = SettingsConfigDict(
        env_prefix="DATABASE_",
        extra="ignore"
    )

    url: str = Field(
        default="sqlite+aiosqlite:///./budget_receipts.db",
        description="SQLAlchemy async database URL"
    )
    echo: bool = Field(
        default=False,
        description="Log every SQL statement"
    )
    busy_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="How long SQLite waits on a locked database before failing"
    )


class ImageStoreSettings(BaseSettings):
    """Where uploaded receipt bytes are kept."""

    model_config = SettingsConfigDict(
        env_prefix="IMAGE_STORE_",
        extra="ignore"
    )

    backend: Literal["local", "cloudinary"] = Field(
        default="local",
        description="Image store implementation"
    )
    local_root: str = Field(
        default="./data/receipts",
        description="Directory used by the local image store"
    )


class CloudinarySettings(BaseSettings):
    """Cloudinary image hosting configuration."""

    model_config = SettingsConfigDict(
        env_prefix="CLOUDINARY_",
        extra="ignore"
    )

    cloud_name: str = Field(
        ...,
        description="Cloudinary cloud name"
    )
    api_key: str = Field(
        ...,
        description="Cloudinary API key"
    )
    api_secret: str = Field(
        ...,
        description="Cloudinary API secret"
    )
    folder: str = Field(
        default="budget_receipts",
        description="Folder receipts are uploaded into"
    )


class GeminiSettings(BaseSettings):
    """Gemini vision model configuration."""

    model_config = SettingsConfigDict(
        env_prefix="GEMINI_",
        extra="ignore"
    )

    api_key: str = Field(
        ...,
        description="Gemini API key"
    )
    model_name: str = Field(
        default="gemini-1.5-flash",
        description="Gemini model to use"
    )
    max_tokens: int = Field(
        default=4096,
        ge=100,
        le=8192,
        description="Maximum tokens in response"
    )
    temperature: float = Field(
        default=0.1,
        ge=0.0,
        le=1.0,
        description="Model temperature (lower = more deterministic)"
    )
    request_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Per-call timeout for one extraction request"
    )
    supported_mime_types: list[str] = Field(
        default=[
            "image/jpeg",
            "image/png",
            "image/webp",
            "image/heic",
            "image/heif",
            "application/pdf",
        ],
        description="Payload formats the model accepts"
    )


class PipelineSettings(BaseSettings):
    """
    Job supervisor and reconciliation policy.

    The defaults describe the reference behavior: a small worker pool,
    three attempts with exponential backoff, anything unmapped is "misc".
    """

    model_config = SettingsConfigDict(
        env_prefix="PIPELINE_",
        extra="ignore"
    )

    # Worker pool
    max_concurrency: int = Field(
        default=3,
        ge=1,
        le=32,
        description="Maximum concurrent extraction jobs"
    )
    poll_interval_seconds: float = Field(
        default=5.0,
        ge=0.0,
        description="Delay between polls for pending receipts"
    )

    # Retry policy (extraction call only)
    max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Extraction attempts per job, first call included"
    )
    retry_backoff_multiplier: float = Field(
        default=1.0,
        ge=0.0,
        description="Multiplier for exponential backoff"
    )
    retry_backoff_min: float = Field(
        default=2.0,
        ge=0.0,
        description="Lower bound of a single backoff delay in seconds"
    )
    retry_backoff_max: float = Field(
        default=30.0,
        ge=0.0,
        description="Upper bound of a single backoff delay in seconds"
    )
    job_budget_seconds: Optional[float] = Field(
        default=None,
        gt=0,
        description="Wall-clock budget for one job; derived from timeout and retries if unset"
    )

    # Recovery and shutdown
    stale_after_seconds: float = Field(
        default=600.0,
        ge=0.0,
        description="Age after which a processing receipt is considered orphaned"
    )
    shutdown_grace_seconds: float = Field(
        default=10.0,
        ge=0.0,
        description="How long shutdown waits for cancelled jobs to unwind"
    )

    # Reconciliation
    placeholder_description: str = Field(
        default="Unlabeled item",
        min_length=1,
        description="Description used for items the model did not name"
    )
    category_map: dict[str, str] = Field(
        default_factory=dict,
        description="Extra category hint to expense type mappings (JSON)"
    )
    budget_categories: list[str] = Field(
        default_factory=list,
        description='Budget categories offered to the model, e.g. "Milk (weekly)"'
    )

    @field_validator('category_map')
    @classmethod
    def normalize_category_map(cls, v: dict[str, str]) -> dict[str, str]:
        """Lowercase keys and values so lookups are case-insensitive."""
        return {key.strip().lower(): value.strip().lower() for key, value in v.items()}

    @model_validator(mode="after")
    def stale_after_exceeds_job_budget(self) -> "PipelineSettings":
        """A live job must never look orphaned to another worker."""
        if self.job_budget_seconds is not None and self.stale_after_seconds <= self.job_budget_seconds:
            raise ValueError(
                f"stale_after_seconds ({self.stale_after_seconds}) must exceed "
                f"job_budget_seconds ({self.job_budget_seconds})"
            )
        return self

    def effective_job_budget(self, request_timeout: float) -> float:
        """
        Wall-clock budget for one job.

        Defaults to every attempt timing out plus the longest backoff
        between each pair of attempts.
        """
        if self.job_budget_seconds is not None:
            return self.job_budget_seconds
        retries = self.max_attempts - 1
        return request_timeout * self.max_attempts + self.retry_backoff_max * retries


class AppSettings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Environment
    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )

    # File upload limits
    max_upload_size_mb: int = Field(
        default=10,
        ge=1,
        le=50,
        description="Maximum upload file size in MB"
    )

    @property
    def max_upload_size_bytes(self) -> int:
        """Get max upload size in bytes."""
        return self.max_upload_size_mb * 1024 * 1024


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Sub-settings are loaded lazily to allow partial configuration

    @property
    def database(self) -> DatabaseSettings:
        return DatabaseSettings()

    @property
    def image_store(self) -> ImageStoreSettings:
        return ImageStoreSettings()

    @property
    def cloudinary(self) -> CloudinarySettings:
        return CloudinarySettings()

    @property
    def gemini(self) -> GeminiSettings:
        return GeminiSettings()

    @property
    def pipeline(self) -> PipelineSettings:
        return PipelineSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Uses LRU cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, object]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid} plus an "<name>_error"
    entry for each section that failed to load. Useful for startup checks.
    """
    results: dict[str, object] = {}

    settings = get_settings()

    sections = ["database", "image_store", "gemini", "pipeline", "app"]
    # Cloudinary is only required when it backs the image store
    try:
        if settings.image_store.backend == "cloudinary":
            sections.append("cloudinary")
    except Exception:
        # Reported below under image_store
        pass

    for name in sections:
        try:
            getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
