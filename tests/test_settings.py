"""
Tests for configuration loading.
"""

import pytest
from pydantic import ValidationError

from budget_receipts.config import (
    AppSettings,
    GeminiSettings,
    PipelineSettings,
    get_settings,
    validate_all_settings,
)


@pytest.fixture(autouse=True)
def fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class TestPipelineSettings:
    """Tests for supervisor policy settings."""

    def test_defaults(self):
        """Test the default pool and retry policy."""
        settings = PipelineSettings()
        assert settings.max_concurrency == 3
        assert settings.max_attempts == 3
        assert settings.stale_after_seconds == 600
        assert settings.category_map == {}

    def test_reads_environment(self, monkeypatch):
        """Test PIPELINE_ variables override defaults."""
        monkeypatch.setenv("PIPELINE_MAX_CONCURRENCY", "5")
        monkeypatch.setenv("PIPELINE_MAX_ATTEMPTS", "4")
        settings = PipelineSettings()
        assert settings.max_concurrency == 5
        assert settings.max_attempts == 4

    def test_category_map_from_json(self, monkeypatch):
        """Test the category map is read as JSON and lowercased."""
        monkeypatch.setenv("PIPELINE_CATEGORY_MAP", '{"Snacks": "Weekly"}')
        settings = PipelineSettings()
        assert settings.category_map == {"snacks": "weekly"}

    def test_rejects_zero_concurrency(self):
        """Test the pool needs at least one worker."""
        with pytest.raises(ValidationError):
            PipelineSettings(max_concurrency=0)

    def test_job_budget_derived_from_timeout(self):
        """Test the job budget covers every attempt plus backoff."""
        settings = PipelineSettings(max_attempts=3, retry_backoff_max=30)
        assert settings.effective_job_budget(60) == 60 * 3 + 30 * 2

    def test_explicit_job_budget_wins(self):
        """Test a configured job budget is used as is."""
        settings = PipelineSettings(job_budget_seconds=12)
        assert settings.effective_job_budget(60) == 12

    def test_stale_threshold_must_exceed_job_budget(self):
        """Test a threshold a live job could outlive is refused."""
        with pytest.raises(ValidationError):
            PipelineSettings(job_budget_seconds=300, stale_after_seconds=60)

    def test_default_budget_below_staleness_threshold(self):
        """Test a live job is never old enough to be swept."""
        settings = PipelineSettings()
        assert settings.effective_job_budget(60) < settings.stale_after_seconds


class TestOtherSettings:
    """Tests for the remaining sections."""

    def test_upload_limit_in_bytes(self):
        """Test the upload limit conversion."""
        assert AppSettings(max_upload_size_mb=2).max_upload_size_bytes == 2 * 1024 * 1024

    def test_gemini_requires_api_key(self, monkeypatch):
        """Test Gemini settings fail without an API key."""
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)
        with pytest.raises(ValidationError):
            GeminiSettings()

    def test_validate_all_reports_missing_section(self, monkeypatch):
        """Test validate_all_settings flags the section that cannot load."""
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)
        monkeypatch.setenv("IMAGE_STORE_BACKEND", "local")
        results = validate_all_settings()
        assert results["database"] is True
        assert results["pipeline"] is True
        assert results["gemini"] is False
        assert "gemini_error" in results
        assert "cloudinary" not in results

    def test_validate_all_includes_cloudinary_when_selected(self, monkeypatch):
        """Test Cloudinary is checked only when it backs the image store."""
        monkeypatch.setenv("IMAGE_STORE_BACKEND", "cloudinary")
        monkeypatch.setenv("CLOUDINARY_CLOUD_NAME", "demo")
        monkeypatch.setenv("CLOUDINARY_API_KEY", "key")
        monkeypatch.setenv("CLOUDINARY_API_SECRET", "secret")
        results = validate_all_settings()
        assert results["cloudinary"] is True
