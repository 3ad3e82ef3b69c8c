"""Configuration package."""

from budget_receipts.config.settings import (
    AppSettings,
    CloudinarySettings,
    DatabaseSettings,
    GeminiSettings,
    ImageStoreSettings,
    PipelineSettings,
    Settings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AppSettings",
    "CloudinarySettings",
    "DatabaseSettings",
    "GeminiSettings",
    "ImageStoreSettings",
    "PipelineSettings",
    "Settings",
    "get_settings",
    "validate_all_settings",
]
