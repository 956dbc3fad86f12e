"""Configuration package."""

from vaultpay.config.settings import (
    AppSettings,
    GeminiSettings,
    LedgerSettings,
    PaymentSettings,
    Settings,
    gemini_settings_or_none,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AppSettings",
    "GeminiSettings",
    "LedgerSettings",
    "PaymentSettings",
    "Settings",
    "gemini_settings_or_none",
    "get_settings",
    "validate_all_settings",
]
