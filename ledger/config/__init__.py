"""Configuration package."""

from ledger.config.settings import (
    FirestoreSettings,
    GoogleSheetsSettings,
    LedgerSettings,
    Settings,
    TelegramSettings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "FirestoreSettings",
    "GoogleSheetsSettings",
    "LedgerSettings",
    "Settings",
    "TelegramSettings",
    "get_settings",
    "validate_all_settings",
]
