"""
Configuration Management for the Paired Ledger

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
Every external dependency (Firestore, Telegram, Google Sheets) has its own
settings class so a missing credential only disables that one service.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class FirestoreSettings(BaseSettings):
    """Firestore ledger store configuration."""

    model_config = SettingsConfigDict(
        env_prefix="FIRESTORE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    project_id: str = Field(
        ...,
        description="Google Cloud project hosting the Firestore database"
    )
    credentials_path: Optional[str] = Field(
        default=None,
        description="Path to service account JSON. Falls back to application default credentials."
    )
    database: str = Field(
        default="(default)",
        description="Firestore database id"
    )

    # Collection names
    categories_collection: str = Field(default="categories")
    transactions_collection: str = Field(default="transactions")
    products_collection: str = Field(default="products")

    @field_validator('credentials_path')
    @classmethod
    def validate_credentials_path(cls, v: Optional[str]) -> Optional[str]:
        """Warn if credentials file doesn't exist (but don't fail - might be mounted later)."""
        if v and not Path(v).exists():
            import warnings
            warnings.warn(
                f"Firestore credentials file not found at {v}. "
                "Make sure it exists before running the application."
            )
        return v


class TelegramSettings(BaseSettings):
    """Telegram transfer notification configuration."""

    model_config = SettingsConfigDict(
        env_prefix="TELEGRAM_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    bot_token: str = Field(
        ...,
        description="Bot token from BotFather"
    )
    chat_id: str = Field(
        ...,
        description="Chat or channel that receives transfer notifications"
    )
    timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Per-request timeout for the Bot API"
    )


class GoogleSheetsSettings(BaseSettings):
    """Google Sheets audit journal configuration."""

    model_config = SettingsConfigDict(
        env_prefix="GOOGLE_SHEETS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    credentials_path: str = Field(
        ...,
        description="Path to Google service account credentials JSON"
    )
    spreadsheet_id: str = Field(
        ...,
        description="ID of the spreadsheet that holds the audit journal"
    )
    audit_sheet_name: str = Field(
        default="AuditLog",
        description="Name of the sheet for audit logs"
    )


class LedgerSettings(BaseSettings):
    """
    Main ledger settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Environment
    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    log_level: str = Field(
        default="INFO",
        description="Minimum level for structured logs"
    )

    backend: str = Field(
        default="memory",
        pattern="^(memory|firestore)$",
        description="Ledger store backend"
    )

    currency_symbol: str = Field(
        default="₸",
        min_length=1,
        description="Glyph appended to formatted balances"
    )

    # Atomic read-modify-write retry policy
    transaction_max_attempts: int = Field(
        default=5,
        ge=1,
        le=20,
        description="How many times a conflicting transaction is re-run"
    )
    transaction_retry_wait_seconds: float = Field(
        default=0.05,
        ge=0.0,
        le=5.0,
        description="Base wait between conflicting transaction attempts"
    )

    notifications_enabled: bool = Field(
        default=True,
        description="Send transfer notifications when Telegram is configured"
    )
    audit_to_sheets: bool = Field(
        default=False,
        description="Persist audit events to Google Sheets"
    )


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

    # Sub-settings are built on access so partial configuration still works

    @property
    def ledger(self) -> LedgerSettings:
        return LedgerSettings()

    @property
    def firestore(self) -> FirestoreSettings:
        return FirestoreSettings()

    @property
    def telegram(self) -> TelegramSettings:
        return TelegramSettings()

    @property
    def google_sheets(self) -> GoogleSheetsSettings:
        return GoogleSheetsSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, object]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid} plus "<name>_error" entries
    for the ones that failed. Useful for startup checks.
    """
    results: dict[str, object] = {}
    settings = get_settings()

    for name in ("ledger", "firestore", "telegram", "google_sheets"):
        try:
            getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
