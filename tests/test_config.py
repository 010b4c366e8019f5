"""Tests for environment-driven settings."""

import pydantic
import pytest

from ledger.config import LedgerSettings, TelegramSettings, get_settings, validate_all_settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in (
        "TELEGRAM_BOT_TOKEN",
        "TELEGRAM_CHAT_ID",
        "FIRESTORE_PROJECT_ID",
        "GOOGLE_SHEETS_CREDENTIALS_PATH",
        "GOOGLE_SHEETS_SPREADSHEET_ID",
        "LEDGER_CURRENCY_SYMBOL",
    ):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class TestLedgerSettings:

    def test_defaults(self):
        settings = LedgerSettings()
        assert settings.backend == "memory"
        assert settings.currency_symbol == "₸"
        assert settings.transaction_max_attempts == 5

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("LEDGER_CURRENCY_SYMBOL", "$")
        monkeypatch.setenv("LEDGER_AUDIT_TO_SHEETS", "true")
        settings = LedgerSettings()
        assert settings.currency_symbol == "$"
        assert settings.audit_to_sheets is True

    def test_attempts_are_bounded(self, monkeypatch):
        monkeypatch.setenv("LEDGER_TRANSACTION_MAX_ATTEMPTS", "0")
        with pytest.raises(pydantic.ValidationError):
            LedgerSettings()

    def test_telegram_requires_token(self):
        with pytest.raises(pydantic.ValidationError):
            TelegramSettings()


class TestValidateAllSettings:

    def test_reports_missing_services(self):
        results = validate_all_settings()
        assert results["ledger"] is True
        assert results["telegram"] is False
        assert results["firestore"] is False
        assert "telegram_error" in results

    def test_configured_service_is_valid(self, monkeypatch):
        monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "123:abc")
        monkeypatch.setenv("TELEGRAM_CHAT_ID", "1")
        assert validate_all_settings()["telegram"] is True
