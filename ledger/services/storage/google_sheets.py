"""
Google Sheets Audit Journal

DESIGN DECISION: The audit journal lives in a spreadsheet so the business
owner can read who moved what without any tooling.

TRADEOFFS:
- Sheets has no transactions, so it never stores ledger data; it only
  receives append-only audit rows.
- Reads filter in Python; fine for an operational journal.
- gspread is blocking, so calls run in a worker thread.
"""

import asyncio
import json
from datetime import datetime
from typing import Optional
from uuid import UUID

import gspread
import structlog
from google.oauth2.service_account import Credentials
from tenacity import retry, stop_after_attempt, wait_exponential

from ledger.config import GoogleSheetsSettings, get_settings
from ledger.models.audit import AuditEvent, AuditEventType, AuditSeverity
from ledger.services.storage.interface import (
    AuditStorageInterface,
    ConnectionError,
    StoreError,
)


logger = structlog.get_logger(__name__)

SCOPES = [
    "https://www.googleapis.com/auth/spreadsheets",
    "https://www.googleapis.com/auth/drive",
]

AUDIT_COLUMNS = [
    "event_id",
    "timestamp",
    "event_type",
    "severity",
    "entity_type",
    "entity_id",
    "correlation_id",
    "description",
    "details_json",
    "error_message",
]


class GoogleSheetsClient:
    """
    Low-level Google Sheets client wrapper.

    Handles authentication and provides retry logic for API calls.
    """

    def __init__(self, settings: Optional[GoogleSheetsSettings] = None):
        self._client: Optional[gspread.Client] = None
        self._spreadsheet: Optional[gspread.Spreadsheet] = None
        self._settings = settings or get_settings().google_sheets

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def connect(self) -> gspread.Client:
        """Establish connection using service account credentials."""
        if self._client is None:
            try:
                credentials = Credentials.from_service_account_file(
                    self._settings.credentials_path,
                    scopes=SCOPES,
                )
                self._client = gspread.authorize(credentials)
            except FileNotFoundError:
                raise ConnectionError(
                    f"Google credentials file not found: {self._settings.credentials_path}"
                )
            except Exception as e:
                raise ConnectionError(f"Failed to connect to Google Sheets: {e}")

        return self._client

    def get_audit_sheet(self) -> gspread.Worksheet:
        """Get or create the audit worksheet."""
        if self._spreadsheet is None:
            try:
                self._spreadsheet = self.connect().open_by_key(self._settings.spreadsheet_id)
            except gspread.SpreadsheetNotFound:
                raise ConnectionError(
                    f"Spreadsheet not found: {self._settings.spreadsheet_id}"
                )
        try:
            sheet = self._spreadsheet.worksheet(self._settings.audit_sheet_name)
        except gspread.WorksheetNotFound:
            sheet = self._spreadsheet.add_worksheet(
                title=self._settings.audit_sheet_name,
                rows=5000,
                cols=len(AUDIT_COLUMNS),
            )
            sheet.append_row(AUDIT_COLUMNS)
        return sheet


def row_to_event(row: list) -> AuditEvent:
    """Convert a spreadsheet row back to an AuditEvent."""
    def safe_get(index: int, default: str = "") -> str:
        try:
            return row[index] if row[index] else default
        except IndexError:
            return default

    return AuditEvent(
        event_id=UUID(safe_get(0)),
        timestamp=datetime.fromisoformat(safe_get(1)),
        event_type=AuditEventType(safe_get(2)),
        severity=AuditSeverity(safe_get(3)),
        entity_type=safe_get(4) or None,
        entity_id=safe_get(5) or None,
        correlation_id=UUID(safe_get(6)) if safe_get(6) else None,
        description=safe_get(7),
        details=json.loads(safe_get(8)) if safe_get(8) else {},
        error_message=safe_get(9) or None,
    )


class GoogleSheetsAuditStorage(AuditStorageInterface):
    """
    Google Sheets implementation of audit log storage.

    Audit events are append-only.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def _append_row(self, row: list[str]) -> None:
        self._client.get_audit_sheet().append_row(row, value_input_option="RAW")

    def _read_events(self) -> list[AuditEvent]:
        rows = self._client.get_audit_sheet().get_all_values()[1:]
        events = []
        for row in rows:
            if not row or not row[0]:
                continue
            try:
                events.append(row_to_event(row))
            except (ValueError, IndexError) as e:
                logger.warning("audit_row_skipped", error=str(e), event_id=row[0])
        return events

    async def append_event(self, event: AuditEvent) -> bool:
        try:
            await asyncio.to_thread(self._append_row, event.to_sheets_row())
            return True
        except Exception as e:
            # Audit logging should not break the main flow
            logger.warning("audit_append_failed", error=str(e), event_id=str(event.event_id))
            return False

    async def _all_events(self) -> list[AuditEvent]:
        try:
            return await asyncio.to_thread(self._read_events)
        except Exception as e:
            raise StoreError(f"Failed to get audit events: {e}")

    async def get_events_by_correlation_id(self, correlation_id: UUID) -> list[AuditEvent]:
        events = [e for e in await self._all_events() if e.correlation_id == correlation_id]
        return sorted(events, key=lambda e: e.timestamp)

    async def get_events_by_entity(self, entity_type: str, entity_id: str) -> list[AuditEvent]:
        events = [
            e for e in await self._all_events()
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]
        return sorted(events, key=lambda e: e.timestamp)

    async def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        events = await self._all_events()
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return events[:limit]
