"""Tests for the audit logger and the Google Sheets audit journal."""

from uuid import uuid4

import pytest

from ledger.audit import AuditLogger, create_correlation_id
from ledger.models.audit import AuditEventBuilder, AuditEventType
from ledger.services.storage import AuditStorageInterface, StoreError
from ledger.services.storage.google_sheets import (
    AUDIT_COLUMNS,
    GoogleSheetsAuditStorage,
    row_to_event,
)

from tests.conftest import seed_category


class BrokenAuditStorage(AuditStorageInterface):

    async def append_event(self, event):
        raise StoreError("sheet unavailable")

    async def get_events_by_correlation_id(self, correlation_id):
        return []

    async def get_events_by_entity(self, entity_type, entity_id):
        return []

    async def get_recent_events(self, limit=100):
        return []


class FakeSheet:

    def __init__(self):
        self.rows = [list(AUDIT_COLUMNS)]

    def append_row(self, row, value_input_option=None):
        self.rows.append(list(row))

    def get_all_values(self):
        return [list(row) for row in self.rows]


class FakeSheetsClient:

    def __init__(self, fail=False):
        self.sheet = FakeSheet()
        self.fail = fail

    def get_audit_sheet(self):
        if self.fail:
            raise ConnectionError("offline")
        return self.sheet


class TestAuditLogger:

    async def test_log_persists(self, audit_logger, audit_storage):
        assert await audit_logger.log(AuditEventBuilder.counterpart_missing("e1")) is True
        assert audit_storage.events[0].event_type is AuditEventType.COUNTERPART_MISSING

    async def test_local_only_logger(self):
        logger = AuditLogger()
        assert logger.storage is None
        assert await logger.log(AuditEventBuilder.categories_seeded(2)) is True

    async def test_storage_failure_is_not_raised(self):
        logger = AuditLogger(BrokenAuditStorage())
        assert await logger.log(AuditEventBuilder.counterpart_missing("e1")) is False

    async def test_helpers_pass_correlation_id(self, audit_logger, audit_storage):
        correlation_id = create_correlation_id()
        await audit_logger.log_transfer_failed("a", "b", RuntimeError("boom"), correlation_id)
        await audit_logger.log_notification_failed("telegram", RuntimeError("down"), correlation_id)

        events = await audit_storage.get_events_by_correlation_id(correlation_id)
        assert [e.event_type for e in events] == [
            AuditEventType.TRANSFER_FAILED,
            AuditEventType.NOTIFICATION_FAILED,
        ]
        assert events[0].error_message == "boom"

    def test_correlation_ids_are_unique(self):
        assert create_correlation_id() != create_correlation_id()

    async def test_one_correlation_id_per_operation(self, store, service, audit_storage):
        a = await seed_category(store, "a", "A", "1000 ₸")
        b = await seed_category(store, "b", "B", "500 ₸")
        correlation_id = uuid4()

        receipt = await service.transfer(a, b, 100, "rent", correlation_id=correlation_id)
        await service.delete_transaction(receipt.income_id)

        events = await audit_storage.get_events_by_correlation_id(correlation_id)
        assert [e.event_type for e in events] == [AuditEventType.TRANSFER_COMMITTED]
        assert len(audit_storage.events) == 2


class TestGoogleSheetsAuditStorage:

    async def test_append_and_read_back(self):
        client = FakeSheetsClient()
        storage = GoogleSheetsAuditStorage(client)
        correlation_id = uuid4()
        event = AuditEventBuilder.integrity_warning("e1", ["i1", "i2"], "i1", correlation_id)

        assert await storage.append_event(event) is True
        assert len(client.sheet.rows) == 2

        events = await storage.get_events_by_correlation_id(correlation_id)
        assert len(events) == 1
        assert events[0].event_id == event.event_id
        assert events[0].details == {"candidate_ids": ["i1", "i2"], "chosen_id": "i1"}

    async def test_entity_and_recent_queries(self):
        storage = GoogleSheetsAuditStorage(FakeSheetsClient())
        await storage.append_event(AuditEventBuilder.counterpart_missing("e1"))
        await storage.append_event(AuditEventBuilder.category_missing("e1", "a"))

        by_entity = await storage.get_events_by_entity("category", "a")
        assert [e.event_type for e in by_entity] == [AuditEventType.CATEGORY_MISSING]
        recent = await storage.get_recent_events(limit=1)
        assert recent[0].event_type is AuditEventType.CATEGORY_MISSING

    async def test_malformed_rows_are_skipped(self):
        client = FakeSheetsClient()
        client.sheet.rows.append(["not-a-uuid", "yesterday"])
        storage = GoogleSheetsAuditStorage(client)
        assert await storage.get_recent_events() == []

    async def test_read_failure_raises_store_error(self):
        storage = GoogleSheetsAuditStorage(FakeSheetsClient(fail=True))
        with pytest.raises(StoreError):
            await storage.get_recent_events()

    def test_row_round_trip_keeps_empty_fields_empty(self):
        event = AuditEventBuilder.categories_seeded(3)
        restored = row_to_event(event.to_sheets_row())
        assert restored.entity_id is None
        assert restored.correlation_id is None
        assert restored.details == {"count": 3}
