"""Tests for the deletion engine."""

import warnings
from decimal import Decimal

import pydantic
import pytest

from ledger.engine import (
    CorruptTransactionError,
    DeletionEngine,
    IntegrityWarning,
    LedgerError,
    TransactionNotFoundError,
    ValidationError,
)
from ledger.models.audit import AuditEventType
from ledger.services.storage import NotFoundError

from tests.conftest import RecordingNotifier, seed_category, stored_amount


NBSP = "\u00a0"


def _event_types(audit_storage):
    return [event.event_type for event in audit_storage.events]


async def _rent(store, service):
    a = await seed_category(store, "a", "A", "1000 ₸")
    b = await seed_category(store, "b", "B", "500 ₸")
    return await service.transfer(a, b, 200, "rent")


class TestDeletePair:
    """Deleting either leg removes the pair and restores both balances."""

    async def test_delete_expense_leg(self, store, service):
        receipt = await _rent(store, service)

        result = await service.delete_transaction(receipt.expense_id)

        assert await stored_amount(store, "a") == f"1{NBSP}000 ₸"
        assert await stored_amount(store, "b") == "500 ₸"
        assert await store.query("transactions") == []
        assert result.counterpart_id == receipt.income_id
        assert result.deleted_ids == [receipt.expense_id, receipt.income_id]
        assert result.balances == {"a": Decimal(1000), "b": Decimal(500)}

    async def test_delete_income_leg(self, store, service):
        receipt = await _rent(store, service)

        result = await service.delete_transaction(receipt.income_id)

        assert await stored_amount(store, "a") == f"1{NBSP}000 ₸"
        assert await stored_amount(store, "b") == "500 ₸"
        assert await store.query("transactions") == []
        assert result.counterpart_id == receipt.expense_id

    async def test_other_pairs_untouched(self, store, service):
        first = await _rent(store, service)
        a = await seed_category(store, "c", "C", "0 ₸")
        b = await seed_category(store, "d", "D", "0 ₸")
        second = await service.transfer(a, b, 10, "other")

        await service.delete_transaction(first.expense_id)

        remaining = sorted(doc.id for doc in await store.query("transactions"))
        assert remaining == sorted([second.expense_id, second.income_id])
        assert await stored_amount(store, "d") == "10 ₸"

    async def test_reversal_uses_current_balance(self, store, service):
        receipt = await _rent(store, service)
        # A later, unrelated change to A must survive the deletion
        await store.update("categories", "a", {"amount": "900 ₸"})

        await service.delete_transaction(receipt.expense_id)

        assert await stored_amount(store, "a") == f"1{NBSP}100 ₸"

    async def test_fractional_reversal_rounds(self, store, service):
        a = await seed_category(store, "a", "A", "100 ₸")
        b = await seed_category(store, "b", "B", "0 ₸")
        receipt = await service.transfer(a, b, Decimal("10.4"), "coins")

        result = await service.delete_transaction(receipt.expense_id)

        assert result.balances["a"] == Decimal(100)
        assert result.balances["b"] == Decimal(0)

    async def test_fractional_transfer_receipt_matches_store(self, store, service):
        a = await seed_category(store, "a", "A", "100 ₸")
        b = await seed_category(store, "b", "B", "0 ₸")

        receipt = await service.transfer(a, b, Decimal("10.4"), "coins")

        assert await stored_amount(store, "a") == "90 ₸"
        assert await stored_amount(store, "b") == "10 ₸"
        assert receipt.source_balance == Decimal(90)
        assert receipt.target_balance == Decimal(10)

    async def test_deletion_is_audited(self, store, service, audit_storage):
        receipt = await _rent(store, service)
        await service.delete_transaction(receipt.expense_id)

        deleted = [e for e in audit_storage.events if e.event_type is AuditEventType.TRANSACTION_DELETED]
        assert deleted[0].details["deleted_ids"] == [receipt.expense_id, receipt.income_id]
        assert AuditEventType.COUNTERPART_MISSING not in _event_types(audit_storage)

    async def test_deletion_notification(self, store, service, notifier):
        receipt = await _rent(store, service)
        await service.delete_transaction(receipt.expense_id)
        await service.drain_notifications()

        assert notifier.messages[-1] == (
            "🗑 Transfer deleted\nFrom: A\nTo: B\nAmount: 200 ₸\nComment: rent"
        )


class TestDegradedPaths:
    """Broken pairs are cleaned up as far as possible without failing."""

    async def test_counterpart_removed_out_of_band(self, store, service, audit_storage):
        receipt = await _rent(store, service)
        await store.delete("transactions", receipt.income_id)

        result = await service.delete_transaction(receipt.expense_id)

        assert not result.counterpart_found
        assert result.deleted_ids == [receipt.expense_id]
        assert await stored_amount(store, "a") == f"1{NBSP}000 ₸"
        # Only the target's own category is reversed
        assert await stored_amount(store, "b") == "700 ₸"
        assert await store.query("transactions") == []
        assert AuditEventType.COUNTERPART_MISSING in _event_types(audit_storage)

    async def test_unpaired_legacy_leg(self, store, service):
        await seed_category(store, "a", "A", "500 ₸")
        await store.create("transactions", {
            "categoryId": "a",
            "amount": 50,
            "type": "income",
            "description": "old",
        }, doc_id="legacy")

        result = await service.delete_transaction("legacy")

        assert result.deleted_ids == ["legacy"]
        assert await stored_amount(store, "a") == "450 ₸"

    async def test_untyped_leg_is_reversed_as_income(self, store, service):
        await seed_category(store, "a", "A", "500 ₸")
        await store.create("transactions", {
            "categoryId": "a",
            "amount": 50,
            "description": "old",
        }, doc_id="untyped")

        result = await service.delete_transaction("untyped")

        assert result.deleted_ids == ["untyped"]
        assert await stored_amount(store, "a") == "450 ₸"
        assert await store.query("transactions") == []

    async def test_unknown_type_is_reversed_as_income(self, store, service):
        await seed_category(store, "a", "A", "500 ₸")
        await store.create("transactions", {
            "categoryId": "a",
            "amount": -30,
            "type": "refund",
        }, doc_id="odd")

        await service.delete_transaction("odd")

        assert await stored_amount(store, "a") == "530 ₸"

    async def test_missing_category_skips_balance(self, store, service, audit_storage):
        receipt = await _rent(store, service)
        await store.delete("categories", "b")

        result = await service.delete_transaction(receipt.expense_id)

        assert result.deleted_ids == [receipt.expense_id, receipt.income_id]
        assert result.balances == {"a": Decimal(1000)}
        assert await store.get("categories", "b") is None
        assert await store.query("transactions") == []
        missing = [e for e in audit_storage.events if e.event_type is AuditEventType.CATEGORY_MISSING]
        assert missing[0].entity_id == "b"

    async def test_multiple_counterparts_warn_and_use_first(self, store, service, audit_storage):
        receipt = await _rent(store, service)
        # A stray duplicate income leg claiming the same pair
        await store.create("transactions", {
            "categoryId": "b",
            "amount": 200,
            "type": "income",
            "relatedTransactionId": receipt.expense_id,
        }, doc_id="zzz-duplicate")
        expected_first = min(receipt.income_id, "zzz-duplicate")

        with pytest.warns(IntegrityWarning):
            result = await service.delete_transaction(receipt.expense_id)

        assert result.counterpart_id == expected_first
        remaining = [doc.id for doc in await store.query("transactions")]
        assert len(remaining) == 1
        assert expected_first not in remaining
        assert AuditEventType.INTEGRITY_WARNING in _event_types(audit_storage)

    async def test_single_counterpart_does_not_warn(self, store, service):
        receipt = await _rent(store, service)
        with warnings.catch_warnings():
            warnings.simplefilter("error", IntegrityWarning)
            await service.delete_transaction(receipt.expense_id)


class TestDeletionFailures:

    async def test_unknown_transaction(self, store, service, audit_storage):
        await _rent(store, service)

        with pytest.raises(TransactionNotFoundError) as exc_info:
            await service.delete_transaction("nope")

        assert isinstance(exc_info.value, NotFoundError)
        assert await stored_amount(store, "a") == "800 ₸"
        assert len(await store.query("transactions")) == 2
        assert AuditEventType.DELETION_FAILED in _event_types(audit_storage)

    async def test_unreadable_leg(self, store, service, audit_storage):
        await seed_category(store, "a", "A", "500 ₸")
        await store.create("transactions", {"type": "expense", "amount": 10}, doc_id="broken")

        with pytest.raises(CorruptTransactionError) as exc_info:
            await service.delete_transaction("broken")

        assert isinstance(exc_info.value, LedgerError)
        assert isinstance(exc_info.value.__cause__, pydantic.ValidationError)
        assert await store.get("transactions", "broken") is not None
        assert await stored_amount(store, "a") == "500 ₸"
        assert AuditEventType.DELETION_FAILED in _event_types(audit_storage)

    @pytest.mark.parametrize("transaction_id", ["", "  ", None])
    async def test_empty_id(self, store, service, transaction_id):
        with pytest.raises(ValidationError):
            await service.delete_transaction(transaction_id)

    async def test_notification_failure_is_only_logged(self, store, service, audit_logger, audit_storage):
        receipt = await _rent(store, service)
        engine = DeletionEngine(store, notifier=RecordingNotifier(fail=True), audit_logger=audit_logger)

        await engine.delete_transaction(receipt.expense_id)
        await engine.drain_notifications()

        assert await store.query("transactions") == []
        assert AuditEventType.NOTIFICATION_FAILED in _event_types(audit_storage)
