"""Tests for the transfer engine."""

from decimal import Decimal

import pytest

from ledger.engine import CategoryNotFoundError, TransferEngine, ValidationError
from ledger.models.audit import AuditEventType
from ledger.models.ledger import Category, TransferFlags, leg_from_document
from ledger.services.storage import NotFoundError, TransactionAbortedError

from tests.conftest import RecordingNotifier, seed_category, stored_amount


NBSP = "\u00a0"


async def _legs(store):
    docs = await store.query("transactions")
    return [leg_from_document(doc.id, doc.data) for doc in docs]


def _event_types(audit_storage):
    return [event.event_type for event in audit_storage.events]


class TestTransfer:
    """A committed transfer writes two legs and two balances."""

    async def test_rent_scenario(self, store, service, notifier):
        a = await seed_category(store, "a", "A", "1000 ₸")
        b = await seed_category(store, "b", "B", "500 ₸")

        receipt = await service.transfer(a, b, 200, "rent")

        assert await stored_amount(store, "a") == "800 ₸"
        assert await stored_amount(store, "b") == "700 ₸"
        assert receipt.source_balance == Decimal(800)
        assert receipt.target_balance == Decimal(700)

        legs = {leg.transaction_type.value: leg for leg in await _legs(store)}
        assert set(legs) == {"expense", "income"}
        expense, income = legs["expense"], legs["income"]
        assert expense.category_id == "a"
        assert expense.amount == Decimal(-200)
        assert income.category_id == "b"
        assert income.amount == Decimal(200)
        assert expense.id == receipt.expense_id
        assert income.id == receipt.income_id

    async def test_pair_shares_expense_id_and_timestamp(self, store, service):
        a = await seed_category(store, "a", "Cash box", "1000 ₸")
        b = await seed_category(store, "b", "Staff", "0 ₸")

        receipt = await service.transfer(a, b, 150, "advance")

        expense = await store.get("transactions", receipt.expense_id)
        income = await store.get("transactions", receipt.income_id)
        assert expense["relatedTransactionId"] == receipt.expense_id
        assert income["relatedTransactionId"] == receipt.expense_id
        assert expense["date"] == income["date"]
        assert expense["fromUser"] == income["fromUser"] == "Cash box"
        assert expense["toUser"] == income["toUser"] == "Staff"
        assert expense["description"] == "advance"

        category = await store.get("categories", "a")
        assert category["updatedAt"] == expense["date"]

    async def test_balances_are_read_from_store(self, store, service):
        await seed_category(store, "a", "A", "1000 ₸")
        await seed_category(store, "b", "B", "500 ₸")
        stale_a = Category(id="a", title="A", balance=Decimal(5))
        stale_b = Category(id="b", title="B", balance=Decimal(99999))

        await service.transfer(stale_a, stale_b, 200, "rent")

        assert await stored_amount(store, "a") == "800 ₸"
        assert await stored_amount(store, "b") == "700 ₸"

    async def test_large_balances_are_grouped(self, store, service):
        a = await seed_category(store, "a", "A", f"1{NBSP}500{NBSP}000 ₸")
        b = await seed_category(store, "b", "B", "0 ₸")

        await service.transfer(a, b, 250000, "stock")

        assert await stored_amount(store, "a") == f"1{NBSP}250{NBSP}000 ₸"
        assert await stored_amount(store, "b") == f"250{NBSP}000 ₸"

    async def test_flags_written_only_when_given(self, store, service):
        a = await seed_category(store, "a", "A", "1000 ₸")
        b = await seed_category(store, "b", "B", "0 ₸")

        await service.transfer(a, b, 100, "salary", flags=TransferFlags(is_salary=True))
        for leg in await _legs(store):
            doc = await store.get("transactions", leg.id)
            assert doc["isSalary"] is True
            assert "isCashless" not in doc

    async def test_no_flags(self, store, service):
        a = await seed_category(store, "a", "A", "1000 ₸")
        b = await seed_category(store, "b", "B", "0 ₸")

        await service.transfer(a, b, 100, "plain")
        for leg in await _legs(store):
            doc = await store.get("transactions", leg.id)
            assert "isSalary" not in doc
            assert "isCashless" not in doc

    async def test_commit_is_audited(self, store, service, audit_storage):
        a = await seed_category(store, "a", "A", "1000 ₸")
        b = await seed_category(store, "b", "B", "0 ₸")

        receipt = await service.transfer(a, b, 100, "rent")

        committed = [e for e in audit_storage.events if e.event_type is AuditEventType.TRANSFER_COMMITTED]
        assert len(committed) == 1
        assert committed[0].entity_id == receipt.pair_id


class TestTransferValidation:
    """Bad requests are rejected before any store access."""

    @pytest.mark.parametrize("amount", [-50, 0, float("nan"), float("inf"), "abc", None, True])
    async def test_bad_amount(self, store, service, audit_storage, amount):
        a = await seed_category(store, "a", "A", "1000 ₸")
        b = await seed_category(store, "b", "B", "500 ₸")

        with pytest.raises(ValidationError) as exc_info:
            await service.transfer(a, b, amount, "bad")

        assert exc_info.value.issues[0].field == "amount"
        assert await stored_amount(store, "a") == "1000 ₸"
        assert await stored_amount(store, "b") == "500 ₸"
        assert await store.query("transactions") == []
        assert AuditEventType.TRANSFER_REJECTED in _event_types(audit_storage)

    @pytest.mark.parametrize("description", ["", "   ", None])
    async def test_empty_description(self, store, service, description):
        a = await seed_category(store, "a", "A", "1000 ₸")
        b = await seed_category(store, "b", "B", "500 ₸")

        with pytest.raises(ValidationError) as exc_info:
            await service.transfer(a, b, 10, description)
        assert [issue.field for issue in exc_info.value.issues] == ["description"]

    async def test_same_category(self, store, service):
        a = await seed_category(store, "a", "A", "1000 ₸")
        with pytest.raises(ValidationError):
            await service.transfer(a, a, 10, "loop")
        assert await stored_amount(store, "a") == "1000 ₸"

    async def test_all_issues_reported(self, store, service):
        a = await seed_category(store, "a", "A", "1000 ₸")
        with pytest.raises(ValidationError) as exc_info:
            await service.transfer(a, a, -1, "")
        assert len(exc_info.value.issues) == 3

    async def test_validation_touches_no_store(self, store, notifier, audit_logger):
        calls = []
        original = store.run_transaction

        async def spy(fn):
            calls.append(fn)
            return await original(fn)

        store.run_transaction = spy
        engine = TransferEngine(store, notifier=notifier, audit_logger=audit_logger)
        a = Category(id="a", title="A")
        b = Category(id="b", title="B")

        with pytest.raises(ValidationError):
            await engine.transfer(a, b, -50, "bad")
        assert calls == []
        await engine.drain_notifications()
        assert notifier.messages == []


class TestTransferFailures:
    """Failures inside the atomic section leave no trace but the audit log."""

    async def test_missing_target(self, store, service, notifier, audit_storage):
        a = await seed_category(store, "a", "A", "1000 ₸")
        ghost = Category(id="ghost", title="Ghost")

        with pytest.raises(CategoryNotFoundError) as exc_info:
            await service.transfer(a, ghost, 100, "rent")

        assert isinstance(exc_info.value, NotFoundError)
        assert exc_info.value.role == "target"
        assert await stored_amount(store, "a") == "1000 ₸"
        assert await store.query("transactions") == []
        assert AuditEventType.TRANSFER_FAILED in _event_types(audit_storage)

        await service.drain_notifications()
        assert notifier.messages == []

    async def test_missing_source(self, store, service):
        b = await seed_category(store, "b", "B", "500 ₸")
        with pytest.raises(CategoryNotFoundError) as exc_info:
            await service.transfer(Category(id="gone", title="Gone"), b, 100, "rent")
        assert exc_info.value.role == "source"
        assert await stored_amount(store, "b") == "500 ₸"

    async def test_store_error_is_reraised(self, store, service, audit_storage):
        a = await seed_category(store, "a", "A", "1000 ₸")
        b = await seed_category(store, "b", "B", "500 ₸")

        async def aborted(fn):
            raise TransactionAbortedError("still conflicting")

        store.run_transaction = aborted

        with pytest.raises(TransactionAbortedError):
            await service.transfer(a, b, 100, "rent")
        failed = [e for e in audit_storage.events if e.event_type is AuditEventType.TRANSFER_FAILED]
        assert failed[0].error_message == "still conflicting"


class TestTransferNotifications:
    """The notification is a post-commit side effect."""

    async def test_message_sent_after_commit(self, store, service, notifier):
        a = await seed_category(store, "a", "Cash box", "1000 ₸")
        b = await seed_category(store, "b", "Warehouse", "0 ₸")

        await service.transfer(a, b, 200, "rent")
        await service.drain_notifications()

        assert notifier.messages == [
            "🔴 Expense\nFrom: Cash box\nTo: Warehouse\nAmount: 200 ₸\nComment: rent"
        ]

    async def test_notification_failure_does_not_fail_transfer(self, store, audit_logger, audit_storage):
        notifier = RecordingNotifier(fail=True)
        engine = TransferEngine(store, notifier=notifier, audit_logger=audit_logger)
        a = await seed_category(store, "a", "A", "1000 ₸")
        b = await seed_category(store, "b", "B", "500 ₸")

        receipt = await engine.transfer(a, b, 200, "rent")
        await engine.drain_notifications()

        assert receipt.source_balance == Decimal(800)
        assert await stored_amount(store, "a") == "800 ₸"
        assert AuditEventType.NOTIFICATION_FAILED in _event_types(audit_storage)

    async def test_retried_transaction_notifies_once(self, store, service, notifier):
        a = await seed_category(store, "a", "A", "1000 ₸")
        b = await seed_category(store, "b", "B", "500 ₸")
        original = store.run_transaction
        interfered = False

        async def interfering(fn):
            async def body(tx):
                nonlocal interfered
                result = await fn(tx)
                if not interfered:
                    interfered = True
                    await store.update("categories", "a", {"amount": "2000 ₸"})
                return result
            return await original(body)

        store.run_transaction = interfering

        await service.transfer(a, b, 200, "rent")
        await service.drain_notifications()

        assert store.conflicts == 1
        assert await stored_amount(store, "a") == f"1{NBSP}800 ₸"
        assert len(notifier.messages) == 1
        assert len(await store.query("transactions")) == 2

    async def test_without_notifier(self, store, audit_logger):
        engine = TransferEngine(store, audit_logger=audit_logger)
        a = await seed_category(store, "a", "A", "1000 ₸")
        b = await seed_category(store, "b", "B", "500 ₸")

        await engine.transfer(a, b, 1, "tip")
        await engine.drain_notifications()
        assert await stored_amount(store, "b") == "501 ₸"
