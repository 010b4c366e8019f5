"""Shared fixtures: an in-memory store, a recording notifier and audit trail."""

from typing import Any, Optional

import pytest

from ledger.audit import AuditLogger
from ledger.models.ledger import Category
from ledger.orchestrator import LedgerService
from ledger.services.notify import NotificationError, Notifier
from ledger.services.storage import InMemoryAuditStorage, InMemoryLedgerStore


class RecordingNotifier(Notifier):
    """Keeps sent messages; raises NotificationError when told to fail."""

    channel = "test"

    def __init__(self, fail: bool = False):
        self.messages: list[str] = []
        self.fail = fail
        self.closed = False

    async def send(self, message: str) -> None:
        if self.fail:
            raise NotificationError("channel down")
        self.messages.append(message)

    async def close(self) -> None:
        self.closed = True


async def seed_category(
    store: InMemoryLedgerStore,
    category_id: str,
    title: str,
    amount: Any = "0 ₸",
    row: int = 1,
    **extra: Any,
) -> Category:
    data = {"title": title, "amount": amount, "row": row, **extra}
    await store.create("categories", data, doc_id=category_id)
    return Category.from_document(category_id, data)


async def stored_amount(store: InMemoryLedgerStore, category_id: str) -> Optional[str]:
    doc = await store.get("categories", category_id)
    return doc["amount"] if doc else None


@pytest.fixture
def store() -> InMemoryLedgerStore:
    return InMemoryLedgerStore()


@pytest.fixture
def audit_storage() -> InMemoryAuditStorage:
    return InMemoryAuditStorage()


@pytest.fixture
def audit_logger(audit_storage) -> AuditLogger:
    return AuditLogger(audit_storage)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def service(store, notifier, audit_logger) -> LedgerService:
    return LedgerService(store, notifier=notifier, audit_logger=audit_logger)
