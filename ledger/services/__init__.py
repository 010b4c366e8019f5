"""Services package."""

from ledger.services.notify import (
    NotificationError,
    Notifier,
    NullNotifier,
    TelegramNotifier,
)
from ledger.services.storage import (
    AuditStorageInterface,
    ConflictError,
    ConnectionError,
    InMemoryAuditStorage,
    InMemoryLedgerStore,
    LedgerStore,
    NotFoundError,
    StoreError,
    TransactionAbortedError,
)

__all__ = [
    # Notification services
    "NotificationError",
    "Notifier",
    "NullNotifier",
    "TelegramNotifier",
    # Storage services
    "AuditStorageInterface",
    "ConflictError",
    "ConnectionError",
    "InMemoryAuditStorage",
    "InMemoryLedgerStore",
    "LedgerStore",
    "NotFoundError",
    "StoreError",
    "TransactionAbortedError",
]
