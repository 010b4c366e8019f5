"""
Storage Services Package

Abstract document-store interface for the ledger, an in-memory backend,
and the audit journal storages. The Firestore and Google Sheets backends
are imported from their modules directly so the Google SDKs only load
when those backends are used.
"""

from ledger.services.storage.interface import (
    SERVER_TIMESTAMP,
    AuditStorageInterface,
    ChangeKind,
    ConflictError,
    ConnectionError,
    Document,
    DocumentChange,
    FieldFilter,
    InvalidTransactionError,
    LedgerStore,
    NotFoundError,
    StoreError,
    StoreTimeoutError,
    StoreTransaction,
    Subscription,
    TransactionAbortedError,
    WriteBatch,
)
from ledger.services.storage.memory import (
    InMemoryAuditStorage,
    InMemoryLedgerStore,
)

__all__ = [
    "SERVER_TIMESTAMP",
    # Interfaces
    "AuditStorageInterface",
    "LedgerStore",
    "StoreTransaction",
    "Subscription",
    "WriteBatch",
    # Query / change types
    "ChangeKind",
    "Document",
    "DocumentChange",
    "FieldFilter",
    # Exceptions
    "ConflictError",
    "ConnectionError",
    "InvalidTransactionError",
    "NotFoundError",
    "StoreError",
    "StoreTimeoutError",
    "TransactionAbortedError",
    # In-memory implementation
    "InMemoryAuditStorage",
    "InMemoryLedgerStore",
]
