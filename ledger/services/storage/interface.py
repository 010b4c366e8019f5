"""
Abstract Storage Interface

DESIGN DECISION: The ledger engines talk to a document store through this
interface only. This allows us to:
1. Run against Firestore in production
2. Use the in-memory store for tests and local development
3. Keep transfer/deletion logic independent of any SDK

The interface mirrors what a document database offers and nothing more:
keyed documents per collection, an atomic read-modify-write transaction,
an atomic write-only batch, filtered queries and change subscriptions.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from ledger.models.audit import AuditEvent


T = TypeVar("T")


class _ServerTimestamp:
    """Sentinel replaced by the store with its commit timestamp."""

    _instance: Optional["_ServerTimestamp"] = None

    def __new__(cls) -> "_ServerTimestamp":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


# =============================================================================
# QUERY AND CHANGE TYPES
# =============================================================================

@dataclass(frozen=True)
class FieldFilter:
    """Field predicate for queries and subscriptions. Supports '==' and 'in'."""
    field: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in ("==", "in"):
            raise ValueError(f"Unsupported filter operator: {self.op}")
        if self.op == "in" and not isinstance(self.value, (list, tuple)):
            raise ValueError("'in' filter needs a list of values")

    def matches(self, data: dict[str, Any]) -> bool:
        if self.field not in data:
            return False
        actual = data[self.field]
        if self.op == "==":
            return actual == self.value
        return actual in self.value


@dataclass(frozen=True)
class Document:
    """A stored document: its id and a copy of its fields."""
    id: str
    data: dict[str, Any] = field(default_factory=dict)


class ChangeKind(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


@dataclass(frozen=True)
class DocumentChange:
    """One delta delivered by a subscription."""
    kind: ChangeKind
    document: Document


# =============================================================================
# TRANSACTION / BATCH / SUBSCRIPTION HANDLES
# =============================================================================

class StoreTransaction(ABC):
    """
    Handle passed to the body of LedgerStore.run_transaction.

    All reads must happen before the first write. Writes are buffered and
    applied atomically when the body returns.
    """

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        """Read a document inside the transaction, None if it does not exist."""
        pass

    @abstractmethod
    async def query(
        self,
        collection: str,
        filters: Optional[list[FieldFilter]] = None,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[Document]:
        """Run a query inside the transaction."""
        pass

    @abstractmethod
    def set(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        """Stage a create-or-replace."""
        pass

    @abstractmethod
    def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        """Stage a partial update; the commit fails if the document is gone."""
        pass

    @abstractmethod
    def delete(self, collection: str, doc_id: str) -> None:
        """Stage a delete."""
        pass


class WriteBatch(ABC):
    """Write-only group of operations committed as one unit."""

    @abstractmethod
    def set(self, collection: str, doc_id: str, data: dict[str, Any]) -> "WriteBatch":
        pass

    @abstractmethod
    def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> "WriteBatch":
        pass

    @abstractmethod
    def delete(self, collection: str, doc_id: str) -> "WriteBatch":
        pass

    @abstractmethod
    async def commit(self) -> None:
        """Apply every staged write, or none of them."""
        pass


class Subscription(ABC):
    """
    A cancelable stream of change sets for one query.

    The first change set replays every current match as ADDED.
    Whoever opens a subscription owns it and must close it; using it as an
    async context manager does that automatically.
    """

    def __aiter__(self) -> "Subscription":
        return self

    @abstractmethod
    async def __anext__(self) -> list[DocumentChange]:
        pass

    @abstractmethod
    async def close(self) -> None:
        """Stop delivery. Pending iterators finish with StopAsyncIteration."""
        pass

    def pending(self) -> list[list[DocumentChange]]:
        """
        Take every change set already delivered, without waiting.

        Undelivered change sets queue up until the owner iterates or calls
        this, so a subscription that is never consumed keeps growing.
        """
        return []

    @property
    @abstractmethod
    def closed(self) -> bool:
        pass

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


# =============================================================================
# STORES
# =============================================================================

class LedgerStore(ABC):
    """
    Abstract interface for the ledger's document store.

    Any backend (Firestore, in-memory, ...) must implement these methods.
    """

    @abstractmethod
    def new_id(self, collection: str) -> str:
        """Generate a fresh document id without writing anything."""
        pass

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        """
        Read one document.

        Returns:
            A copy of the document's fields, or None if it does not exist
        """
        pass

    @abstractmethod
    async def create(
        self,
        collection: str,
        data: dict[str, Any],
        doc_id: Optional[str] = None,
    ) -> str:
        """
        Create (or replace) a document.

        Returns:
            The document id (generated when not given)
        """
        pass

    @abstractmethod
    async def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        """
        Merge fields into an existing document.

        Raises:
            NotFoundError: If the document doesn't exist
        """
        pass

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> None:
        """Delete a document. Deleting a missing document is not an error."""
        pass

    @abstractmethod
    async def query(
        self,
        collection: str,
        filters: Optional[list[FieldFilter]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[Document]:
        """List documents matching every filter."""
        pass

    @abstractmethod
    async def run_transaction(
        self,
        fn: Callable[[StoreTransaction], Awaitable[T]],
    ) -> T:
        """
        Run an atomic read-modify-write.

        The body may be executed more than once: when a document it read
        changed before commit, the store discards the staged writes and runs
        the body again. The body must therefore have no side effects outside
        the transaction handle.

        Returns:
            Whatever the last (committed) run of the body returned

        Raises:
            TransactionAbortedError: If conflicts persisted past the retry budget
            StoreError: For any other backend failure; nothing was written
        """
        pass

    @abstractmethod
    def batch(self) -> WriteBatch:
        """Start an atomic write-only batch."""
        pass

    @abstractmethod
    async def subscribe(
        self,
        collection: str,
        filters: Optional[list[FieldFilter]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> Subscription:
        """Open a change subscription for documents matching the filters."""
        pass

    async def close(self) -> None:
        """Release backend resources."""
        return None


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_correlation_id(self, correlation_id) -> list[AuditEvent]:
        """All events of one user action, in chronological order."""
        pass

    @abstractmethod
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        """All events for one entity, in chronological order."""
        pass

    @abstractmethod
    async def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        """Most recent events, newest first."""
        pass


# =============================================================================
# ERRORS
# =============================================================================

class StoreError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StoreError):
    """Entity not found in storage."""
    pass


class ConflictError(StoreError):
    """A document read by a transaction changed before it could commit."""
    pass


class TransactionAbortedError(StoreError):
    """A transaction kept conflicting until the retry budget ran out."""
    pass


class InvalidTransactionError(StoreError):
    """The transaction body broke the read-before-write rule."""
    pass


class ConnectionError(StoreError):
    """Could not connect to storage backend."""
    pass


class StoreTimeoutError(StoreError):
    """The backend did not answer in time."""
    pass
