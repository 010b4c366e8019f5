"""
In-Memory Storage Implementation

Reference backend for tests and local development. It gives the same
guarantees the engines rely on from Firestore:

- Transactions use optimistic concurrency: every document (and every query
  result) read by a transaction body is re-checked at commit; if anything
  changed, the staged writes are dropped and the body runs again.
- Commits are applied in one step under a lock, so readers never see half
  of a transaction or batch.
- SERVER_TIMESTAMP resolves to one strictly increasing timestamp per commit.
- Every call yields to the event loop first, like a network round trip.
"""

import asyncio
import copy
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from itertools import count
from typing import Any, Awaitable, Callable, Optional, TypeVar
from uuid import UUID, uuid4

import structlog
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ledger.models.audit import AuditEvent
from ledger.services.storage.interface import (
    SERVER_TIMESTAMP,
    AuditStorageInterface,
    ChangeKind,
    ConflictError,
    Document,
    DocumentChange,
    FieldFilter,
    InvalidTransactionError,
    LedgerStore,
    NotFoundError,
    StoreError,
    StoreTransaction,
    Subscription,
    TransactionAbortedError,
    WriteBatch,
)


T = TypeVar("T")

_Key = tuple[str, str]

logger = structlog.get_logger(__name__)


@dataclass
class _Record:
    data: dict[str, Any]
    version: int


@dataclass(frozen=True)
class _Write:
    kind: str  # "set" | "update" | "delete"
    collection: str
    doc_id: str
    data: Optional[dict[str, Any]] = None


@dataclass(frozen=True)
class _QueryShape:
    collection: str
    filters: tuple[FieldFilter, ...]
    order_by: Optional[str]
    descending: bool
    limit: Optional[int]


def _order_key(field_name: Optional[str]):
    def key(doc: Document):
        if field_name is None:
            return (False, doc.id)
        value = doc.data.get(field_name)
        return (value is None, value, doc.id)
    return key


_CLOSED = object()


class InMemoryLedgerStore(LedgerStore):
    """
    Process-local document store with serializable transactions.

    Args:
        max_attempts: How many times a conflicting transaction body is run
        retry_wait: Base wait (seconds) between conflicting attempts
    """

    def __init__(self, max_attempts: int = 5, retry_wait: float = 0.0):
        self._docs: dict[_Key, _Record] = {}
        self._versions = count(1)
        self._commit_lock = asyncio.Lock()
        self._last_timestamp: Optional[datetime] = None
        self._subscriptions: list["_MemorySubscription"] = []
        self._max_attempts = max_attempts
        self._retry_wait = retry_wait
        self.conflicts = 0

    # -------------------------------------------------------------------------
    # Internal state helpers
    # -------------------------------------------------------------------------

    def _version_of(self, key: _Key) -> int:
        record = self._docs.get(key)
        return record.version if record else 0

    def _matching(self, shape: _QueryShape) -> list[tuple[Document, int]]:
        docs = [
            (Document(id=doc_id, data=record.data), record.version)
            for (collection, doc_id), record in self._docs.items()
            if collection == shape.collection
            and all(f.matches(record.data) for f in shape.filters)
        ]
        key = _order_key(shape.order_by)
        docs.sort(key=lambda pair: key(pair[0]), reverse=shape.descending)
        if shape.limit is not None:
            docs = docs[:shape.limit]
        return docs

    def _next_timestamp(self) -> datetime:
        now = datetime.now(timezone.utc)
        if self._last_timestamp is not None and now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return now

    @staticmethod
    def _resolve(data: dict[str, Any], timestamp: datetime) -> dict[str, Any]:
        return {
            name: timestamp if value is SERVER_TIMESTAMP else copy.deepcopy(value)
            for name, value in data.items()
        }

    def _apply(self, writes: list[_Write]) -> None:
        """
        Validate and apply a group of writes as one unit.

        Must be called with the commit lock held. Nothing is applied if any
        update targets a missing document.
        """
        timestamp = self._next_timestamp()
        staged: dict[_Key, Optional[dict[str, Any]]] = {}

        for write in writes:
            key = (write.collection, write.doc_id)
            if write.kind == "delete":
                staged[key] = None
            elif write.kind == "set":
                staged[key] = self._resolve(write.data or {}, timestamp)
            else:
                if key in staged:
                    base = staged[key]
                else:
                    record = self._docs.get(key)
                    base = record.data if record else None
                if base is None:
                    raise NotFoundError(f"No document to update: {write.collection}/{write.doc_id}")
                merged = dict(base)
                merged.update(self._resolve(write.data or {}, timestamp))
                staged[key] = merged

        changes: list[tuple[_Key, Optional[dict], Optional[dict]]] = []
        for key, data in staged.items():
            before = self._docs.get(key)
            if data is None:
                self._docs.pop(key, None)
            else:
                self._docs[key] = _Record(data=data, version=next(self._versions))
            changes.append((key, before.data if before else None, data))

        self._publish(changes)

    def _publish(self, changes: list[tuple[_Key, Optional[dict], Optional[dict]]]) -> None:
        for subscription in list(self._subscriptions):
            delta: list[DocumentChange] = []
            for (collection, doc_id), before, after in changes:
                if collection != subscription.shape.collection:
                    continue
                was = before is not None and subscription.matches(before)
                now = after is not None and subscription.matches(after)
                if was and now:
                    if before != after:
                        delta.append(DocumentChange(ChangeKind.MODIFIED, Document(doc_id, copy.deepcopy(after))))
                elif now:
                    delta.append(DocumentChange(ChangeKind.ADDED, Document(doc_id, copy.deepcopy(after))))
                elif was:
                    delta.append(DocumentChange(ChangeKind.REMOVED, Document(doc_id, copy.deepcopy(before))))
            if delta:
                subscription.deliver(delta)

    async def _commit(self, writes: list[_Write]) -> None:
        await asyncio.sleep(0)
        async with self._commit_lock:
            self._apply(writes)

    # -------------------------------------------------------------------------
    # LedgerStore
    # -------------------------------------------------------------------------

    def new_id(self, collection: str) -> str:
        return uuid4().hex[:20]

    async def get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        await asyncio.sleep(0)
        record = self._docs.get((collection, doc_id))
        return copy.deepcopy(record.data) if record else None

    async def create(
        self,
        collection: str,
        data: dict[str, Any],
        doc_id: Optional[str] = None,
    ) -> str:
        doc_id = doc_id or self.new_id(collection)
        await self._commit([_Write("set", collection, doc_id, data)])
        return doc_id

    async def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        await self._commit([_Write("update", collection, doc_id, fields)])

    async def delete(self, collection: str, doc_id: str) -> None:
        await self._commit([_Write("delete", collection, doc_id)])

    async def query(
        self,
        collection: str,
        filters: Optional[list[FieldFilter]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[Document]:
        await asyncio.sleep(0)
        shape = _QueryShape(collection, tuple(filters or ()), order_by, descending, limit)
        return [
            Document(id=doc.id, data=copy.deepcopy(doc.data))
            for doc, _ in self._matching(shape)
        ]

    async def run_transaction(
        self,
        fn: Callable[[StoreTransaction], Awaitable[T]],
    ) -> T:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=self._retry_wait, max=1),
            retry=retry_if_exception_type(ConflictError),
        )
        try:
            async for attempt in retrying:
                with attempt:
                    transaction = _MemoryTransaction(self)
                    result = await fn(transaction)
                    await asyncio.sleep(0)
                    async with self._commit_lock:
                        self._validate(transaction)
                        self._apply(transaction.writes)
        except RetryError as e:
            raise TransactionAbortedError(
                f"Transaction still conflicting after {self._max_attempts} attempts"
            ) from e.last_attempt.exception()
        return result

    def _validate(self, transaction: "_MemoryTransaction") -> None:
        for key, version in transaction.read_versions.items():
            if self._version_of(key) != version:
                self.conflicts += 1
                logger.debug("transaction_conflict", collection=key[0], doc_id=key[1])
                raise ConflictError(f"Document changed during transaction: {key[0]}/{key[1]}")
        for shape, snapshot in transaction.query_snapshots:
            current = tuple((doc.id, version) for doc, version in self._matching(shape))
            if current != snapshot:
                self.conflicts += 1
                logger.debug("transaction_conflict", collection=shape.collection, query=True)
                raise ConflictError(f"Query result changed during transaction: {shape.collection}")

    def batch(self) -> WriteBatch:
        return _MemoryWriteBatch(self)

    async def subscribe(
        self,
        collection: str,
        filters: Optional[list[FieldFilter]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> Subscription:
        await asyncio.sleep(0)
        shape = _QueryShape(collection, tuple(filters or ()), order_by, descending, None)
        subscription = _MemorySubscription(self, shape)
        initial = [
            DocumentChange(ChangeKind.ADDED, Document(doc.id, copy.deepcopy(doc.data)))
            for doc, _ in self._matching(shape)
        ]
        self._subscriptions.append(subscription)
        subscription.deliver(initial)
        return subscription

    def _unsubscribe(self, subscription: "_MemorySubscription") -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    async def close(self) -> None:
        for subscription in list(self._subscriptions):
            await subscription.close()


class _MemoryTransaction(StoreTransaction):
    """Buffers writes and records what the body read."""

    def __init__(self, store: InMemoryLedgerStore):
        self._store = store
        self.writes: list[_Write] = []
        self.read_versions: dict[_Key, int] = {}
        self.query_snapshots: list[tuple[_QueryShape, tuple[tuple[str, int], ...]]] = []

    def _ensure_readable(self) -> None:
        if self.writes:
            raise InvalidTransactionError("Transactions must do all reads before any writes")

    def _record_read(self, key: _Key, version: int) -> None:
        seen = self.read_versions.setdefault(key, version)
        if seen != version:
            # Two reads of one document disagree: the snapshot is already stale
            raise ConflictError(f"Document changed during transaction: {key[0]}/{key[1]}")

    async def get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        self._ensure_readable()
        await asyncio.sleep(0)
        key = (collection, doc_id)
        record = self._store._docs.get(key)
        self._record_read(key, record.version if record else 0)
        return copy.deepcopy(record.data) if record else None

    async def query(
        self,
        collection: str,
        filters: Optional[list[FieldFilter]] = None,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[Document]:
        self._ensure_readable()
        await asyncio.sleep(0)
        shape = _QueryShape(collection, tuple(filters or ()), order_by, False, limit)
        matches = self._store._matching(shape)
        self.query_snapshots.append(
            (shape, tuple((doc.id, version) for doc, version in matches))
        )
        for doc, version in matches:
            self._record_read((collection, doc.id), version)
        return [Document(id=doc.id, data=copy.deepcopy(doc.data)) for doc, _ in matches]

    def set(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        self.writes.append(_Write("set", collection, doc_id, data))

    def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        self.writes.append(_Write("update", collection, doc_id, fields))

    def delete(self, collection: str, doc_id: str) -> None:
        self.writes.append(_Write("delete", collection, doc_id))


class _MemoryWriteBatch(WriteBatch):

    def __init__(self, store: InMemoryLedgerStore):
        self._store = store
        self._writes: list[_Write] = []
        self._committed = False

    def set(self, collection: str, doc_id: str, data: dict[str, Any]) -> WriteBatch:
        self._writes.append(_Write("set", collection, doc_id, data))
        return self

    def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> WriteBatch:
        self._writes.append(_Write("update", collection, doc_id, fields))
        return self

    def delete(self, collection: str, doc_id: str) -> WriteBatch:
        self._writes.append(_Write("delete", collection, doc_id))
        return self

    async def commit(self) -> None:
        if self._committed:
            raise StoreError("Batch already committed")
        await self._store._commit(self._writes)
        self._committed = True


class _MemorySubscription(Subscription):

    def __init__(self, store: InMemoryLedgerStore, shape: _QueryShape):
        self._store = store
        self.shape = shape
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    def matches(self, data: dict[str, Any]) -> bool:
        return all(f.matches(data) for f in self.shape.filters)

    def deliver(self, changes: list[DocumentChange]) -> None:
        if not self._closed:
            if self.shape.order_by is not None:
                key = _order_key(self.shape.order_by)
                changes = sorted(changes, key=lambda change: key(change.document),
                                 reverse=self.shape.descending)
            self._queue.put_nowait(changes)

    async def __anext__(self) -> list[DocumentChange]:
        if self._closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    def pending(self) -> list[list[DocumentChange]]:
        items = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is _CLOSED:
                self._queue.put_nowait(_CLOSED)
                break
            items.append(item)
        return items

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._store._unsubscribe(self)
        self._queue.put_nowait(_CLOSED)


class InMemoryAuditStorage(AuditStorageInterface):
    """Keeps audit events in a list. Used in tests and local runs."""

    def __init__(self):
        self.events: list[AuditEvent] = []

    async def append_event(self, event: AuditEvent) -> bool:
        self.events.append(event)
        return True

    async def get_events_by_correlation_id(self, correlation_id: UUID) -> list[AuditEvent]:
        events = [e for e in self.events if e.correlation_id == correlation_id]
        return sorted(events, key=lambda e: e.timestamp)

    async def get_events_by_entity(self, entity_type: str, entity_id: str) -> list[AuditEvent]:
        events = [
            e for e in self.events
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]
        return sorted(events, key=lambda e: e.timestamp)

    async def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        return sorted(self.events, key=lambda e: e.timestamp, reverse=True)[:limit]
