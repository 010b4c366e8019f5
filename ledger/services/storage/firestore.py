"""
Firestore Storage Implementation

DESIGN DECISION: Firestore is the production backend because it provides
exactly the primitives the ledger needs:
1. Serializable read-modify-write transactions, retried by the SDK when a
   document read by the transaction changes underneath it
2. Atomic write batches
3. Server-assigned commit timestamps
4. Realtime listeners for the read side

TRADEOFFS:
- Listeners are only available on the synchronous client; they run on a
  background thread and are bridged into asyncio queues here.
- Transactions must perform every read before the first write.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog
from google.api_core import exceptions as google_exceptions
from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter as FirestoreFieldFilter
from google.oauth2.service_account import Credentials
from tenacity import retry, stop_after_attempt, wait_exponential

from ledger.config import FirestoreSettings, get_settings
from ledger.services.storage.interface import (
    SERVER_TIMESTAMP,
    ChangeKind,
    ConnectionError,
    Document,
    DocumentChange,
    FieldFilter,
    LedgerStore,
    NotFoundError,
    StoreError,
    StoreTimeoutError,
    StoreTransaction,
    Subscription,
    TransactionAbortedError,
    WriteBatch,
)


T = TypeVar("T")

logger = structlog.get_logger(__name__)

SCOPES = ["https://www.googleapis.com/auth/datastore"]

_CHANGE_KINDS = {
    "ADDED": ChangeKind.ADDED,
    "MODIFIED": ChangeKind.MODIFIED,
    "REMOVED": ChangeKind.REMOVED,
}


def _to_native(data: dict[str, Any]) -> dict[str, Any]:
    """Swap our timestamp sentinel for the SDK's."""
    return {
        name: firestore.SERVER_TIMESTAMP if value is SERVER_TIMESTAMP else value
        for name, value in data.items()
    }


def _translate(error: Exception, action: str) -> StoreError:
    """Map google-api-core errors onto the storage error taxonomy."""
    if isinstance(error, google_exceptions.NotFound):
        return NotFoundError(f"{action}: {error}")
    if isinstance(error, google_exceptions.Aborted):
        return TransactionAbortedError(f"{action}: {error}")
    if isinstance(error, google_exceptions.DeadlineExceeded):
        return StoreTimeoutError(f"{action}: {error}")
    if isinstance(error, (google_exceptions.ServiceUnavailable, google_exceptions.Unauthenticated)):
        return ConnectionError(f"{action}: {error}")
    return StoreError(f"{action}: {error}")


class FirestoreClient:
    """
    Low-level Firestore client wrapper.

    Handles authentication and holds both the async client (all reads and
    writes) and the sync client (realtime listeners only).
    """

    def __init__(self, settings: Optional[FirestoreSettings] = None):
        self._settings = settings or get_settings().firestore
        self._async_client: Optional[firestore.AsyncClient] = None
        self._sync_client: Optional[firestore.Client] = None
        self._credentials: Optional[Credentials] = None

    @property
    def settings(self) -> FirestoreSettings:
        return self._settings

    def _load_credentials(self) -> Optional[Credentials]:
        if not self._settings.credentials_path:
            return None
        if self._credentials is None:
            try:
                self._credentials = Credentials.from_service_account_file(
                    self._settings.credentials_path,
                    scopes=SCOPES,
                )
            except FileNotFoundError:
                raise ConnectionError(
                    f"Firestore credentials file not found: {self._settings.credentials_path}"
                )
        return self._credentials

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def connect(self) -> firestore.AsyncClient:
        """
        Build the async client.

        Uses service account credentials when configured, application
        default credentials otherwise.
        """
        if self._async_client is None:
            try:
                self._async_client = firestore.AsyncClient(
                    project=self._settings.project_id,
                    credentials=self._load_credentials(),
                    database=self._settings.database,
                )
            except ConnectionError:
                raise
            except Exception as e:
                raise ConnectionError(f"Failed to connect to Firestore: {e}")
        return self._async_client

    def listener_client(self) -> firestore.Client:
        """Sync client used for on_snapshot listeners."""
        if self._sync_client is None:
            try:
                self._sync_client = firestore.Client(
                    project=self._settings.project_id,
                    credentials=self._load_credentials(),
                    database=self._settings.database,
                )
            except Exception as e:
                raise ConnectionError(f"Failed to connect to Firestore: {e}")
        return self._sync_client

    def close(self) -> None:
        """Drop both clients; the next call reconnects."""
        self._async_client = None
        self._sync_client = None


def _apply_filters(query, filters: Optional[list[FieldFilter]]):
    for f in filters or ():
        value = list(f.value) if f.op == "in" else f.value
        query = query.where(filter=FirestoreFieldFilter(f.field, f.op, value))
    return query


class FirestoreLedgerStore(LedgerStore):
    """
    Firestore implementation of the ledger store.

    Categories, transactions and products are plain documents in their
    configured collections; ids are Firestore auto-ids.
    """

    def __init__(
        self,
        client: Optional[FirestoreClient] = None,
        max_attempts: int = 5,
    ):
        self._client = client or FirestoreClient()
        self._max_attempts = max_attempts
        self._subscriptions: list["_FirestoreSubscription"] = []

    @property
    def _db(self) -> firestore.AsyncClient:
        return self._client.connect()

    def new_id(self, collection: str) -> str:
        return self._db.collection(collection).document().id

    async def get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        try:
            snapshot = await self._db.collection(collection).document(doc_id).get()
        except google_exceptions.GoogleAPICallError as e:
            raise _translate(e, f"Failed to read {collection}/{doc_id}")
        return snapshot.to_dict() if snapshot.exists else None

    async def create(
        self,
        collection: str,
        data: dict[str, Any],
        doc_id: Optional[str] = None,
    ) -> str:
        ref = self._db.collection(collection).document(doc_id) if doc_id \
            else self._db.collection(collection).document()
        try:
            await ref.set(_to_native(data))
        except google_exceptions.GoogleAPICallError as e:
            raise _translate(e, f"Failed to write {collection}/{ref.id}")
        return ref.id

    async def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        try:
            await self._db.collection(collection).document(doc_id).update(_to_native(fields))
        except google_exceptions.GoogleAPICallError as e:
            raise _translate(e, f"Failed to update {collection}/{doc_id}")

    async def delete(self, collection: str, doc_id: str) -> None:
        try:
            await self._db.collection(collection).document(doc_id).delete()
        except google_exceptions.GoogleAPICallError as e:
            raise _translate(e, f"Failed to delete {collection}/{doc_id}")

    async def query(
        self,
        collection: str,
        filters: Optional[list[FieldFilter]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[Document]:
        query = _apply_filters(self._db.collection(collection), filters)
        if order_by:
            direction = firestore.Query.DESCENDING if descending else firestore.Query.ASCENDING
            query = query.order_by(order_by, direction=direction)
        if limit is not None:
            query = query.limit(limit)
        try:
            return [
                Document(id=snapshot.id, data=snapshot.to_dict() or {})
                async for snapshot in query.stream()
            ]
        except google_exceptions.GoogleAPICallError as e:
            raise _translate(e, f"Failed to query {collection}")

    async def run_transaction(
        self,
        fn: Callable[[StoreTransaction], Awaitable[T]],
    ) -> T:
        db = self._db

        @firestore.async_transactional
        async def body(transaction) -> T:
            return await fn(_FirestoreTransaction(db, transaction))

        try:
            # The SDK re-runs `body` on contention up to max_attempts times
            return await body(db.transaction(max_attempts=self._max_attempts))
        except google_exceptions.GoogleAPICallError as e:
            raise _translate(e, "Transaction failed")
        except ValueError as e:
            # Raised by the SDK when the retry budget is exhausted
            if "max_attempts" in str(e) or "Failed to commit" in str(e):
                raise TransactionAbortedError(str(e)) from e
            raise

    def batch(self) -> WriteBatch:
        return _FirestoreWriteBatch(self._db)

    async def subscribe(
        self,
        collection: str,
        filters: Optional[list[FieldFilter]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> Subscription:
        client = self._client.listener_client()
        query = _apply_filters(client.collection(collection), filters)
        if order_by:
            direction = firestore.Query.DESCENDING if descending else firestore.Query.ASCENDING
            query = query.order_by(order_by, direction=direction)
        subscription = _FirestoreSubscription(asyncio.get_running_loop(), self)
        subscription.watch = query.on_snapshot(subscription.on_snapshot)
        self._subscriptions.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: "_FirestoreSubscription") -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    async def close(self) -> None:
        for subscription in list(self._subscriptions):
            await subscription.close()
        self._client.close()


class _FirestoreTransaction(StoreTransaction):

    def __init__(self, db: firestore.AsyncClient, transaction):
        self._db = db
        self._transaction = transaction

    async def get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        ref = self._db.collection(collection).document(doc_id)
        snapshot = await ref.get(transaction=self._transaction)
        return snapshot.to_dict() if snapshot.exists else None

    async def query(
        self,
        collection: str,
        filters: Optional[list[FieldFilter]] = None,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[Document]:
        query = _apply_filters(self._db.collection(collection), filters)
        if order_by:
            query = query.order_by(order_by)
        if limit is not None:
            query = query.limit(limit)
        return [
            Document(id=snapshot.id, data=snapshot.to_dict() or {})
            async for snapshot in query.stream(transaction=self._transaction)
        ]

    def set(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        self._transaction.set(self._db.collection(collection).document(doc_id), _to_native(data))

    def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        self._transaction.update(self._db.collection(collection).document(doc_id), _to_native(fields))

    def delete(self, collection: str, doc_id: str) -> None:
        self._transaction.delete(self._db.collection(collection).document(doc_id))


class _FirestoreWriteBatch(WriteBatch):

    def __init__(self, db: firestore.AsyncClient):
        self._db = db
        self._batch = db.batch()

    def set(self, collection: str, doc_id: str, data: dict[str, Any]) -> WriteBatch:
        self._batch.set(self._db.collection(collection).document(doc_id), _to_native(data))
        return self

    def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> WriteBatch:
        self._batch.update(self._db.collection(collection).document(doc_id), _to_native(fields))
        return self

    def delete(self, collection: str, doc_id: str) -> WriteBatch:
        self._batch.delete(self._db.collection(collection).document(doc_id))
        return self

    async def commit(self) -> None:
        try:
            await self._batch.commit()
        except google_exceptions.GoogleAPICallError as e:
            raise _translate(e, "Batch commit failed")


_CLOSED = object()


class _FirestoreSubscription(Subscription):
    """
    Bridges a Firestore Watch (background thread) into an asyncio queue.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, store: FirestoreLedgerStore):
        self._loop = loop
        self._store = store
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self.watch = None

    def on_snapshot(self, snapshots, changes, read_time) -> None:
        # Runs on the listener thread
        delta = [
            DocumentChange(
                _CHANGE_KINDS[change.type.name],
                Document(id=change.document.id, data=change.document.to_dict() or {}),
            )
            for change in changes
        ]
        if not self._closed:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, delta)

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
        if self.watch is not None:
            self.watch.unsubscribe()
        self._store._unsubscribe(self)
        self._queue.put_nowait(_CLOSED)
        logger.debug("subscription_closed")
