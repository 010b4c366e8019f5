"""
Ledger Service

Ties the store, the engines, the notifier and the audit trail together and
is the single entry point callers use.

DESIGN DECISION: The service enforces the boundaries:
- Only TransferEngine and DeletionEngine write categories and transactions
- Read-side queries never feed balance math
- Every operation is audited, notification failures included

Seeding categories is the one out-of-band write: it replaces whole
category documents in one batch and is meant for setup, not for moving
money.
"""

from typing import Iterable, Optional
from uuid import UUID

import structlog

from ledger.audit import AuditLogger, configure_logging
from ledger.codec import CURRENCY_SYMBOL, format_amount
from ledger.config import Settings, get_settings
from ledger.engine import DeletionEngine, TransferEngine
from ledger.models.ledger import (
    Attachment,
    Category,
    DeletionReceipt,
    TransferFlags,
    TransferReceipt,
)
from ledger.queries import CategoryBoard, LedgerQueries
from ledger.services.notify import Notifier, NullNotifier, TelegramNotifier
from ledger.services.storage import (
    AuditStorageInterface,
    InMemoryLedgerStore,
    LedgerStore,
)


logger = structlog.get_logger(__name__)

DEFAULT_COLLECTIONS = {
    "categories": "categories",
    "transactions": "transactions",
    "products": "products",
}


class LedgerService:
    """
    Facade over the ledger engines and queries.

    Args:
        store: Ledger store backend
        notifier: Post-commit notification channel (None sends nothing)
        audit_logger: Audit trail; local-only when omitted
        currency_symbol: Glyph used in stored balances and messages
        collections: Overrides for the categories/transactions/products
                     collection names
    """

    def __init__(
        self,
        store: LedgerStore,
        notifier: Optional[Notifier] = None,
        audit_logger: Optional[AuditLogger] = None,
        currency_symbol: str = CURRENCY_SYMBOL,
        collections: Optional[dict[str, str]] = None,
    ):
        self._store = store
        self._notifier = notifier
        self._audit = audit_logger or AuditLogger()
        self._symbol = currency_symbol
        self._collections = {**DEFAULT_COLLECTIONS, **(collections or {})}

        engine_options = dict(
            notifier=notifier,
            audit_logger=self._audit,
            currency_symbol=currency_symbol,
            categories_collection=self._collections["categories"],
            transactions_collection=self._collections["transactions"],
        )
        self._transfers = TransferEngine(store, **engine_options)
        self._deletions = DeletionEngine(store, **engine_options)
        self._queries = LedgerQueries(
            store,
            categories_collection=self._collections["categories"],
            transactions_collection=self._collections["transactions"],
            products_collection=self._collections["products"],
        )

    @property
    def store(self) -> LedgerStore:
        return self._store

    @property
    def audit_logger(self) -> AuditLogger:
        return self._audit

    @property
    def queries(self) -> LedgerQueries:
        return self._queries

    async def transfer(
        self,
        source: Category,
        target: Category,
        amount,
        description: str,
        flags: Optional[TransferFlags] = None,
        photos: Optional[list[Attachment]] = None,
        correlation_id: Optional[UUID] = None,
    ) -> TransferReceipt:
        """Move money between two categories. See TransferEngine.transfer."""
        return await self._transfers.transfer(
            source,
            target,
            amount,
            description,
            flags=flags,
            photos=photos,
            correlation_id=correlation_id,
        )

    async def delete_transaction(
        self,
        transaction_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> DeletionReceipt:
        """Delete a transfer pair from either leg. See DeletionEngine.delete_transaction."""
        return await self._deletions.delete_transaction(
            transaction_id,
            correlation_id=correlation_id,
        )

    def category_board(self, include_hidden: bool = False) -> CategoryBoard:
        """A live board over the categories; use it with `async with`."""
        return CategoryBoard(
            self._store,
            collection=self._collections["categories"],
            include_hidden=include_hidden,
        )

    async def seed_categories(self, categories: Iterable[Category]) -> int:
        """
        Write category documents in one atomic batch.

        Existing documents with the same ids are replaced.

        Returns:
            Number of categories written
        """
        categories = list(categories)
        batch = self._store.batch()
        for category in categories:
            batch.set(
                self._collections["categories"],
                category.id,
                category.to_document(format_amount(category.balance, self._symbol)),
            )
        await batch.commit()

        logger.info("categories_seeded", count=len(categories))
        await self._audit.log_categories_seeded(len(categories))
        return len(categories)

    async def drain_notifications(self) -> None:
        await self._transfers.drain_notifications()
        await self._deletions.drain_notifications()

    async def aclose(self) -> None:
        """Flush notifications, then release the notifier and the store."""
        await self.drain_notifications()
        if self._notifier is not None:
            await self._notifier.close()
        await self._store.close()


def _build_notifier(settings: Settings) -> Notifier:
    if not settings.ledger.notifications_enabled:
        return NullNotifier()
    try:
        return TelegramNotifier(settings.telegram)
    except Exception as e:
        # Telegram not configured - messages only reach the log
        logger.warning("notifier_not_configured", error=str(e))
        return NullNotifier()


def _build_audit_logger(settings: Settings) -> AuditLogger:
    if not settings.ledger.audit_to_sheets:
        return AuditLogger()
    try:
        from ledger.services.storage.google_sheets import (
            GoogleSheetsAuditStorage,
            GoogleSheetsClient,
        )

        storage: AuditStorageInterface = GoogleSheetsAuditStorage(
            GoogleSheetsClient(settings.google_sheets)
        )
        return AuditLogger(storage)
    except Exception as e:
        logger.warning("audit_storage_not_configured", error=str(e))
        return AuditLogger()  # Local-only logging


def create_ledger_service(settings: Optional[Settings] = None) -> LedgerService:
    """
    Factory function to build a LedgerService from configuration.

    The memory backend needs no credentials; the firestore backend reads
    FIRESTORE_* settings and fails here if they are missing.
    """
    settings = settings or get_settings()
    ledger_settings = settings.ledger
    configure_logging(ledger_settings.log_level)

    collections = dict(DEFAULT_COLLECTIONS)
    if ledger_settings.backend == "firestore":
        from ledger.services.storage.firestore import FirestoreClient, FirestoreLedgerStore

        firestore_settings = settings.firestore
        store: LedgerStore = FirestoreLedgerStore(
            FirestoreClient(firestore_settings),
            max_attempts=ledger_settings.transaction_max_attempts,
        )
        collections = {
            "categories": firestore_settings.categories_collection,
            "transactions": firestore_settings.transactions_collection,
            "products": firestore_settings.products_collection,
        }
    else:
        store = InMemoryLedgerStore(
            max_attempts=ledger_settings.transaction_max_attempts,
            retry_wait=ledger_settings.transaction_retry_wait_seconds,
        )

    logger.info(
        "ledger_service_created",
        backend=ledger_settings.backend,
        environment=ledger_settings.app_environment,
    )
    return LedgerService(
        store,
        notifier=_build_notifier(settings),
        audit_logger=_build_audit_logger(settings),
        currency_symbol=ledger_settings.currency_symbol,
        collections=collections,
    )
