"""
Live category board.

Keeps an up-to-date, row-ordered view of the categories collection by
applying the deltas of a store subscription. Reading `categories` first
applies every change set already delivered. The board owns its
subscription: leaving the `async with` block (or calling close) ends it.
"""

from typing import AsyncIterator, Optional

import structlog

from ledger.models.ledger import Category
from ledger.services.storage import ChangeKind, DocumentChange, LedgerStore, Subscription


logger = structlog.get_logger(__name__)


class CategoryBoard:
    """
    Row-ordered live view of the categories.

    Usage:
        async with CategoryBoard(store) as board:
            async for categories in board.updates():
                render(categories)
    """

    def __init__(
        self,
        store: LedgerStore,
        collection: str = "categories",
        include_hidden: bool = False,
    ):
        self._store = store
        self._collection = collection
        self._include_hidden = include_hidden
        self._subscription: Optional[Subscription] = None
        self._categories: dict[str, Category] = {}

    @property
    def categories(self) -> list[Category]:
        """Current categories, ordered by row then id."""
        if self.is_open:
            for changes in self._subscription.pending():
                self.apply(changes)
        items = self._categories.values()
        if not self._include_hidden:
            items = [c for c in items if c.is_visible]
        return sorted(items, key=lambda c: (c.row, c.id))

    @property
    def is_open(self) -> bool:
        return self._subscription is not None and not self._subscription.closed

    def apply(self, changes: list[DocumentChange]) -> None:
        """Fold one change set into the board."""
        for change in changes:
            doc = change.document
            if change.kind is ChangeKind.REMOVED:
                self._categories.pop(doc.id, None)
                continue
            try:
                self._categories[doc.id] = Category.from_document(doc.id, doc.data)
            except ValueError as e:
                logger.warning("unreadable_category", category_id=doc.id, error=str(e))

    async def open(self) -> "CategoryBoard":
        """Subscribe and load the initial snapshot."""
        if self.is_open:
            return self
        self._subscription = await self._store.subscribe(self._collection, order_by="row")
        initial = await self._subscription.__anext__()
        self.apply(initial)
        return self

    async def refresh(self) -> list[Category]:
        """Wait for the next change set not yet applied, apply it and return the board."""
        if not self.is_open:
            raise RuntimeError("CategoryBoard is not open")
        self.apply(await self._subscription.__anext__())
        return self.categories

    async def updates(self) -> AsyncIterator[list[Category]]:
        """Yield the board after every change set until the board closes."""
        if not self.is_open:
            raise RuntimeError("CategoryBoard is not open")
        async for changes in self._subscription:
            self.apply(changes)
            yield self.categories

    async def close(self) -> None:
        if self._subscription is not None:
            await self._subscription.close()
            self._subscription = None

    async def __aenter__(self) -> "CategoryBoard":
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
