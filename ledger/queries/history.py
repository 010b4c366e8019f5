"""
Read-Side Queries

Everything here only reads. The engines never call into this module, and
nothing computed here is ever written back to the store.

DESIGN DECISION: The warehouse value is a derived figure.
It is computed from the products collection on demand and does not take
part in transfer or deletion atomicity.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, Optional, Union

import structlog
from pydantic import BaseModel, ValidationError

from ledger.codec import AmountFormatError
from ledger.models.ledger import (
    Category,
    CategoryKind,
    ExpenseLeg,
    IncomeLeg,
    Product,
    TransactionType,
    leg_from_document,
)
from ledger.services.storage import FieldFilter, LedgerStore


logger = structlog.get_logger(__name__)

Leg = Union[ExpenseLeg, IncomeLeg]


class LedgerTotals(BaseModel):
    """Absolute sums over a list of legs, as shown above a category history."""
    income: Decimal = Decimal(0)
    expense: Decimal = Decimal(0)
    salary: Decimal = Decimal(0)
    warehouse: Decimal = Decimal(0)


def summarize(legs: Iterable[Leg]) -> LedgerTotals:
    """
    Total a category's legs.

    Income and expense split by leg type. Salary and warehouse are extra
    views over the same legs: a salary leg or a leg with a waybill counts
    both there and in income/expense.
    """
    totals = LedgerTotals()
    for leg in legs:
        amount = abs(leg.amount)
        if leg.is_salary:
            totals.salary += amount
        if leg.waybill_number:
            totals.warehouse += amount
        if leg.transaction_type is TransactionType.INCOME:
            totals.income += amount
        else:
            totals.expense += amount
    return totals


def _in_month(value: Optional[datetime], month: date) -> bool:
    return value is not None and (value.year, value.month) == (month.year, month.month)


class LedgerQueries:
    """
    Read access to categories, transactions and inventory.

    Args:
        store: Ledger store to read from
    """

    def __init__(
        self,
        store: LedgerStore,
        categories_collection: str = "categories",
        transactions_collection: str = "transactions",
        products_collection: str = "products",
    ):
        self._store = store
        self._categories = categories_collection
        self._transactions = transactions_collection
        self._products = products_collection

    async def get_category(self, category_id: str) -> Optional[Category]:
        data = await self._store.get(self._categories, category_id)
        if data is None:
            return None
        return Category.from_document(category_id, data)

    async def list_categories(self, include_hidden: bool = False) -> list[Category]:
        """All categories ordered by their board row."""
        docs = await self._store.query(self._categories, order_by="row")
        categories = [Category.from_document(doc.id, doc.data) for doc in docs]
        if not include_hidden:
            categories = [c for c in categories if c.is_visible]
        return categories

    async def get_transaction(self, transaction_id: str) -> Optional[Leg]:
        data = await self._store.get(self._transactions, transaction_id)
        if data is None:
            return None
        return leg_from_document(transaction_id, data)

    async def category_history(
        self,
        category_id: str,
        month: Optional[date] = None,
        type_filter: Optional[TransactionType] = None,
    ) -> list[Leg]:
        """
        Legs of one category, newest first.

        Args:
            category_id: Owning category
            month: Keep only legs dated in this month (any day of it)
            type_filter: Keep only income or only expense legs
        """
        docs = await self._store.query(
            self._transactions,
            filters=[FieldFilter("categoryId", "==", category_id)],
            order_by="date",
            descending=True,
        )

        legs: list[Leg] = []
        for doc in docs:
            try:
                leg = leg_from_document(doc.id, doc.data)
            except ValidationError as e:
                logger.warning("unreadable_transaction", transaction_id=doc.id, error=str(e))
                continue
            if type_filter is not None and leg.transaction_type is not TransactionType(type_filter):
                continue
            if month is not None and not _in_month(leg.date, month):
                continue
            legs.append(leg)
        return legs

    async def category_totals(
        self,
        category_id: str,
        month: Optional[date] = None,
    ) -> LedgerTotals:
        return summarize(await self.category_history(category_id, month=month))

    async def warehouse_valuation(self) -> Decimal:
        """Sum of quantity x average purchase price over all products."""
        docs = await self._store.query(self._products)
        total = Decimal(0)
        for doc in docs:
            try:
                total += Product.from_document(doc.id, doc.data).value
            except AmountFormatError as e:
                logger.warning("unreadable_product", product_id=doc.id, error=str(e))
        return total

    async def display_balance(self, category: Category) -> Decimal:
        """
        Balance to show for a category.

        The warehouse shows its stock value instead of its ledger balance.
        """
        if category.kind is CategoryKind.WAREHOUSE:
            return await self.warehouse_valuation()
        return category.balance
