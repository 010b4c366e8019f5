"""
Deletion Engine

Removes a transfer pair starting from either of its legs and reverses its
effect on both categories.

DESIGN DECISION: Deletion runs inside a store transaction, not a blind
write batch. The leg, its counterpart and both balances are read in the
same transaction that deletes and updates them, so a deletion racing a
transfer on the same category is serialized by the store instead of
overwriting the other operation's balance.

Degraded paths (the operation still succeeds):
- No counterpart leg: only the target leg is removed and reversed
- Several counterpart legs: the first by id is used, IntegrityWarning emitted
- Owning category gone: the leg is removed, that balance is left alone
"""

import warnings
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, Union
from uuid import UUID

import pydantic
import structlog

from ledger.audit import AuditLogger, create_correlation_id
from ledger.codec import CURRENCY_SYMBOL, format_amount, parse_amount, round_amount
from ledger.engine.errors import (
    CorruptTransactionError,
    IntegrityWarning,
    TransactionNotFoundError,
    ValidationError,
)
from ledger.engine.notifications import NotificationDispatcher
from ledger.engine.validation import validate_transaction_id
from ledger.models.ledger import (
    DeletionReceipt,
    ExpenseLeg,
    IncomeLeg,
    TransactionType,
    leg_from_document,
)
from ledger.services.notify import Notifier, format_deletion_message
from ledger.services.storage import (
    SERVER_TIMESTAMP,
    FieldFilter,
    LedgerStore,
    StoreTransaction,
)


logger = structlog.get_logger(__name__)

Leg = Union[ExpenseLeg, IncomeLeg]


def _read_leg(doc_id: str, data: dict) -> Leg:
    """
    Parse a stored leg for deletion.

    Legs written before `type` was recorded, or with a type other than
    expense, are reversed as income.
    """
    try:
        return leg_from_document(doc_id, data)
    except pydantic.ValidationError as e:
        if data.get("type") == TransactionType.EXPENSE.value:
            raise CorruptTransactionError(doc_id, str(e)) from e
        original_error = e

    logger.warning("untyped_leg", transaction_id=doc_id, stored_type=data.get("type"))
    try:
        return leg_from_document(doc_id, {**data, "type": TransactionType.INCOME.value})
    except pydantic.ValidationError as e:
        raise CorruptTransactionError(doc_id, str(e)) from original_error


@dataclass
class _DeletionPlan:
    """What one run of the transaction body decided to do."""
    leg: Leg
    counterpart: Optional[Leg]
    candidate_ids: list[str]
    balances: dict[str, Decimal]
    missing_categories: list[tuple[str, str]] = field(default_factory=list)

    @property
    def deleted_ids(self) -> list[str]:
        ids = [self.leg.id]
        if self.counterpart is not None:
            ids.append(self.counterpart.id)
        return ids


class DeletionEngine:
    """
    Deletes transfer pairs.

    Args:
        store: Ledger store holding categories and transactions
        notifier: Channel for post-commit messages (None disables them)
        audit_logger: Audit trail; a local-only logger when omitted
        currency_symbol: Glyph written into formatted balances
    """

    def __init__(
        self,
        store: LedgerStore,
        notifier: Optional[Notifier] = None,
        audit_logger: Optional[AuditLogger] = None,
        currency_symbol: str = CURRENCY_SYMBOL,
        categories_collection: str = "categories",
        transactions_collection: str = "transactions",
    ):
        self._store = store
        self._audit = audit_logger or AuditLogger()
        self._notifications = NotificationDispatcher(notifier, self._audit)
        self._symbol = currency_symbol
        self._categories = categories_collection
        self._transactions = transactions_collection

    async def _find_counterpart(
        self,
        tx: StoreTransaction,
        leg: Leg,
    ) -> tuple[Optional[Leg], list[str]]:
        """
        Locate the other leg of `leg`'s pair.

        Either leg may be the one being deleted, so both the leg's own id
        and its pair id are matched against relatedTransactionId.
        """
        matches = await tx.query(
            self._transactions,
            filters=[FieldFilter("relatedTransactionId", "in", leg.link_ids)],
        )
        candidates = sorted(
            (doc for doc in matches if doc.id != leg.id),
            key=lambda doc: doc.id,
        )
        if not candidates:
            return None, []
        first = candidates[0]
        return _read_leg(first.id, first.data), [doc.id for doc in candidates]

    async def _plan(self, tx: StoreTransaction, transaction_id: str) -> _DeletionPlan:
        data = await tx.get(self._transactions, transaction_id)
        if data is None:
            raise TransactionNotFoundError(transaction_id)
        leg = _read_leg(transaction_id, data)

        counterpart, candidate_ids = await self._find_counterpart(tx, leg)
        legs = [leg] if counterpart is None else [leg, counterpart]

        category_docs: dict[str, Optional[dict]] = {}
        for item in legs:
            if item.category_id and item.category_id not in category_docs:
                category_docs[item.category_id] = await tx.get(self._categories, item.category_id)

        balances: dict[str, Decimal] = {}
        missing: list[tuple[str, str]] = []
        for item in legs:
            doc = category_docs.get(item.category_id)
            if doc is None:
                missing.append((item.id, item.category_id))
                continue
            current = balances.get(item.category_id)
            if current is None:
                current = parse_amount(doc.get("amount", 0))
            balances[item.category_id] = round_amount(current + item.reversal())

        # Writes only after every read
        for category_id, balance in balances.items():
            tx.update(self._categories, category_id, {
                "amount": format_amount(balance, self._symbol),
                "updatedAt": SERVER_TIMESTAMP,
            })
        for item in legs:
            tx.delete(self._transactions, item.id)

        return _DeletionPlan(
            leg=leg,
            counterpart=counterpart,
            candidate_ids=candidate_ids,
            balances=balances,
            missing_categories=missing,
        )

    async def delete_transaction(
        self,
        transaction_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> DeletionReceipt:
        """
        Delete a leg and its counterpart, restoring both balances.

        Raises:
            ValidationError: Empty transaction id
            TransactionNotFoundError: No such transaction, nothing was written
            StoreError: The store transaction failed, nothing was written
        """
        correlation_id = correlation_id or create_correlation_id()
        log = logger.bind(correlation_id=str(correlation_id), transaction_id=transaction_id)

        try:
            validate_transaction_id(transaction_id)
            plan = await self._store.run_transaction(
                lambda tx: self._plan(tx, transaction_id)
            )
        except ValidationError as e:
            log.warning("deletion_rejected", error=str(e))
            await self._audit.log_deletion_failed(
                transaction_id=str(transaction_id),
                error=e,
                correlation_id=correlation_id,
            )
            raise
        except Exception as e:
            log.error("deletion_failed", error_type=type(e).__name__, error=str(e))
            await self._audit.log_deletion_failed(
                transaction_id=transaction_id,
                error=e,
                correlation_id=correlation_id,
            )
            raise

        await self._report(plan, log, correlation_id)

        self._notifications.schedule(
            format_deletion_message(
                plan.leg.from_user,
                plan.leg.to_user,
                plan.leg.amount,
                plan.leg.description,
                self._symbol,
            ),
            correlation_id,
        )

        return DeletionReceipt(
            transaction_id=transaction_id,
            counterpart_id=plan.counterpart.id if plan.counterpart else None,
            deleted_ids=plan.deleted_ids,
            balances=plan.balances,
        )

    async def _report(self, plan: _DeletionPlan, log, correlation_id: UUID) -> None:
        """Log the committed deletion and every degraded path it took."""
        leg_id = plan.leg.id

        if len(plan.candidate_ids) > 1:
            message = (
                f"Transaction {leg_id} has {len(plan.candidate_ids)} counterpart legs "
                f"({', '.join(plan.candidate_ids)}); deleted {plan.candidate_ids[0]}"
            )
            warnings.warn(IntegrityWarning(message), stacklevel=3)
            log.warning("multiple_counterparts", candidate_ids=plan.candidate_ids)
            await self._audit.log_integrity_warning(
                transaction_id=leg_id,
                candidate_ids=plan.candidate_ids,
                chosen_id=plan.candidate_ids[0],
                correlation_id=correlation_id,
            )

        if plan.counterpart is None:
            log.warning("counterpart_missing")
            await self._audit.log_counterpart_missing(
                transaction_id=leg_id,
                correlation_id=correlation_id,
            )

        for missing_leg_id, category_id in plan.missing_categories:
            log.warning("category_missing", leg_id=missing_leg_id, category_id=category_id)
            await self._audit.log_category_missing(
                transaction_id=missing_leg_id,
                category_id=category_id,
                correlation_id=correlation_id,
            )

        log.info("transaction_deleted", deleted_ids=plan.deleted_ids)
        await self._audit.log_transaction_deleted(
            transaction_id=leg_id,
            deleted_ids=plan.deleted_ids,
            correlation_id=correlation_id,
        )

    async def drain_notifications(self) -> None:
        """Wait for every notification scheduled so far."""
        await self._notifications.drain()
