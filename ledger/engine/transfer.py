"""
Transfer Engine

Moves an amount from one category to another as a pair of legs.

DESIGN DECISION: One store transaction per transfer.
Both balances are re-read inside the transaction, both legs are written and
both balances are updated in the same commit. Readers therefore never see
one leg without the other, or a balance that reflects only half a pair.

The engine itself never retries. If another writer touched either category
before commit, the store runs the body again against fresh balances.
"""

from typing import Optional
from uuid import UUID

import structlog

from ledger.audit import AuditLogger, create_correlation_id
from ledger.codec import CURRENCY_SYMBOL, format_amount, parse_amount, round_amount
from ledger.engine.errors import CategoryNotFoundError, ValidationError
from ledger.engine.notifications import NotificationDispatcher
from ledger.engine.validation import TransferValidator
from ledger.models.ledger import (
    Attachment,
    Category,
    ExpenseLeg,
    IncomeLeg,
    TransactionType,
    TransferFlags,
    TransferReceipt,
)
from ledger.services.notify import Notifier, format_transfer_message
from ledger.services.storage import SERVER_TIMESTAMP, LedgerStore, StoreTransaction


logger = structlog.get_logger(__name__)


class TransferEngine:
    """
    Creates transfer pairs.

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
        self._validator = TransferValidator()
        self._symbol = currency_symbol
        self._categories = categories_collection
        self._transactions = transactions_collection

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
        """
        Move `amount` from `source` to `target`.

        The balances on the passed-in categories are ignored; only their
        ids and titles are used.

        Raises:
            ValidationError: Bad request, nothing was read or written
            CategoryNotFoundError: A category is gone, nothing was written
            StoreError: The store transaction failed, nothing was written
        """
        correlation_id = correlation_id or create_correlation_id()
        log = logger.bind(
            correlation_id=str(correlation_id),
            source_id=source.id,
            target_id=target.id,
        )

        try:
            value = self._validator.validate(source, target, amount, description)
        except ValidationError as e:
            log.warning("transfer_rejected", issues=[issue.message for issue in e.issues])
            await self._audit.log_transfer_rejected(
                source_id=source.id,
                target_id=target.id,
                issues=[issue.message for issue in e.issues],
                correlation_id=correlation_id,
            )
            raise

        flags = flags or TransferFlags()
        photos = list(photos or [])

        async def apply(tx: StoreTransaction) -> TransferReceipt:
            # Reads first; the store rejects reads after a write
            source_doc = await tx.get(self._categories, source.id)
            target_doc = await tx.get(self._categories, target.id)
            if source_doc is None:
                raise CategoryNotFoundError(source.id, role="source")
            if target_doc is None:
                raise CategoryNotFoundError(target.id, role="target")

            source_balance = parse_amount(source_doc.get("amount", 0))
            target_balance = parse_amount(target_doc.get("amount", 0))

            expense_id = self._store.new_id(self._transactions)
            income_id = self._store.new_id(self._transactions)

            shared = dict(
                pair_id=expense_id,
                from_user=source.title,
                to_user=target.title,
                description=description,
                is_salary=flags.is_salary,
                is_cashless=flags.is_cashless,
                photos=photos,
            )
            expense = ExpenseLeg(id=expense_id, category_id=source.id, amount=-value, **shared)
            income = IncomeLeg(id=income_id, category_id=target.id, amount=value, **shared)

            tx.set(self._transactions, expense_id, expense.to_document(date=SERVER_TIMESTAMP))
            tx.set(self._transactions, income_id, income.to_document(date=SERVER_TIMESTAMP))

            new_source = round_amount(source_balance - value)
            new_target = round_amount(target_balance + value)
            tx.update(self._categories, source.id, {
                "amount": format_amount(new_source, self._symbol),
                "updatedAt": SERVER_TIMESTAMP,
            })
            tx.update(self._categories, target.id, {
                "amount": format_amount(new_target, self._symbol),
                "updatedAt": SERVER_TIMESTAMP,
            })

            return TransferReceipt(
                pair_id=expense_id,
                expense_id=expense_id,
                income_id=income_id,
                source_id=source.id,
                target_id=target.id,
                amount=value,
                source_balance=new_source,
                target_balance=new_target,
            )

        try:
            receipt = await self._store.run_transaction(apply)
        except Exception as e:
            log.error("transfer_failed", error_type=type(e).__name__, error=str(e))
            await self._audit.log_transfer_failed(
                source_id=source.id,
                target_id=target.id,
                error=e,
                correlation_id=correlation_id,
            )
            raise

        log.info("transfer_committed", pair_id=receipt.pair_id, amount=str(value))
        await self._audit.log_transfer_committed(
            pair_id=receipt.pair_id,
            source_title=source.title,
            target_title=target.title,
            amount=format_amount(value, self._symbol),
            correlation_id=correlation_id,
        )

        self._notifications.schedule(
            format_transfer_message(
                source.title,
                target.title,
                value,
                description,
                TransactionType.EXPENSE,
                self._symbol,
            ),
            correlation_id,
        )
        return receipt

    async def drain_notifications(self) -> None:
        """Wait for every notification scheduled so far."""
        await self._notifications.drain()
