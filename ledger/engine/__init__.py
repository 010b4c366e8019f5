"""Ledger engines: the only writers of categories and transactions."""

from ledger.engine.errors import (
    CategoryNotFoundError,
    CorruptTransactionError,
    IntegrityWarning,
    LedgerError,
    TransactionNotFoundError,
    ValidationError,
)
from ledger.engine.validation import TransferValidator, validate_transaction_id
from ledger.engine.transfer import TransferEngine
from ledger.engine.deletion import DeletionEngine

__all__ = [
    # Errors
    "CategoryNotFoundError",
    "CorruptTransactionError",
    "IntegrityWarning",
    "LedgerError",
    "TransactionNotFoundError",
    "ValidationError",
    # Validation
    "TransferValidator",
    "validate_transaction_id",
    # Engines
    "DeletionEngine",
    "TransferEngine",
]
