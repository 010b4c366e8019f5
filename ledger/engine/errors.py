"""
Ledger Error Taxonomy

- ValidationError: the request is wrong; rejected before any I/O
- CategoryNotFoundError / TransactionNotFoundError: a referenced document
  is gone at operation time; nothing was written
- CorruptTransactionError: a stored transaction cannot be read as a leg;
  nothing was written
- IntegrityWarning: stored data breaks the pairing invariant but the
  operation can still proceed safely; emitted, never raised
- StoreError (from the storage layer): the atomic operation itself failed;
  nothing was written
"""

from ledger.models.ledger import ValidationIssue
from ledger.services.storage import NotFoundError


class LedgerError(Exception):
    """Base exception for ledger engine operations."""
    pass


class ValidationError(LedgerError):
    """A transfer or deletion request failed validation. Always user-correctable."""

    def __init__(self, issues: list[ValidationIssue]):
        self.issues = issues
        super().__init__("; ".join(issue.message for issue in issues))


class CategoryNotFoundError(LedgerError, NotFoundError):
    """A category taking part in a transfer does not exist."""

    def __init__(self, category_id: str, role: str = "category"):
        self.category_id = category_id
        self.role = role
        super().__init__(f"{role.capitalize()} category not found: {category_id}")


class TransactionNotFoundError(LedgerError, NotFoundError):
    """The transaction to delete does not exist."""

    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction not found: {transaction_id}")


class CorruptTransactionError(LedgerError):
    """A stored transaction document is missing the fields a leg needs."""

    def __init__(self, transaction_id: str, reason: str):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction {transaction_id} is unreadable: {reason}")


class IntegrityWarning(UserWarning):
    """More than one leg claims to be the counterpart of a transaction."""
    pass
