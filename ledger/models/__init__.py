"""
Data Models Package

All Pydantic models used by the ledger. Every document read from or
written to the store passes through one of these.
"""

from ledger.models.ledger import (
    Attachment,
    Category,
    CategoryKind,
    DeletionReceipt,
    ExpenseLeg,
    IncomeLeg,
    Product,
    TransactionLeg,
    TransactionType,
    TransferFlags,
    TransferReceipt,
    ValidationIssue,
    leg_from_document,
)
from ledger.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Ledger models
    "Attachment",
    "Category",
    "CategoryKind",
    "DeletionReceipt",
    "ExpenseLeg",
    "IncomeLeg",
    "Product",
    "TransactionLeg",
    "TransactionType",
    "TransferFlags",
    "TransferReceipt",
    "ValidationIssue",
    "leg_from_document",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
