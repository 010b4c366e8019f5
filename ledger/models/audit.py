"""
Audit Models for the Paired Ledger

Every transfer, deletion and every degraded path inside them is recorded
as an audit event. This provides:
1. Traceability of who moved money where
2. Debugging information when a pair turns out to be broken
3. A record of notification failures that were deliberately not raised

DESIGN DECISION: Audit events are append-only. They describe ledger
operations; they are not the ledger and never feed balance math.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditEventType(str, Enum):
    """Types of events we audit."""
    # Transfers
    TRANSFER_REJECTED = "transfer_rejected"
    TRANSFER_COMMITTED = "transfer_committed"
    TRANSFER_FAILED = "transfer_failed"

    # Deletions
    TRANSACTION_DELETED = "transaction_deleted"
    DELETION_FAILED = "deletion_failed"
    COUNTERPART_MISSING = "counterpart_missing"
    CATEGORY_MISSING = "category_missing"
    INTEGRITY_WARNING = "integrity_warning"

    # Seeding
    CATEGORIES_SEEDED = "categories_seeded"

    # Side effects
    NOTIFICATION_FAILED = "notification_failed"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    Every significant ledger action creates one of these.
    """

    event_id: UUID = Field(default_factory=uuid4)
    timestamp: datetime = Field(
        default_factory=_utcnow,
        description="When the event occurred (UTC)"
    )

    event_type: AuditEventType
    severity: AuditSeverity = AuditSeverity.INFO

    # What entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="'transaction', 'category' or 'transfer'"
    )
    entity_id: Optional[str] = None

    # Ties together the events of one user action
    correlation_id: Optional[UUID] = None

    description: str = Field(..., max_length=500)
    details: dict[str, Any] = Field(default_factory=dict)

    error_message: Optional[str] = None

    def to_log_dict(self) -> dict:
        """Convert to a dictionary suitable for structured logging."""
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_message": self.error_message,
        }

    def to_sheets_row(self) -> list[str]:
        """
        Convert to a row for the audit worksheet.

        Columns: [event_id, timestamp, event_type, severity, entity_type,
        entity_id, correlation_id, description, details_json, error_message]
        """
        return [
            str(self.event_id),
            self.timestamp.isoformat(),
            self.event_type.value,
            self.severity.value,
            self.entity_type or "",
            self.entity_id or "",
            str(self.correlation_id) if self.correlation_id else "",
            self.description,
            json.dumps(self.details, default=str) if self.details else "",
            self.error_message or "",
        ]


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.transfer_committed(...)
    """

    @staticmethod
    def transfer_rejected(
        source_id: str,
        target_id: str,
        issues: list[str],
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSFER_REJECTED,
            severity=AuditSeverity.WARNING,
            entity_type="transfer",
            correlation_id=correlation_id,
            description=f"Transfer rejected with {len(issues)} issue(s)",
            details={
                "source_id": source_id,
                "target_id": target_id,
                "issues": issues,
            },
        )

    @staticmethod
    def transfer_committed(
        pair_id: str,
        source_title: str,
        target_title: str,
        amount: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSFER_COMMITTED,
            entity_type="transfer",
            entity_id=pair_id,
            correlation_id=correlation_id,
            description=f"Transfer {source_title} -> {target_title}: {amount}",
            details={
                "from": source_title,
                "to": target_title,
                "amount": amount,
            },
        )

    @staticmethod
    def transfer_failed(
        source_id: str,
        target_id: str,
        error_type: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSFER_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="transfer",
            correlation_id=correlation_id,
            description=f"Transfer failed: {error_type}",
            error_message=error_message,
            details={
                "source_id": source_id,
                "target_id": target_id,
            },
        )

    @staticmethod
    def transaction_deleted(
        transaction_id: str,
        deleted_ids: list[str],
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_DELETED,
            entity_type="transaction",
            entity_id=transaction_id,
            correlation_id=correlation_id,
            description=f"Deleted {len(deleted_ids)} leg(s) starting from {transaction_id}",
            details={"deleted_ids": deleted_ids},
        )

    @staticmethod
    def deletion_failed(
        transaction_id: str,
        error_type: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.DELETION_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="transaction",
            entity_id=transaction_id,
            correlation_id=correlation_id,
            description=f"Deletion failed: {error_type}",
            error_message=error_message,
        )

    @staticmethod
    def counterpart_missing(
        transaction_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.COUNTERPART_MISSING,
            severity=AuditSeverity.WARNING,
            entity_type="transaction",
            entity_id=transaction_id,
            correlation_id=correlation_id,
            description="No counterpart leg found; only this leg was reversed",
        )

    @staticmethod
    def category_missing(
        transaction_id: str,
        category_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CATEGORY_MISSING,
            severity=AuditSeverity.WARNING,
            entity_type="category",
            entity_id=category_id,
            correlation_id=correlation_id,
            description="Owning category not found; balance left untouched",
            details={"transaction_id": transaction_id},
        )

    @staticmethod
    def integrity_warning(
        transaction_id: str,
        candidate_ids: list[str],
        chosen_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.INTEGRITY_WARNING,
            severity=AuditSeverity.WARNING,
            entity_type="transaction",
            entity_id=transaction_id,
            correlation_id=correlation_id,
            description=f"{len(candidate_ids)} counterpart legs found, using {chosen_id}",
            details={
                "candidate_ids": candidate_ids,
                "chosen_id": chosen_id,
            },
        )

    @staticmethod
    def categories_seeded(count: int) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CATEGORIES_SEEDED,
            entity_type="category",
            description=f"Seeded {count} categories",
            details={"count": count},
        )

    @staticmethod
    def notification_failed(
        channel: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.NOTIFICATION_FAILED,
            severity=AuditSeverity.WARNING,
            correlation_id=correlation_id,
            description=f"Notification via {channel} failed",
            error_message=error_message,
            details={"channel": channel},
        )
