"""
Audit Logger

DESIGN DECISION: Every ledger operation and every degraded path inside it
is logged. This provides:
1. Traceability of each transfer and deletion
2. Visibility of data-integrity faults the engines tolerate
3. A record of side effects that failed without failing the operation

The audit logger:
- Always writes to the structured local log
- Persists to audit storage when one is configured
- Never raises because persistence failed
- Supports correlation IDs to tie the events of one user action together
"""

import logging
import sys
from typing import Optional
from uuid import UUID, uuid4

import structlog

from ledger.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity
from ledger.services.storage import AuditStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer(ensure_ascii=False, default=str),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


def configure_logging(level: str = "INFO") -> None:
    """Route structlog output to stdout at the given level."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. Audit storage (for persistence), when configured
    """

    def __init__(self, storage: Optional[AuditStorageInterface] = None):
        """
        Args:
            storage: Storage backend for persistence.
                     If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger("ledger.audit")

    @property
    def storage(self) -> Optional[AuditStorageInterface]:
        return self._storage

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
            self._logger.error("audit_event", **log_dict)
        elif event.severity is AuditSeverity.WARNING:
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_transfer_rejected(
        self,
        source_id: str,
        target_id: str,
        issues: list[str],
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.transfer_rejected(
            source_id=source_id,
            target_id=target_id,
            issues=issues,
            correlation_id=correlation_id,
        ))

    async def log_transfer_committed(
        self,
        pair_id: str,
        source_title: str,
        target_title: str,
        amount: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.transfer_committed(
            pair_id=pair_id,
            source_title=source_title,
            target_title=target_title,
            amount=amount,
            correlation_id=correlation_id,
        ))

    async def log_transfer_failed(
        self,
        source_id: str,
        target_id: str,
        error: Exception,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.transfer_failed(
            source_id=source_id,
            target_id=target_id,
            error_type=type(error).__name__,
            error_message=str(error),
            correlation_id=correlation_id,
        ))

    async def log_transaction_deleted(
        self,
        transaction_id: str,
        deleted_ids: list[str],
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.transaction_deleted(
            transaction_id=transaction_id,
            deleted_ids=deleted_ids,
            correlation_id=correlation_id,
        ))

    async def log_deletion_failed(
        self,
        transaction_id: str,
        error: Exception,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.deletion_failed(
            transaction_id=transaction_id,
            error_type=type(error).__name__,
            error_message=str(error),
            correlation_id=correlation_id,
        ))

    async def log_counterpart_missing(
        self,
        transaction_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.counterpart_missing(
            transaction_id=transaction_id,
            correlation_id=correlation_id,
        ))

    async def log_category_missing(
        self,
        transaction_id: str,
        category_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.category_missing(
            transaction_id=transaction_id,
            category_id=category_id,
            correlation_id=correlation_id,
        ))

    async def log_integrity_warning(
        self,
        transaction_id: str,
        candidate_ids: list[str],
        chosen_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.integrity_warning(
            transaction_id=transaction_id,
            candidate_ids=candidate_ids,
            chosen_id=chosen_id,
            correlation_id=correlation_id,
        ))

    async def log_categories_seeded(self, count: int) -> None:
        await self.log(AuditEventBuilder.categories_seeded(count))

    async def log_notification_failed(
        self,
        channel: str,
        error: Exception,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.notification_failed(
            channel=channel,
            error_message=str(error),
            correlation_id=correlation_id,
        ))


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a user action (a transfer, a deletion) and
    pass it through every event that action produces.
    """
    return uuid4()
