"""
Post-commit notification dispatch.

Messages are sent from background tasks started only after the store
transaction committed, so a retried transaction body can never notify
twice and a slow or broken channel never delays the caller.
"""

import asyncio
from typing import Optional
from uuid import UUID

import structlog

from ledger.audit import AuditLogger
from ledger.services.notify import Notifier


logger = structlog.get_logger(__name__)


class NotificationDispatcher:
    """Runs notifier sends as fire-and-forget tasks and tracks them."""

    def __init__(self, notifier: Optional[Notifier], audit_logger: AuditLogger):
        self._notifier = notifier
        self._audit = audit_logger
        self._pending: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def schedule(self, message: str, correlation_id: Optional[UUID] = None) -> Optional[asyncio.Task]:
        """Start delivering one message. Returns the task, or None without a notifier."""
        if self._notifier is None:
            return None
        task = asyncio.create_task(self._deliver(message, correlation_id))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _deliver(self, message: str, correlation_id: Optional[UUID]) -> None:
        try:
            await self._notifier.send(message)
        except Exception as e:
            # Delivery failures never reach the caller of the ledger operation
            logger.warning(
                "notification_failed",
                channel=self._notifier.channel,
                error=str(e),
                correlation_id=str(correlation_id) if correlation_id else None,
            )
            await self._audit.log_notification_failed(
                channel=self._notifier.channel,
                error=e,
                correlation_id=correlation_id,
            )

    async def drain(self) -> None:
        """Wait until every scheduled notification finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending))
