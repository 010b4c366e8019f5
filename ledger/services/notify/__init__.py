"""Notification services package."""

from ledger.services.notify.telegram_service import (
    NotificationError,
    Notifier,
    NullNotifier,
    TelegramNotifier,
    format_deletion_message,
    format_transfer_message,
)

__all__ = [
    "NotificationError",
    "Notifier",
    "NullNotifier",
    "TelegramNotifier",
    "format_deletion_message",
    "format_transfer_message",
]
