"""
Transfer Notifications

After a transfer commits, a short human-readable message is pushed to a
Telegram chat so the owner sees money movements as they happen.

DESIGN DECISION: Notifications are strictly best-effort.
The engines schedule them after commit and only log failures; a broken
bot token must never make a committed transfer look failed.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Optional, Union

import structlog
from telegram import Bot
from telegram.error import BadRequest, NetworkError, TelegramError
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from ledger.codec import CURRENCY_SYMBOL, format_amount
from ledger.config import TelegramSettings, get_settings
from ledger.models.ledger import TransactionType


logger = structlog.get_logger(__name__)

_DIRECTION_LABELS = {
    TransactionType.EXPENSE: ("🔴", "Expense"),
    TransactionType.INCOME: ("🟢", "Income"),
}


class NotificationError(Exception):
    """A notification could not be delivered."""
    pass


def _is_transient(error: BaseException) -> bool:
    # BadRequest is a NetworkError subclass but never succeeds on retry
    return isinstance(error, NetworkError) and not isinstance(error, BadRequest)


def format_transfer_message(
    from_title: str,
    to_title: str,
    amount: Union[int, float, Decimal],
    description: str,
    direction: TransactionType = TransactionType.EXPENSE,
    symbol: str = CURRENCY_SYMBOL,
) -> str:
    """
    Build the message text for a transfer.

    Example:
        🔴 Expense
        From: Cash box
        To: Warehouse
        Amount: 200 ₸
        Comment: rent
    """
    icon, label = _DIRECTION_LABELS[TransactionType(direction)]
    return (
        f"{icon} {label}\n"
        f"From: {from_title}\n"
        f"To: {to_title}\n"
        f"Amount: {format_amount(amount, symbol)}\n"
        f"Comment: {description}"
    )


def format_deletion_message(
    from_title: str,
    to_title: str,
    amount: Union[int, float, Decimal],
    description: str,
    symbol: str = CURRENCY_SYMBOL,
) -> str:
    """Message text for a deleted transfer pair."""
    return (
        "🗑 Transfer deleted\n"
        f"From: {from_title}\n"
        f"To: {to_title}\n"
        f"Amount: {format_amount(abs(Decimal(str(amount))), symbol)}\n"
        f"Comment: {description}"
    )


class Notifier(ABC):
    """Delivery channel for ledger notifications."""

    channel: str = "unknown"

    @abstractmethod
    async def send(self, message: str) -> None:
        """
        Deliver one message.

        Raises:
            NotificationError: If delivery failed
        """
        pass

    async def close(self) -> None:
        return None


class NullNotifier(Notifier):
    """Used when no channel is configured. Messages only reach the log."""

    channel = "log"

    async def send(self, message: str) -> None:
        logger.debug("notification_skipped", message=message)


class TelegramNotifier(Notifier):
    """
    Sends notifications with python-telegram-bot.

    Transient network errors are retried; anything else is reported as
    NotificationError.
    """

    channel = "telegram"

    def __init__(
        self,
        settings: Optional[TelegramSettings] = None,
        bot: Optional[Bot] = None,
    ):
        self._settings = settings or get_settings().telegram
        self._bot = bot or Bot(token=self._settings.bot_token)
        self._initialized = False

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        retry=retry_if_exception(_is_transient),
        reraise=True,
    )
    async def _send(self, message: str) -> None:
        if not self._initialized:
            await self._bot.initialize()
            self._initialized = True
        await self._bot.send_message(
            chat_id=self._settings.chat_id,
            text=message,
            read_timeout=self._settings.timeout_seconds,
            write_timeout=self._settings.timeout_seconds,
        )

    async def send(self, message: str) -> None:
        try:
            await self._send(message)
        except TelegramError as e:
            raise NotificationError(f"Telegram delivery failed: {e}") from e
        logger.debug("notification_sent", channel=self.channel)

    async def close(self) -> None:
        if self._initialized:
            await self._bot.shutdown()
            self._initialized = False
