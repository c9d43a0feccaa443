"""Alert dispatch across console, file, webhook and Telegram channels."""

from .base import DeliveryResult, DeliveryStatus, NotificationChannel, NotificationMessage, format_report
from .dispatcher import AlertDispatcher
from .local import ConsoleChannel, FileChannel
from .telegram import TelegramChannel, TelegramConfig, split_telegram_message
from .webhook import WebhookChannel, slack_payload

__all__ = [
    "AlertDispatcher",
    "ConsoleChannel",
    "DeliveryResult",
    "DeliveryStatus",
    "FileChannel",
    "NotificationChannel",
    "NotificationMessage",
    "TelegramChannel",
    "TelegramConfig",
    "WebhookChannel",
    "format_report",
    "slack_payload",
    "split_telegram_message",
]
