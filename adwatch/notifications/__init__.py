from .gateway import NotificationGateway, NotificationRecord, Severity
from .telegram import TelegramConfig, TelegramTransport, split_telegram_message

__all__ = [
    "NotificationGateway",
    "NotificationRecord",
    "Severity",
    "TelegramConfig",
    "TelegramTransport",
    "split_telegram_message",
]
