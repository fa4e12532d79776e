"""Round notifications: structlog, Telegram, and failure-isolating fan-out."""

from agentfund.monitoring.notifier import (
    LogNotifier,
    NotificationSink,
    SafeNotifier,
    TelegramNotifier,
    build_notifier,
)

__all__ = [
    "LogNotifier",
    "NotificationSink",
    "SafeNotifier",
    "TelegramNotifier",
    "build_notifier",
]
