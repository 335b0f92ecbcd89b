from .queue import NotificationQueue, VERIFICATION_EXEMPT_KIND
from .event_reminders import run_reminder_pass, REMINDER_LOCK_NAME
from .delivery import (
    DeliveryWorker,
    LoggingNotificationSender,
    NotificationSender,
    build_outbound_message,
)

__all__ = [
    "NotificationQueue",
    "VERIFICATION_EXEMPT_KIND",
    "run_reminder_pass",
    "REMINDER_LOCK_NAME",
    "DeliveryWorker",
    "LoggingNotificationSender",
    "NotificationSender",
    "build_outbound_message",
]
