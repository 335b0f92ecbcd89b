from .background import *
from .cron import *

__all__ = [
    "notification_delivery_task",
    # Scheduled/Cron Tasks
    "event_reminder_enqueuer_task",
]
