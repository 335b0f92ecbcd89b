from .event_reminder_enqueuer import event_reminder_enqueuer_task

__all__ = [
    "event_reminder_enqueuer_task",
]
