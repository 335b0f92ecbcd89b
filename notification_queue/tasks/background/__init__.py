from .notification_delivery import notification_delivery_task

__all__ = [
    "notification_delivery_task",
]
