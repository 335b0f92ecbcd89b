from datetime import timedelta

from celery.schedules import crontab
from .settings import settings

# Basic Celery Configuration
broker_url = f"redis://:{settings.REDIS_PASSWORD}@{settings.REDIS_HOST}:{settings.REDIS_PORT}/{settings.REDIS_DB}"
result_backend = f"redis://:{settings.REDIS_PASSWORD}@{settings.REDIS_HOST}:{settings.REDIS_PORT}/{settings.REDIS_DB}"

# Task Discovery
include = ["notification_queue.tasks"]

# Timezone Configuration
timezone = "UTC"
enable_utc = True

# Task Result Configuration
result_expires = 3600

# Task Serialization
task_serializer = "json"
accept_content = ["json"]
result_serializer = "json"

# Task Execution Configuration
task_track_started = True
task_time_limit = 10 * 60  # 10 minutes
task_soft_time_limit = 8 * 60  # 8 minutes

# Worker Configuration
worker_prefetch_multiplier = 1
worker_max_tasks_per_child = 1000

# Passes are idempotent; a lost worker just means the next beat tick redoes the work
task_acks_late = True
task_reject_on_worker_lost = True
task_default_retry_delay = 60  # 60 seconds
task_max_retries = 3

# Beat runs the passes; overlapping runs are resolved by the reminder lock
beat_schedule = {
    "event-reminder-enqueuer": {
        "task": "notification_queue.tasks.cron.event_reminder_enqueuer.event_reminder_enqueuer_task",
        "schedule": crontab(minute=f"*/{settings.REMINDER_INTERVAL_MINUTES}"),
        "args": ("event_reminder_enqueuer_cron",),
    },
    "notification-delivery": {
        "task": "notification_queue.tasks.background.notification_delivery.notification_delivery_task",
        "schedule": timedelta(seconds=settings.DELIVERY_INTERVAL_SECONDS),
        "args": ("notification_delivery_beat",),
    },
}

# Default Queue
task_default_queue = "notifications"

# Beat Scheduler Configuration
beat_schedule_filename = "tmp/celerybeat-schedule"
