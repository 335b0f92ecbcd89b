from celery import Celery

# Create Celery app
celery = Celery("notification_queue")

# Load configuration from notification_queue.config.celeryconfig module
celery.config_from_object("notification_queue.config.celeryconfig")
