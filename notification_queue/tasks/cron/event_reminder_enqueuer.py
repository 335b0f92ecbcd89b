from notification_queue.celery import celery
from notification_queue.config.settings import settings
from notification_queue.services.notifications.event_reminders import run_reminder_pass
from notification_queue.utils.context import request_id_scope
from notification_queue.utils.logging import get_logger


@celery.task(bind=True, max_retries=3, default_retry_delay=60)
def event_reminder_enqueuer_task(self, request_id: str):
    """
    Periodic task that enqueues reminders for events starting soon.

    Runs every REMINDER_INTERVAL_MINUTES. Overlapping runs are harmless: only
    one pass can hold the reminder lock, the others return straight away
    with nothing enqueued.

    Args:
        request_id: Request ID for tracking purposes
    """
    with request_id_scope(request_id):
        return _run_event_reminder_enqueuer(request_id)


def _run_event_reminder_enqueuer(request_id: str):
    logger = get_logger().bind(request_id=request_id)

    try:
        reminders_enqueued = run_reminder_pass(settings.BASE_URL)

        logger.info(
            f"Event reminder enqueuer completed, {reminders_enqueued} reminders enqueued"
        )
        return {
            "success": True,
            "reminders_enqueued": reminders_enqueued,
            "request_id": request_id,
        }

    except Exception as e:
        logger.error(f"Event reminder enqueuer task exception: {str(e)}")
        return {"success": False, "error": str(e), "request_id": request_id}
