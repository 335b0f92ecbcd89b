from notification_queue.celery import celery
from notification_queue.config.settings import settings
from notification_queue.services.notifications.delivery import DeliveryWorker
from notification_queue.services.notifications.queue import NotificationQueue
from notification_queue.utils.context import request_id_scope
from notification_queue.utils.logging import get_logger


@celery.task(bind=True, max_retries=3, default_retry_delay=30)
def notification_delivery_task(self, request_id: str, max_notifications: int = 0):
    """
    Drain pending notifications from the queue.

    Any number of these tasks may run at once; each leased notification is
    invisible to the others until it has been processed.

    Args:
        request_id: Request ID for tracking purposes
        max_notifications: Upper bound for this run (DELIVERY_BATCH_SIZE when 0)
    """
    with request_id_scope(request_id):
        return _run_notification_delivery(
            request_id, max_notifications or settings.DELIVERY_BATCH_SIZE
        )


def _run_notification_delivery(request_id: str, max_notifications: int):
    logger = get_logger().bind(request_id=request_id)

    try:
        worker = DeliveryWorker(
            NotificationQueue(), rcpts_whitelist=settings.EMAIL_RCPTS_WHITELIST
        )
        delivered = worker.drain(max_notifications)

        if delivered:
            logger.info(f"Processed {delivered} notifications")
        return {"success": True, "delivered": delivered, "request_id": request_id}

    except Exception as e:
        logger.error(f"Notification delivery task exception: {str(e)}")
        return {"success": False, "error": str(e), "request_id": request_id}
