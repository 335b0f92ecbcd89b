from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Sequence

from notification_queue.config.settings import settings
from notification_queue.db.models import NotificationKind
from notification_queue.schemas.notification_schemas import (
    AttachmentData,
    OutboundMessage,
    PendingNotification,
)
from notification_queue.services.notifications.content_store import get_attachment
from notification_queue.services.notifications.queue import NotificationQueue
from notification_queue.utils.logging import get_logger

logger = get_logger()


def _event_field(field: str) -> Callable[[dict], str]:
    return lambda data: (data.get("event") or {}).get(field, "")


_SUBJECTS: Dict[str, Callable[[dict], str]] = {
    NotificationKind.CFS_SUBMISSION_UPDATED.value: lambda data: (
        f"Submission update: {_event_field('name')(data)}"
    ),
    NotificationKind.COMMUNITY_TEAM_INVITATION.value: lambda _: (
        "You have been invited to join a community team"
    ),
    NotificationKind.EMAIL_VERIFICATION.value: lambda _: "Verify your email address",
    NotificationKind.EVENT_CANCELED.value: lambda _: "Event canceled",
    NotificationKind.EVENT_CUSTOM.value: lambda data: (
        f"{_event_field('group_name')(data)}: {_event_field('name')(data)}"
    ),
    NotificationKind.EVENT_PUBLISHED.value: lambda _: "New event published",
    NotificationKind.EVENT_REMINDER.value: lambda data: (
        f"Reminder: {_event_field('name')(data)} is coming up soon"
    ),
    NotificationKind.EVENT_RESCHEDULED.value: lambda _: "Event rescheduled",
    NotificationKind.EVENT_WELCOME.value: lambda _: "Welcome to the event",
    NotificationKind.GROUP_CUSTOM.value: lambda data: (
        (data.get("group") or {}).get("name", "")
    ),
    NotificationKind.GROUP_TEAM_INVITATION.value: lambda _: (
        "You have been invited to join a group team"
    ),
    NotificationKind.GROUP_WELCOME.value: lambda _: "Welcome to the group",
    NotificationKind.SESSION_PROPOSAL_CO_SPEAKER_INVITATION.value: lambda _: (
        "You have been invited to co-present a session"
    ),
    NotificationKind.SPEAKER_WELCOME.value: lambda _: "You're speaking at an event",
}


def build_outbound_message(
    pending: PendingNotification,
    attachments: Sequence[AttachmentData] = (),
    from_name: Optional[str] = None,
    from_address: Optional[str] = None,
) -> OutboundMessage:
    subject_for = _SUBJECTS.get(pending.kind, lambda _: "Notification")
    return OutboundMessage(
        notification_id=pending.notification_id,
        kind=pending.kind,
        from_name=from_name or settings.EMAIL_FROM_NAME,
        from_address=from_address or settings.EMAIL_FROM_ADDRESS,
        to_address=pending.email,
        subject=subject_for(pending.template_data or {}),
        template_data=pending.template_data,
        attachments=list(attachments),
    )


class NotificationSender(ABC):
    """Transport boundary: renders and sends one outbound message."""

    @abstractmethod
    def send(self, message: OutboundMessage) -> None:
        """Send the message, raising on failure"""
        pass


class LoggingNotificationSender(NotificationSender):
    """Sender used when no transport is configured; it only logs."""

    def send(self, message: OutboundMessage) -> None:
        logger.info(
            f"Delivering {message.kind} notification {message.notification_id} "
            f"to {message.to_address}: {message.subject} "
            f"({len(message.attachments)} attachments)"
        )


class DeliveryWorker:
    """Pulls notifications off the queue and hands them to a sender."""

    def __init__(
        self,
        queue: NotificationQueue,
        sender: Optional[NotificationSender] = None,
        rcpts_whitelist: Optional[List[str]] = None,
    ):
        self.queue = queue
        self.sender = sender or LoggingNotificationSender()
        self.rcpts_whitelist = rcpts_whitelist

    def deliver_next(self) -> bool:
        """
        Deliver one pending notification.

        The notification is marked processed whatever the outcome of the send;
        a failed send is recorded in its `error` column. If loading or
        recording fails, the transaction rolls back and the notification is
        left pending.

        Returns:
            bool: True if a notification was taken off the queue
        """
        with self.queue.lease() as (db_session, pending):
            if pending is None:
                return False

            attachments = [
                get_attachment(db_session, attachment_id)
                for attachment_id in pending.attachment_ids
            ]
            message = build_outbound_message(pending, attachments)

            error = None
            if not self._recipient_allowed(message.to_address):
                logger.warning(
                    f"Recipient {message.to_address} not allowed, skipping send "
                    f"of notification {pending.notification_id}"
                )
            else:
                try:
                    self.sender.send(message)
                except Exception as e:
                    error = str(e) or e.__class__.__name__
                    logger.error(
                        f"Error delivering notification {pending.notification_id}: {error}"
                    )

            self.queue.mark_processed(db_session, pending.notification_id, error)

        return True

    def drain(self, max_notifications: int) -> int:
        """Deliver until the queue is empty or `max_notifications` were handled."""
        delivered = 0
        while delivered < max_notifications and self.deliver_next():
            delivered += 1
        return delivered

    def _recipient_allowed(self, address: str) -> bool:
        # An empty whitelist blocks everyone
        if self.rcpts_whitelist is None:
            return True
        return address in self.rcpts_whitelist
