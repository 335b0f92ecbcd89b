from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from pydantic import ValidationError
from sqlalchemy import func, insert, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from notification_queue.db.custom_types import new_uuid
from notification_queue.db.models import (
    Notification,
    NotificationAttachment,
    NotificationKind,
    TemplatePayload,
    User,
)
from notification_queue.schemas.notification_schemas import (
    NewNotification,
    PendingNotification,
)
from notification_queue.services.notifications.content_store import (
    canonical_json,
    put_attachment,
    put_template_data,
)
from notification_queue.utils.datetime_utils import naive_utc_now, to_naive_utc
from notification_queue.utils.errors import (
    DatabaseError,
    NotFoundError,
    NotificationValidationError,
    RecipientNotFoundError,
)
from notification_queue.utils.logging import get_logger

logger = get_logger()

# The only kind that may be delivered to users who haven't verified their email
VERIFICATION_EXEMPT_KIND = NotificationKind.EMAIL_VERIFICATION.value


class NotificationQueue:
    """
    Durable, per-recipient notification queue.

    Enqueueing fans a batch out to one row per recipient, sharing
    deduplicated template data and attachments. Dequeueing leases the oldest
    eligible row with a `FOR UPDATE SKIP LOCKED` lock held by the caller's
    transaction, so any number of workers can pull from the queue without
    blocking each other or receiving the same row.
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        if session_factory is None:
            from notification_queue.db.session import SessionLocal

            session_factory = SessionLocal
        self.session_factory = session_factory

    def enqueue(
        self,
        kind: str,
        template_data: Optional[Dict[str, Any]] = None,
        attachments: Iterable[Any] = (),
        recipient_ids: Iterable[Any] = (),
        session: Optional[Session] = None,
    ) -> List[str]:
        """Validate and enqueue a notification batch. See `enqueue_notification`."""
        try:
            notification = NewNotification(
                kind=kind,
                template_data=template_data,
                attachments=list(attachments),
                recipients=list(recipient_ids),
            )
        except ValidationError as e:
            raise NotificationValidationError.from_pydantic(e) from e

        return self.enqueue_notification(notification, session=session)

    def enqueue_notification(
        self, notification: NewNotification, session: Optional[Session] = None
    ) -> List[str]:
        """
        Enqueue one notification per recipient, all or nothing.

        When `session` is given the work joins the caller's transaction and the
        caller commits; otherwise a transaction is opened and committed here.

        Returns:
            IDs of the created notifications, in recipient order

        Raises:
            RecipientNotFoundError: If a recipient does not exist
            DatabaseError: If the database fails, on either transaction path
        """
        if not notification.recipients:
            return []

        # Reject unserializable template data before anything is written
        if notification.template_data is not None:
            canonical_json(notification.template_data)

        try:
            if session is not None:
                return self._enqueue(session, notification)

            with self.session_factory() as session:
                with session.begin():
                    notification_ids = self._enqueue(session, notification)
        except SQLAlchemyError as e:
            logger.error(f"Failed to enqueue {notification.kind.value} notification: {e}")
            raise DatabaseError(f"Failed to enqueue notification: {e}") from e

        logger.info(
            f"Enqueued {len(notification_ids)} {notification.kind.value} notifications"
        )
        return notification_ids

    def _enqueue(self, session: Session, notification: NewNotification) -> List[str]:
        _ensure_recipients_exist(session, notification.recipients)

        template_data_id = None
        if notification.template_data is not None:
            template_data_id = put_template_data(session, notification.template_data)

        # Database clock, shared by every enqueueing host
        created_at = to_naive_utc(session.scalar(select(func.now())))
        rows = [
            {
                "id": new_uuid(),
                "kind": notification.kind.value,
                "user_id": recipient_id,
                "notification_template_data_id": template_data_id,
                "created_at": created_at,
            }
            for recipient_id in notification.recipients
        ]
        session.execute(insert(Notification), rows)
        notification_ids = [row["id"] for row in rows]

        linked = set()
        for attachment in notification.attachments:
            attachment_id = put_attachment(session, attachment)
            # Identical files sent twice in one call share a single link
            if attachment_id in linked:
                continue
            linked.add(attachment_id)
            self._link_attachment(session, attachment_id, notification_ids)

        return notification_ids

    @staticmethod
    def _link_attachment(
        session: Session, attachment_id: str, notification_ids: List[str]
    ) -> None:
        session.execute(
            insert(NotificationAttachment),
            [
                {"notification_id": notification_id, "attachment_id": attachment_id}
                for notification_id in notification_ids
            ],
        )

    def dequeue_next(self, session: Session) -> Optional[PendingNotification]:
        """
        Lease the oldest eligible unprocessed notification, if any.

        Must run inside an open transaction: the row stays locked (and
        invisible to other dequeuers) until that transaction ends. Rows locked
        by other callers are skipped rather than waited on.
        """
        row = session.execute(
            select(
                Notification.id,
                Notification.kind,
                User.email,
                TemplatePayload.data,
            )
            .join(User, User.id == Notification.user_id)
            .outerjoin(
                TemplatePayload,
                TemplatePayload.id == Notification.notification_template_data_id,
            )
            .where(
                Notification.processed.is_(False),
                or_(
                    User.email_verified.is_(True),
                    Notification.kind == VERIFICATION_EXEMPT_KIND,
                ),
            )
            .order_by(Notification.created_at, Notification.id)
            .limit(1)
            .with_for_update(of=Notification, skip_locked=True)
        ).one_or_none()

        if row is None:
            return None

        attachment_ids = session.scalars(
            select(NotificationAttachment.attachment_id)
            .where(NotificationAttachment.notification_id == row.id)
            .order_by(NotificationAttachment.attachment_id)
        ).all()

        return PendingNotification(
            notification_id=row.id,
            kind=row.kind,
            email=row.email,
            template_data=row.data,
            attachment_ids=list(attachment_ids),
        )

    def mark_processed(
        self, session: Session, notification_id: str, error: Optional[str] = None
    ) -> None:
        """Record a delivery attempt; `error` is stored when delivery failed."""
        if error is not None and not error.strip():
            error = None

        result = session.execute(
            update(Notification)
            .where(Notification.id == notification_id)
            .values(processed=True, processed_at=naive_utc_now(), error=error)
        )
        if result.rowcount == 0:
            raise NotFoundError(f"Notification not found: {notification_id}")

    @contextmanager
    def lease(self) -> Iterator[Tuple[Session, Optional[PendingNotification]]]:
        """
        Open a transaction and lease one notification within it.

        Commits when the block exits normally, releasing the lease. If the
        block raises, the transaction rolls back and the notification stays
        pending for the next worker.
        """
        with self.session_factory() as session:
            with session.begin():
                yield session, self.dequeue_next(session)


def _ensure_recipients_exist(session: Session, recipient_ids: List[str]) -> None:
    wanted = set(recipient_ids)
    found = set(
        session.scalars(select(User.id).where(User.id.in_(sorted(wanted)))).all()
    )
    missing = wanted - found
    if missing:
        raise RecipientNotFoundError(missing)
