from typing import List

import pytest

from notification_queue.db.models import Notification
from notification_queue.schemas.notification_schemas import (
    OutboundMessage,
    PendingNotification,
)
from notification_queue.services.notifications.delivery import (
    DeliveryWorker,
    LoggingNotificationSender,
    NotificationSender,
    build_outbound_message,
)


class RecordingSender(NotificationSender):
    """Keeps every message it is asked to send."""

    def __init__(self, fail_with: Exception = None):
        self.sent: List[OutboundMessage] = []
        self.fail_with = fail_with

    def send(self, message: OutboundMessage) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(message)


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


class TestOutboundMessage:
    """Test building outbound messages."""

    def test_event_reminder_subject(self):
        pending = PendingNotification(
            notification_id="n-1",
            kind="event-reminder",
            email="alice@example.com",
            template_data={"event": {"name": "RustConf"}},
        )

        message = build_outbound_message(pending, [], "Community", "noreply@example.com")

        assert message.subject == "Reminder: RustConf is coming up soon"
        assert message.to_address == "alice@example.com"
        assert message.from_name == "Community"
        assert message.from_address == "noreply@example.com"
        assert message.template_data == {"event": {"name": "RustConf"}}

    def test_defaults_from_settings(self):
        pending = PendingNotification(
            notification_id="n-1", kind="email-verification", email="alice@example.com"
        )

        message = build_outbound_message(pending)

        assert message.subject == "Verify your email address"
        assert message.from_name == "Notifications"
        assert message.from_address == "notifications@example.org"

    def test_unknown_kind_gets_generic_subject(self):
        pending = PendingNotification(
            notification_id="n-1", kind="legacy-kind", email="alice@example.com"
        )

        assert build_outbound_message(pending).subject == "Notification"


class TestDeliveryWorker:
    """Test the delivery worker loop."""

    def test_empty_queue(self, queue, sender):
        worker = DeliveryWorker(queue, sender)

        assert worker.deliver_next() is False
        assert sender.sent == []

    def test_delivers_and_marks_processed(self, queue, db_session, make_user, sender):
        """Test a successful delivery, attachments included."""
        alice = make_user(email="alice@example.com")
        notification_ids = queue.enqueue(
            "event-welcome",
            {"event": {"name": "RustConf"}},
            [{"content_type": "text/calendar", "file_name": "event.ics", "data": b"ics"}],
            [alice.id],
        )

        assert DeliveryWorker(queue, sender).deliver_next() is True

        assert len(sender.sent) == 1
        message = sender.sent[0]
        assert message.notification_id == notification_ids[0]
        assert message.to_address == "alice@example.com"
        assert message.attachments[0].file_name == "event.ics"
        assert message.attachments[0].data == b"ics"

        row = db_session.get(Notification, notification_ids[0])
        assert row.processed is True
        assert row.error is None

    def test_send_failure_is_recorded(self, queue, db_session, make_user):
        """Test that a failed send is stored on the notification, not retried."""
        alice = make_user()
        notification_ids = queue.enqueue("group-welcome", {"a": 1}, [], [alice.id])
        worker = DeliveryWorker(queue, RecordingSender(ConnectionError("smtp down")))

        assert worker.deliver_next() is True
        assert worker.deliver_next() is False

        row = db_session.get(Notification, notification_ids[0])
        assert row.processed is True
        assert row.error == "smtp down"

    def test_send_failure_without_message_records_exception_name(
        self, queue, db_session, make_user
    ):
        alice = make_user()
        notification_ids = queue.enqueue("group-welcome", {"a": 1}, [], [alice.id])

        DeliveryWorker(queue, RecordingSender(TimeoutError())).deliver_next()

        assert db_session.get(Notification, notification_ids[0]).error == "TimeoutError"

    def test_whitelist_skips_other_recipients(self, queue, db_session, make_user, sender):
        allowed = make_user(email="allowed@example.com")
        blocked = make_user(email="blocked@example.com")
        queue.enqueue("group-welcome", {"a": 1}, [], [allowed.id, blocked.id])
        worker = DeliveryWorker(queue, sender, rcpts_whitelist=["allowed@example.com"])

        assert worker.drain(10) == 2

        assert [m.to_address for m in sender.sent] == ["allowed@example.com"]
        assert all(row.processed for row in db_session.query(Notification).all())

    def test_empty_whitelist_blocks_everyone(self, queue, make_user, sender):
        alice = make_user()
        queue.enqueue("group-welcome", {"a": 1}, [], [alice.id])

        assert DeliveryWorker(queue, sender, rcpts_whitelist=[]).drain(10) == 1
        assert sender.sent == []

    def test_drain_stops_at_limit(self, queue, make_user, sender):
        alice = make_user()
        queue.enqueue("group-welcome", {"a": 1}, [], [alice.id] * 5)
        worker = DeliveryWorker(queue, sender)

        assert worker.drain(3) == 3
        assert worker.drain(10) == 2
        assert len(sender.sent) == 5

    def test_default_sender_only_logs(self, queue, db_session, make_user):
        alice = make_user()
        notification_ids = queue.enqueue("group-welcome", {"a": 1}, [], [alice.id])
        worker = DeliveryWorker(queue)

        assert isinstance(worker.sender, LoggingNotificationSender)
        assert worker.deliver_next() is True
        assert db_session.get(Notification, notification_ids[0]).processed is True
