import os
import threading

import pytest
from sqlalchemy import func, select

from notification_queue.db.models import (
    Attachment,
    Notification,
    NotificationAttachment,
    TemplatePayload,
)
from notification_queue.schemas.notification_schemas import AttachmentData
from notification_queue.services.notifications.content_store import (
    fingerprint_bytes,
    fingerprint_template_data,
    get_attachment,
    put_attachment,
    put_template_data,
)
from notification_queue.utils.errors import NotFoundError, NotificationValidationError


def _count(db_session, model) -> int:
    return db_session.scalar(select(func.count()).select_from(model))


class TestFingerprints:
    """Test content fingerprinting."""

    def test_fingerprint_bytes_is_sha256_hex(self):
        assert (
            fingerprint_bytes(b"abc")
            == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
        )

    def test_template_fingerprint_ignores_key_order(self):
        first = {"link": "https://example.com", "event": {"name": "Meetup", "id": 1}}
        second = {"event": {"id": 1, "name": "Meetup"}, "link": "https://example.com"}

        assert fingerprint_template_data(first) == fingerprint_template_data(second)

    def test_template_fingerprint_differs_for_different_content(self):
        assert fingerprint_template_data({"a": 1}) != fingerprint_template_data({"a": 2})

    def test_template_fingerprint_rejects_unserializable_data(self):
        with pytest.raises(NotificationValidationError):
            fingerprint_template_data({"when": object()})


class TestGetOrCreate:
    """Test get-or-create by fingerprint."""

    def test_put_template_data_reuses_existing_row(self, db_session):
        first_id = put_template_data(db_session, {"greeting": "hello"})
        second_id = put_template_data(db_session, {"greeting": "hello"})
        db_session.commit()

        assert first_id == second_id
        assert _count(db_session, TemplatePayload) == 1

    def test_put_template_data_creates_row_per_distinct_payload(self, db_session):
        first_id = put_template_data(db_session, {"greeting": "hello"})
        second_id = put_template_data(db_session, {"greeting": "bye"})
        db_session.commit()

        assert first_id != second_id
        assert _count(db_session, TemplatePayload) == 2

    def test_put_attachment_deduplicates_by_bytes(self, db_session):
        ics = AttachmentData(
            content_type="text/calendar", file_name="event.ics", data=b"BEGIN:VCALENDAR"
        )
        renamed = AttachmentData(
            content_type="text/calendar", file_name="other.ics", data=b"BEGIN:VCALENDAR"
        )

        first_id = put_attachment(db_session, ics)
        second_id = put_attachment(db_session, renamed)
        db_session.commit()

        # Same bytes, same row: the first file name wins
        assert first_id == second_id
        stored = db_session.get(Attachment, first_id)
        assert stored.file_name == "event.ics"
        assert stored.hash == fingerprint_bytes(b"BEGIN:VCALENDAR")

    def test_get_attachment_returns_stored_content(self, db_session):
        attachment_id = put_attachment(
            db_session,
            AttachmentData(content_type="application/pdf", file_name="ticket.pdf", data=b"PDF"),
        )
        db_session.commit()

        attachment = get_attachment(db_session, attachment_id)

        assert attachment.content_type == "application/pdf"
        assert attachment.file_name == "ticket.pdf"
        assert attachment.data == b"PDF"

    def test_get_attachment_not_found(self, db_session):
        with pytest.raises(NotFoundError):
            get_attachment(db_session, "00000000-0000-0000-0000-000000000501")


class TestDeduplicationThroughEnqueue:
    """Identical content enqueued in separate calls is stored once."""

    def test_same_payload_twice_shares_one_template_row(self, queue, db_session, make_user):
        user = make_user()
        payload = {"link": "https://example.com/verify", "code": "1234"}

        first_ids = queue.enqueue("email-verification", payload, [], [user.id])
        second_ids = queue.enqueue(
            "email-verification", {"code": "1234", "link": "https://example.com/verify"}, [], [user.id]
        )

        assert _count(db_session, TemplatePayload) == 1
        template_ids = db_session.scalars(
            select(Notification.notification_template_data_id).where(
                Notification.id.in_(first_ids + second_ids)
            )
        ).all()
        assert len(template_ids) == 2
        assert len(set(template_ids)) == 1

    def test_same_attachment_in_two_calls_is_stored_once(self, queue, db_session, make_user):
        alice = make_user()
        bob = make_user()
        ics = {"content_type": "text/calendar", "file_name": "event.ics", "data": b"BEGIN:VCALENDAR"}

        first_ids = queue.enqueue("event-welcome", {"event": "a"}, [ics], [alice.id])
        second_ids = queue.enqueue("event-welcome", {"event": "b"}, [ics], [bob.id])

        assert _count(db_session, Attachment) == 1
        attachment_id = db_session.scalar(select(Attachment.id))
        linked = db_session.scalars(
            select(NotificationAttachment.notification_id).where(
                NotificationAttachment.attachment_id == attachment_id
            )
        ).all()
        assert sorted(linked) == sorted(first_ids + second_ids)


@pytest.mark.postgres
@pytest.mark.skipif(
    not os.environ.get("TEST_POSTGRES_URL"), reason="TEST_POSTGRES_URL not set"
)
class TestConcurrentGetOrCreate:
    """Concurrent writers of the same content; needs a real PostgreSQL."""

    def test_concurrent_puts_resolve_to_one_row(self, pg_session_factory):
        workers = 8
        barrier = threading.Barrier(workers)
        ids, errors = [], []
        guard = threading.Lock()

        def put():
            try:
                with pg_session_factory() as session:
                    with session.begin():
                        barrier.wait(timeout=10)
                        template_data_id = put_template_data(
                            session, {"event": {"name": "RustConf"}, "link": "https://example.com"}
                        )
                with guard:
                    ids.append(template_data_id)
            except Exception as e:
                with guard:
                    errors.append(e)

        threads = [threading.Thread(target=put) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert len(ids) == workers
        assert len(set(ids)) == 1
        with pg_session_factory() as session:
            assert _count(session, TemplatePayload) == 1
