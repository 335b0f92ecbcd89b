from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, union, update
from sqlalchemy.orm import Session, sessionmaker

from notification_queue.config.settings import settings
from notification_queue.db.models import (
    Community,
    Event,
    EventAttendee,
    EventSpeaker,
    Group,
    NotificationKind,
    Site,
    User,
)
from notification_queue.schemas.notification_schemas import NewNotification
from notification_queue.services.notifications.locks import try_lock
from notification_queue.services.notifications.queue import NotificationQueue
from notification_queue.utils.datetime_utils import naive_utc_now, to_unix_seconds
from notification_queue.utils.logging import get_logger

logger = get_logger()

REMINDER_LOCK_NAME = "event-reminder-enqueue"


def run_reminder_pass(
    base_url: str,
    now: Optional[datetime] = None,
    session_factory: Optional[sessionmaker] = None,
    lookahead: Optional[timedelta] = None,
) -> int:
    """
    Enqueue reminders for events starting within the lookahead window.

    Only one pass runs at a time: if another pass holds the reminder lock this
    returns 0 straight away. Each event is evaluated and committed on its own,
    and is stamped with the start time it was evaluated for, so it is not
    reminded again unless its start time changes.

    Args:
        base_url: Site URL used to build the event link in the reminder
        now: Reference time (naive UTC); defaults to the current time
        session_factory: Session factory; defaults to the application's
        lookahead: How far ahead to look; defaults to REMINDER_LOOKAHEAD_HOURS

    Returns:
        int: Number of recipients notified during this pass
    """
    if session_factory is None:
        from notification_queue.db.session import SessionLocal

        session_factory = SessionLocal
    if now is None:
        now = naive_utc_now()
    if lookahead is None:
        lookahead = timedelta(hours=settings.REMINDER_LOOKAHEAD_HOURS)

    with try_lock(session_factory, REMINDER_LOCK_NAME) as acquired:
        if not acquired:
            logger.info("Another reminder pass is in progress, skipping")
            return 0

        base_url = (base_url or "").rstrip("/")
        queue = NotificationQueue(session_factory)

        with session_factory() as session:
            event_ids = _get_due_event_ids(session, now, lookahead)

        reminders_enqueued = 0
        for event_id in event_ids:
            try:
                with session_factory() as session:
                    with session.begin():
                        reminders_enqueued += _process_event(
                            session, queue, event_id, base_url, now, lookahead
                        )
            except Exception as e:
                logger.error(f"Error enqueueing reminder for event {event_id}: {e}")
                continue

        logger.info(
            f"Reminder pass completed: {len(event_ids)} events evaluated, "
            f"{reminders_enqueued} reminders enqueued"
        )
        return reminders_enqueued


def _due_event_conditions(now: datetime, lookahead: timedelta) -> list:
    return [
        Community.active.is_(True),
        Group.active.is_(True),
        Group.deleted.is_(False),
        Event.published.is_(True),
        Event.canceled.is_(False),
        Event.deleted.is_(False),
        Event.reminder_enabled.is_(True),
        Event.starts_at.is_not(None),
        Event.starts_at > now,
        Event.starts_at <= now + lookahead,
        Event.reminder_evaluated_for_start.is_distinct_from(Event.starts_at),
    ]


def _get_due_event_ids(
    db_session: Session, now: datetime, lookahead: timedelta
) -> List[str]:
    """IDs of events that still need a reminder, earliest start first."""
    result = db_session.execute(
        select(Event.id)
        .join(Group, Group.id == Event.group_id)
        .join(Community, Community.id == Group.community_id)
        .where(*_due_event_conditions(now, lookahead))
        .order_by(Event.starts_at, Event.id)
    )
    return list(result.scalars().all())


def _process_event(
    db_session: Session,
    queue: NotificationQueue,
    event_id: str,
    base_url: str,
    now: datetime,
    lookahead: timedelta,
) -> int:
    # Re-check under a row lock: the event may have changed since the scan
    row = db_session.execute(
        select(Event, Group, Community)
        .join(Group, Group.id == Event.group_id)
        .join(Community, Community.id == Group.community_id)
        .where(Event.id == event_id, *_due_event_conditions(now, lookahead))
        .with_for_update(of=Event, skip_locked=True)
    ).one_or_none()
    if row is None:
        return 0

    event, group, community = row
    recipients = get_event_reminder_recipients(db_session, event.id)

    if not recipients:
        db_session.execute(
            update(Event)
            .where(Event.id == event.id)
            .values(reminder_evaluated_for_start=event.starts_at)
        )
        return 0

    template_data = build_event_reminder_template_data(
        event, group, community, base_url, _get_site_theme(db_session)
    )
    queue.enqueue_notification(
        NewNotification(
            kind=NotificationKind.EVENT_REMINDER,
            template_data=template_data,
            recipients=recipients,
        ),
        session=db_session,
    )
    db_session.execute(
        update(Event)
        .where(Event.id == event.id)
        .values(reminder_evaluated_for_start=event.starts_at, reminder_sent_at=now)
    )

    logger.info(f"Enqueued {len(recipients)} reminders for event {event.id}")
    return len(recipients)


def get_event_reminder_recipients(db_session: Session, event_id: str) -> List[str]:
    """Verified attendees and speakers of an event, without duplicates."""
    attendees = (
        select(EventAttendee.user_id)
        .join(User, User.id == EventAttendee.user_id)
        .where(EventAttendee.event_id == event_id, User.email_verified.is_(True))
    )
    speakers = (
        select(EventSpeaker.user_id)
        .join(User, User.id == EventSpeaker.user_id)
        .where(EventSpeaker.event_id == event_id, User.email_verified.is_(True))
    )
    recipients = db_session.execute(union(attendees, speakers)).scalars().all()
    return sorted(str(user_id) for user_id in recipients)


def _get_site_theme(db_session: Session) -> Optional[Any]:
    return db_session.scalar(select(Site.theme).order_by(Site.created_at.desc()).limit(1))


def build_event_reminder_template_data(
    event: Event,
    group: Group,
    community: Community,
    base_url: str,
    theme: Optional[Any] = None,
) -> Dict[str, Any]:
    """Snapshot of everything the reminder template needs; null fields are dropped."""
    template_data = {
        "event": {
            "canceled": event.canceled,
            "community_display_name": community.display_name,
            "community_name": community.name,
            "event_id": str(event.id),
            "group_category_name": group.category_name,
            "group_name": group.name,
            "group_slug": group.slug,
            "kind": event.kind,
            "logo_url": event.logo_url or group.logo_url or community.logo_url,
            "meeting_join_url": event.meeting_join_url,
            "meeting_password": event.meeting_password,
            "name": event.name,
            "published": event.published,
            "slug": event.slug,
            "starts_at": to_unix_seconds(event.starts_at) if event.starts_at else None,
            "timezone": event.timezone,
            "venue_address": event.venue_address,
            "venue_city": event.venue_city,
            "venue_country_code": event.venue_country_code,
            "venue_country_name": event.venue_country_name,
            "venue_name": event.venue_name,
            "venue_state": event.venue_state,
            "zip_code": event.venue_zip_code,
        },
        "link": f"{base_url}/{community.name}/group/{group.slug}/event/{event.slug}",
        "theme": theme,
    }
    return _strip_nulls(template_data)


def _strip_nulls(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _strip_nulls(v) for k, v in value.items() if v is not None}
    return value
