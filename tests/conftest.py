import os

# Settings are read at import time; point the application at SQLite before
# anything from notification_queue is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("LOG_LEVEL", "warning")

import pytest
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from notification_queue.db.models import (
    Base,
    Community,
    Event,
    EventAttendee,
    EventSpeaker,
    Group,
    User,
)
from notification_queue.services.notifications.queue import NotificationQueue

# Fixed reference time for reminder passes (naive UTC)
NOW = datetime(2025, 6, 1, 12, 0, 0)


@pytest.fixture
def test_engine(tmp_path):
    """Create a file-backed SQLite engine so every session gets its own connection."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'notifications.db'}",
        connect_args={"check_same_thread": False, "timeout": 5},
        echo=False,
    )

    @event.listens_for(engine, "connect")
    def _enable_foreign_keys(dbapi_connection, _):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> sessionmaker:
    return sessionmaker(bind=test_engine, class_=Session, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory):
    """Session for arranging data and inspecting results."""
    with session_factory() as session:
        yield session


@pytest.fixture
def queue(session_factory) -> NotificationQueue:
    return NotificationQueue(session_factory)


# Test data factories
@pytest.fixture
def make_user(db_session: Session) -> Callable[..., User]:
    counter = {"n": 0}

    def _make_user(email_verified: bool = True, **overrides) -> User:
        counter["n"] += 1
        n = counter["n"]
        user = User(
            username=overrides.pop("username", f"user{n}"),
            email=overrides.pop("email", f"user{n}@example.com"),
            email_verified=email_verified,
            **overrides,
        )
        db_session.add(user)
        db_session.commit()
        return user

    return _make_user


@pytest.fixture
def sample_community(db_session: Session) -> Community:
    community = Community(
        name="test-community",
        display_name="Test Community",
        active=True,
        logo_url="https://example.com/community-logo.png",
    )
    db_session.add(community)
    db_session.commit()
    return community


@pytest.fixture
def sample_group(db_session: Session, sample_community: Community) -> Group:
    group = Group(
        community_id=sample_community.id,
        name="Test Group",
        slug="test-group",
        category_name="Technology",
        active=True,
        deleted=False,
    )
    db_session.add(group)
    db_session.commit()
    return group


@pytest.fixture
def make_event(db_session: Session, sample_group: Group) -> Callable[..., Event]:
    counter = {"n": 0}

    def _make_event(
        starts_in: timedelta = timedelta(hours=2),
        attendees=(),
        speakers=(),
        **overrides,
    ) -> Event:
        counter["n"] += 1
        n = counter["n"]
        values = {
            "group_id": sample_group.id,
            "name": f"Test Event {n}",
            "slug": f"test-event-{n}",
            "kind": "in-person",
            "timezone": "UTC",
            "starts_at": NOW + starts_in,
            "published": True,
            "canceled": False,
            "deleted": False,
            "reminder_enabled": True,
            "venue_name": "Conference Hall",
            "venue_city": "Barcelona",
        }
        values.update(overrides)
        event = Event(**values)
        db_session.add(event)
        db_session.flush()

        for user in attendees:
            db_session.add(EventAttendee(event_id=event.id, user_id=user.id))
        for user in speakers:
            db_session.add(EventSpeaker(event_id=event.id, user_id=user.id))
        db_session.commit()
        return event

    return _make_event


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def pg_session_factory() -> sessionmaker:
    """Session factory on a fresh schema in the TEST_POSTGRES_URL database."""
    engine = create_engine(os.environ["TEST_POSTGRES_URL"])
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, class_=Session, expire_on_commit=False)
    Base.metadata.drop_all(engine)
    engine.dispose()
