from typing import Any, List, Optional
from datetime import datetime
from sqlalchemy import (
    JSON,
    String,
    Boolean,
    Text,
    ForeignKey,
    Index,
    LargeBinary,
    CheckConstraint,
    DateTime,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
import enum

from notification_queue.db.custom_types import StringUUID, new_uuid
from notification_queue.utils.datetime_utils import naive_utc_now

# JSONB on PostgreSQL, plain JSON elsewhere
JSONDocument = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


# Enums
class NotificationKind(str, enum.Enum):
    CFS_SUBMISSION_UPDATED = "cfs-submission-updated"
    COMMUNITY_TEAM_INVITATION = "community-team-invitation"
    EMAIL_VERIFICATION = "email-verification"
    EVENT_CANCELED = "event-canceled"
    EVENT_CUSTOM = "event-custom"
    EVENT_PUBLISHED = "event-published"
    EVENT_REMINDER = "event-reminder"
    EVENT_RESCHEDULED = "event-rescheduled"
    EVENT_WELCOME = "event-welcome"
    GROUP_CUSTOM = "group-custom"
    GROUP_TEAM_INVITATION = "group-team-invitation"
    GROUP_WELCOME = "group-welcome"
    SESSION_PROPOSAL_CO_SPEAKER_INVITATION = "session-proposal-co-speaker-invitation"
    SPEAKER_WELCOME = "speaker-welcome"


class EventKind(str, enum.Enum):
    IN_PERSON = "in-person"
    VIRTUAL = "virtual"
    HYBRID = "hybrid"


class CreatedAtMixin:
    """Mixin for the creation timestamp"""

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=naive_utc_now, nullable=False
    )


# Platform entities. They are owned by other services; only the columns the
# notification core reads (and the reminder fields it writes) are mapped here.
class User(Base, CreatedAtMixin):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(StringUUID, primary_key=True, default=new_uuid)
    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False)
    email_verified: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )

    notifications: Mapped[List["Notification"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )


class Community(Base, CreatedAtMixin):
    __tablename__ = "communities"

    id: Mapped[str] = mapped_column(StringUUID, primary_key=True, default=new_uuid)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    display_name: Mapped[str] = mapped_column(String(200), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    logo_url: Mapped[Optional[str]] = mapped_column(String(2048))

    groups: Mapped[List["Group"]] = relationship(back_populates="community")


class Group(Base, CreatedAtMixin):
    __tablename__ = "groups"

    id: Mapped[str] = mapped_column(StringUUID, primary_key=True, default=new_uuid)
    community_id: Mapped[str] = mapped_column(
        StringUUID, ForeignKey("communities.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    slug: Mapped[str] = mapped_column(String(200), nullable=False)
    category_name: Mapped[str] = mapped_column(String(100), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    logo_url: Mapped[Optional[str]] = mapped_column(String(2048))

    community: Mapped["Community"] = relationship(back_populates="groups")
    events: Mapped[List["Event"]] = relationship(back_populates="group")

    __table_args__ = (Index("idx_groups_community_id", "community_id"),)


class Event(Base, CreatedAtMixin):
    __tablename__ = "events"

    id: Mapped[str] = mapped_column(StringUUID, primary_key=True, default=new_uuid)
    group_id: Mapped[str] = mapped_column(
        StringUUID, ForeignKey("groups.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    slug: Mapped[str] = mapped_column(String(200), nullable=False)
    kind: Mapped[str] = mapped_column(
        String(20), default=EventKind.IN_PERSON.value, nullable=False
    )
    timezone: Mapped[str] = mapped_column(String(64), default="UTC", nullable=False)
    starts_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    published: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    canceled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    logo_url: Mapped[Optional[str]] = mapped_column(String(2048))

    venue_name: Mapped[Optional[str]] = mapped_column(String(200))
    venue_address: Mapped[Optional[str]] = mapped_column(String(500))
    venue_city: Mapped[Optional[str]] = mapped_column(String(100))
    venue_state: Mapped[Optional[str]] = mapped_column(String(100))
    venue_zip_code: Mapped[Optional[str]] = mapped_column(String(20))
    venue_country_code: Mapped[Optional[str]] = mapped_column(String(2))
    venue_country_name: Mapped[Optional[str]] = mapped_column(String(100))
    meeting_join_url: Mapped[Optional[str]] = mapped_column(String(2048))
    meeting_password: Mapped[Optional[str]] = mapped_column(String(100))

    # Reminder state, written by the reminder scheduler
    reminder_enabled: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )
    reminder_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    reminder_evaluated_for_start: Mapped[Optional[datetime]] = mapped_column(DateTime)

    group: Mapped["Group"] = relationship(back_populates="events")

    __table_args__ = (
        Index("idx_events_group_id", "group_id"),
        Index("idx_events_starts_at", "starts_at"),
    )


class EventAttendee(Base, CreatedAtMixin):
    __tablename__ = "event_attendees"

    event_id: Mapped[str] = mapped_column(
        StringUUID, ForeignKey("events.id", ondelete="CASCADE"), primary_key=True
    )
    user_id: Mapped[str] = mapped_column(
        StringUUID, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )


class EventSpeaker(Base, CreatedAtMixin):
    __tablename__ = "event_speakers"

    event_id: Mapped[str] = mapped_column(
        StringUUID, ForeignKey("events.id", ondelete="CASCADE"), primary_key=True
    )
    user_id: Mapped[str] = mapped_column(
        StringUUID, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )


class Site(Base, CreatedAtMixin):
    __tablename__ = "sites"

    id: Mapped[str] = mapped_column(StringUUID, primary_key=True, default=new_uuid)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    theme: Mapped[Optional[Any]] = mapped_column(JSONDocument)


# Notification queue
class TemplatePayload(Base, CreatedAtMixin):
    __tablename__ = "notification_template_data"

    id: Mapped[str] = mapped_column(StringUUID, primary_key=True, default=new_uuid)
    data: Mapped[Any] = mapped_column(JSONDocument, nullable=False)
    hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)

    __table_args__ = (
        CheckConstraint("hash <> ''", name="ck_notif_templ_data_hash_not_blank"),
    )


class Attachment(Base, CreatedAtMixin):
    __tablename__ = "attachments"

    id: Mapped[str] = mapped_column(StringUUID, primary_key=True, default=new_uuid)
    content_type: Mapped[str] = mapped_column(String(255), nullable=False)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    data: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)

    __table_args__ = (
        CheckConstraint("content_type <> ''", name="ck_attach_content_type_not_blank"),
        CheckConstraint("file_name <> ''", name="ck_attach_file_name_not_blank"),
        CheckConstraint("hash <> ''", name="ck_attach_hash_not_blank"),
    )


class Notification(Base, CreatedAtMixin):
    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(StringUUID, primary_key=True, default=new_uuid)
    kind: Mapped[str] = mapped_column(String(100), nullable=False)
    user_id: Mapped[str] = mapped_column(
        StringUUID, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    notification_template_data_id: Mapped[Optional[str]] = mapped_column(
        StringUUID,
        ForeignKey("notification_template_data.id", ondelete="NO ACTION"),
    )
    processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    # Delivery error reported by the worker when processing failed
    error: Mapped[Optional[str]] = mapped_column(Text)

    # Relationships
    user: Mapped["User"] = relationship(back_populates="notifications")
    template_data: Mapped[Optional["TemplatePayload"]] = relationship()
    attachments: Mapped[List["Attachment"]] = relationship(
        secondary="notification_attachments", order_by="Attachment.id"
    )

    # Constraints
    __table_args__ = (
        CheckConstraint("error IS NULL OR error <> ''", name="ck_notif_error_not_blank"),
        CheckConstraint(
            "processed_at IS NULL OR processed = true",
            name="ck_notif_processed_at_when_processed",
        ),
        Index("idx_notif_processed_created_at", "processed", "created_at"),
        Index("idx_notif_user_id", "user_id"),
        Index("idx_notif_template_data_id", "notification_template_data_id"),
    )


class NotificationAttachment(Base):
    __tablename__ = "notification_attachments"

    notification_id: Mapped[str] = mapped_column(
        StringUUID,
        ForeignKey("notifications.id", ondelete="CASCADE"),
        primary_key=True,
    )
    attachment_id: Mapped[str] = mapped_column(
        StringUUID,
        ForeignKey("attachments.id", ondelete="NO ACTION"),
        primary_key=True,
    )

    __table_args__ = (Index("idx_notif_attach_attachment_id", "attachment_id"),)
