import base64
import binascii
import uuid
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from notification_queue.db.models import NotificationKind


class AttachmentData(BaseModel):
    """
    File sent along with a notification.

    `data` accepts raw bytes, or a base64 string when the attachment arrives
    through a JSON transport (Celery task arguments, for example).
    """

    model_config = ConfigDict(frozen=True)

    content_type: str = Field(..., description="MIME type of the attachment")
    file_name: str = Field(..., description="File name shown to recipients")
    data: bytes = Field(..., description="Raw attachment content")

    @field_validator("content_type", "file_name")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v

    @field_validator("data", mode="before")
    @classmethod
    def decode_base64(cls, v: Any) -> Any:
        if isinstance(v, str):
            try:
                return base64.b64decode(v, validate=True)
            except binascii.Error as e:
                raise ValueError(f"invalid base64 attachment data: {e}") from e
        return v


class NewNotification(BaseModel):
    """A batch of notifications to enqueue, one per recipient."""

    kind: NotificationKind = Field(..., description="Notification kind")
    template_data: Optional[Dict[str, Any]] = Field(
        None, description="Data merged into the message template at delivery time"
    )
    attachments: List[AttachmentData] = Field(
        default_factory=list, description="Files linked to every notification"
    )
    recipients: List[str] = Field(
        default_factory=list,
        description="User IDs to notify; repeated IDs produce repeated notifications",
    )

    @field_validator("recipients", mode="before")
    @classmethod
    def normalize_recipients(cls, v: Any) -> Any:
        if isinstance(v, (list, tuple)):
            return [str(uuid.UUID(str(item))) for item in v]
        return v


class PendingNotification(BaseModel):
    """A leased notification, ready to be delivered."""

    notification_id: str
    kind: str
    email: str
    template_data: Optional[Dict[str, Any]] = None
    attachment_ids: List[str] = Field(default_factory=list)


class OutboundMessage(BaseModel):
    """Message handed to a notification sender."""

    notification_id: str
    kind: str
    from_name: str
    from_address: str
    to_address: str
    subject: str
    template_data: Optional[Dict[str, Any]] = None
    attachments: List[AttachmentData] = Field(default_factory=list)
