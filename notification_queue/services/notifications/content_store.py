"""
Content-addressed storage for notification template data and attachments.

Rows are keyed by the SHA-256 of their content, so identical payloads sent to
many notifications (or enqueued many times) are stored once. Inserts are
upserts that resolve to the existing row on a hash conflict, which keeps
concurrent writers of the same content from ever seeing a duplicate-key error.
"""

import hashlib
import json
from typing import Any, Dict, Type, Union

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from notification_queue.db.custom_types import new_uuid
from notification_queue.db.models import Attachment, TemplatePayload
from notification_queue.schemas.notification_schemas import AttachmentData
from notification_queue.utils.errors import NotFoundError, NotificationValidationError
from notification_queue.utils.logging import get_logger

logger = get_logger()

ContentModel = Type[Union[TemplatePayload, Attachment]]

_UPSERT_DIALECTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def canonical_json(data: Dict[str, Any]) -> bytes:
    """Stable byte representation of a template document."""
    try:
        return json.dumps(
            data, sort_keys=True, separators=(",", ":"), ensure_ascii=False
        ).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise NotificationValidationError(
            message=f"Template data is not JSON serializable: {e}"
        ) from e


def fingerprint_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def fingerprint_template_data(data: Dict[str, Any]) -> str:
    return fingerprint_bytes(canonical_json(data))


def put_template_data(session: Session, data: Dict[str, Any]) -> str:
    """Get or create the template data row for `data` and return its ID."""
    return _get_or_create(
        session,
        TemplatePayload,
        {"data": data, "hash": fingerprint_template_data(data)},
    )


def put_attachment(session: Session, attachment: AttachmentData) -> str:
    """Get or create the attachment row for `attachment` and return its ID."""
    return _get_or_create(
        session,
        Attachment,
        {
            "content_type": attachment.content_type,
            "file_name": attachment.file_name,
            "data": attachment.data,
            "hash": fingerprint_bytes(attachment.data),
        },
    )


def get_attachment(session: Session, attachment_id: str) -> AttachmentData:
    row = session.execute(
        select(Attachment.content_type, Attachment.file_name, Attachment.data).where(
            Attachment.id == attachment_id
        )
    ).one_or_none()
    if row is None:
        raise NotFoundError(f"Attachment not found: {attachment_id}")

    return AttachmentData(
        content_type=row.content_type, file_name=row.file_name, data=row.data
    )


def _get_or_create(session: Session, model: ContentModel, values: Dict[str, Any]) -> str:
    insert = _UPSERT_DIALECTS.get(session.get_bind().dialect.name)
    if insert is None:
        return _select_or_insert(session, model, values)

    # A no-op update on conflict makes RETURNING yield the existing row's ID
    stmt = insert(model).values(id=new_uuid(), **values)
    stmt = stmt.on_conflict_do_update(
        index_elements=[model.hash],
        set_={"hash": stmt.excluded.hash},
    ).returning(model.id)
    return session.execute(stmt).scalar_one()


def _select_or_insert(
    session: Session, model: ContentModel, values: Dict[str, Any]
) -> str:
    """Fallback for databases without ON CONFLICT support."""
    existing_id = session.scalar(select(model.id).where(model.hash == values["hash"]))
    if existing_id is not None:
        return existing_id

    try:
        with session.begin_nested():
            row = model(id=new_uuid(), **values)
            session.add(row)
            session.flush()
        return row.id
    except IntegrityError:
        # Lost the race to a concurrent writer of the same content
        logger.debug(f"Reusing {model.__tablename__} row for hash {values['hash']}")
        return session.scalar(select(model.id).where(model.hash == values["hash"]))
