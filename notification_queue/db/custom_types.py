from sqlalchemy import TypeDecorator, Uuid
import uuid


class StringUUID(TypeDecorator):
    """Custom type that stores native UUIDs in the database but hands strings to Python."""

    impl = Uuid
    cache_ok = True

    def process_bind_param(self, value, dialect):
        """Convert Python value to database value."""
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))

    def process_result_value(self, value, dialect):
        """Convert database value to Python value (always string)."""
        if value is None:
            return value
        return str(value)


def new_uuid() -> str:
    return str(uuid.uuid4())
