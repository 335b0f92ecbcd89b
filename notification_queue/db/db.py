from typing import Optional

from sqlalchemy import inspect
from sqlalchemy.engine import Engine

from .models import Base
from .session import engine

from notification_queue.utils.logging import get_logger

logger = get_logger()


def create_tables(bind: Optional[Engine] = None):
    Base.metadata.create_all(bind or engine)
    logger.info("Created all tables.")


def drop_tables(bind: Optional[Engine] = None):
    Base.metadata.drop_all(bind or engine)
    logger.info("Dropped all tables.")


def reset_db(bind: Optional[Engine] = None):
    logger.info("Resetting database...")
    drop_tables(bind)
    create_tables(bind)
    logger.info("Database reset complete.")


def missing_tables(bind: Optional[Engine] = None) -> list:
    """Tables defined by the models but absent from the database."""
    existing = set(inspect(bind or engine).get_table_names())
    return sorted(set(Base.metadata.tables) - existing)


if __name__ == "__main__":
    reset_db()
