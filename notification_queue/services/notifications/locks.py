"""
Named, non-blocking, process-wide locks.

On PostgreSQL the lock is a session-level advisory lock held by a dedicated
connection, so it excludes every process using the same database. Other
databases (SQLite in tests and single-instance setups) get an in-process lock.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator

from sqlalchemy import text
from sqlalchemy.orm import sessionmaker

from notification_queue.utils.logging import get_logger

logger = get_logger()

_local_locks: Dict[str, threading.Lock] = {}
_local_locks_guard = threading.Lock()


def _local_lock(name: str) -> threading.Lock:
    with _local_locks_guard:
        return _local_locks.setdefault(name, threading.Lock())


@contextmanager
def try_lock(session_factory: sessionmaker, name: str) -> Iterator[bool]:
    """
    Try to take the lock `name` without waiting.

    Yields True when the lock was acquired (and releases it on exit), False
    when someone else holds it.
    """
    with session_factory() as session:
        engine = session.get_bind()

    if engine.dialect.name != "postgresql":
        lock = _local_lock(name)
        acquired = lock.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                lock.release()
        return

    # The advisory lock belongs to this connection, which stays checked out
    # until the lock is released
    with engine.connect() as connection:
        acquired = bool(
            connection.execute(
                text("select pg_try_advisory_lock(hashtextextended(:name, 0))"),
                {"name": name},
            ).scalar()
        )
        connection.commit()
        try:
            yield acquired
        finally:
            if acquired:
                connection.execute(
                    text("select pg_advisory_unlock(hashtextextended(:name, 0))"),
                    {"name": name},
                )
                connection.commit()
                logger.debug(f"Released advisory lock {name}")
