from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from notification_queue.config.settings import settings


def build_engine(database_url: str) -> Engine:
    """Create the engine; pool options only apply to server databases."""
    options = {"echo": settings.DATABASE_ECHO, "pool_pre_ping": True}
    if not database_url.startswith("sqlite"):
        options.update(
            pool_size=settings.DATABASE_POOL_SIZE,
            max_overflow=settings.DATABASE_MAX_OVERFLOW,
            pool_recycle=3600,
            isolation_level="READ COMMITTED",
        )
    return create_engine(database_url, **options)


engine = build_engine(str(settings.DATABASE_URL))

SessionLocal = sessionmaker(bind=engine, class_=Session, expire_on_commit=False)
