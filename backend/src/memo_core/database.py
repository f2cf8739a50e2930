"""Database connection and session management."""
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker, DeclarativeBase

from .config import settings


class Base(DeclarativeBase):
    """SQLAlchemy declarative base."""
    pass


def make_engine(database_url: str, timeout: float = None) -> Engine:
    """Create an engine with dialect-specific connection settings."""
    timeout = settings.query_timeout_seconds if timeout is None else timeout
    if database_url.startswith("sqlite"):
        new_engine = create_engine(
            database_url,
            # SQLite specific: sessions may hop threads, writers wait on the file lock
            connect_args={"check_same_thread": False, "timeout": timeout},
        )

        @event.listens_for(new_engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys = ON")
            cursor.close()

        return new_engine

    return create_engine(database_url, pool_pre_ping=True)


engine = make_engine(settings.database_url)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Yield a database session and close it afterwards."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind: Engine = None):
    """Initialize database tables."""
    from . import models  # noqa: F401
    Base.metadata.create_all(bind=bind or engine)


def apply_statement_timeout(db: Session, seconds: float) -> None:
    """Bound every statement of the current transaction (PostgreSQL only).

    SQLite has no per-statement timeout; the busy timeout set in
    make_engine bounds lock waits instead.
    """
    if db.get_bind().dialect.name != "postgresql":
        return
    # SET does not accept bind parameters
    db.execute(text(f"SET LOCAL statement_timeout = {int(seconds * 1000)}"))
