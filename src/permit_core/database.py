"""Database connection and session management."""
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from .config import Settings


def build_engine(settings: Settings) -> Engine:
    """
    Create the SQLAlchemy engine described by the settings.

    SQLite URLs get foreign key enforcement switched on; an in-memory SQLite
    URL shares a single connection so every session sees the same database.
    """
    url = settings.database_url
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url == "sqlite://":
            kwargs["poolclass"] = StaticPool
        engine = create_engine(url, **kwargs)

        @event.listens_for(engine, "connect")
        def _enable_sqlite_fks(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    return create_engine(
        url,
        pool_pre_ping=True,          # Verify connections before using
        pool_size=5,
        max_overflow=10,
        pool_recycle=3600,           # Recycle connections every hour
        pool_timeout=30,
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    """Create the session factory bound to an engine."""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def session_scope(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """
    Yield a database session and close it afterwards.

    Yields:
        Session: SQLAlchemy database session
    """
    db = session_factory()
    try:
        yield db
    finally:
        db.close()
