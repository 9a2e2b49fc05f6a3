"""SQLAlchemy database configuration and session management."""

from contextlib import contextmanager
from typing import Callable, ContextManager, Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from src.config import get_settings

settings = get_settings()

SessionScope = Callable[[], ContextManager[Session]]


def _connect_args(database_url: str) -> dict:
    # Sync workers share the engine across threads
    if database_url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(
    settings.database_url,
    connect_args=_connect_args(settings.database_url),
    echo=False,  # Set to True for SQL debugging
)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    expire_on_commit=False,  # Allow accessing attributes after commit/close
)


def make_session_scope(factory: sessionmaker) -> SessionScope:
    """Build a unit-of-work context manager around a session factory.

    The session commits when the block exits cleanly and rolls back on error.
    """

    @contextmanager
    def scope() -> Generator[Session, None, None]:
        db = factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    return scope


get_db = make_session_scope(SessionLocal)
get_db.__doc__ = """Context manager for database sessions.

Usage:
    with get_db() as db:
        db.query(TradingAccount).all()
"""


def init_db() -> None:
    """Initialize database tables."""
    from .models import Base

    Base.metadata.create_all(bind=engine)
