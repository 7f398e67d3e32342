"""
Database configuration and session management for the Order service.

This module sets up the database connection using SQLAlchemy and provides
a session factory for database operations.
"""
import logging
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import DATABASE_URL
from .errors import TransientStoreError

logger = logging.getLogger(__name__)


def make_engine(url: str):
    """
    Create a SQLAlchemy engine for the given URL.

    SQLite (used by the test-suite) needs ``check_same_thread`` disabled so
    sessions can be opened from worker threads, and a generous busy timeout
    so concurrent writers wait for the lock instead of failing.
    """
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})
    return create_engine(url, pool_pre_ping=True)


# Create SQLAlchemy engine
engine = make_engine(DATABASE_URL)

# Create SessionLocal class for database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for declarative models
Base = declarative_base()


def get_db():
    """
    Dependency function that provides a database session.

    Yields:
        Session: SQLAlchemy database session

    Usage:
        Use as a FastAPI dependency to inject database sessions into route handlers.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def unit_of_work(db: Session):
    """
    Run a block as one atomic unit: commit on success, roll back on any error.

    Connection-level failures are re-raised as ``TransientStoreError`` so the
    API answers 503 and callers (payment provider retries included) know the
    whole operation can be retried safely.
    """
    try:
        yield db
        db.commit()
    except (OperationalError, InterfaceError) as e:
        db.rollback()
        logger.error(f"Store unavailable, transaction rolled back: {e}")
        raise TransientStoreError("Database temporarily unavailable") from e
    except Exception:
        db.rollback()
        raise
