"""Database session management for expense-auth.

This module provides SQLAlchemy engine and session management:
- engine: The SQLAlchemy engine connected to the Ledger database
- SessionLocal: Session factory for creating database sessions
- get_db_session(): Context manager for store code
- init_database(): Table creation at startup
"""

import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from expense_auth.config import DATABASE_URL

log = logging.getLogger(__name__)

if DATABASE_URL.startswith("sqlite"):
    from sqlalchemy.pool import StaticPool

    engine_kwargs = {
        "echo": False,
        "pool_pre_ping": True,
        "poolclass": StaticPool,
        "connect_args": {"check_same_thread": False, "timeout": 30},
    }
else:
    engine_kwargs = {
        "echo": False,
        "pool_pre_ping": True,
        "pool_size": 3,
        "max_overflow": 5,
        "pool_recycle": 1800,
    }

engine = create_engine(DATABASE_URL, **engine_kwargs)

# Session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)


@event.listens_for(engine, "connect")
def set_sqlite_pragma(dbapi_connection, connection_record):
    """Configure SQLite PRAGMAs for local deployments."""
    if DATABASE_URL.startswith("sqlite"):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()


@contextmanager
def get_db_session() -> Generator[Session, None, None]:
    """Context manager for database sessions.

    Usage:
        with get_db_session() as db:
            row = db.query(AuthorizedIdentity).filter_by(email=email).first()
            ...

    The session is committed on success and rolled back on exception.
    """
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_database(max_retries: int = 5, base_delay: float = 0.5) -> None:
    """Create all Ledger tables.

    Called from the application lifespan. Retries with exponential
    backoff when SQLite reports the database as locked (another process
    may be starting against the same file).

    Raises:
        OperationalError: If initialization fails after all retries.
    """
    from expense_auth.db.models import Base

    log.info(f"Initializing database at {DATABASE_URL}")

    if DATABASE_URL.startswith("sqlite:///"):
        db_path = DATABASE_URL.replace("sqlite:///", "")
        if db_path and db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    for attempt in range(max_retries):
        try:
            Base.metadata.create_all(bind=engine)
            log.info("Database tables created successfully")
            return
        except OperationalError as e:
            is_lock_error = "database is locked" in str(e)
            if is_lock_error and attempt < max_retries - 1:
                delay = base_delay * (2 ** attempt)
                log.warning(
                    f"Database locked during init, retry {attempt + 1}/{max_retries} in {delay:.1f}s"
                )
                time.sleep(delay)
            else:
                log.error(f"Database initialization failed: {e}")
                raise
