# identity/db.py
"""
Database configuration for the identity registry.

This module:
- Creates the SQLAlchemy engine from identity.config.DATABASE_URL.
- Defines the Base class all ORM models inherit from.
- Exposes a get_session() context manager that wraps one transaction.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session

from identity.config import DATABASE_URL

# ---------------------------------------------------------------------------
# Engine configuration
# ---------------------------------------------------------------------------

# `check_same_thread=False` lets registry operations run from worker threads;
# the registry serialises writers itself (see identity.people.locks).
_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, connect_args=_connect_args)

# Session factory. Each registry operation uses its own Session instance.
# Objects stay readable after commit so results can be built from them.
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    bind=engine,
)

# Base class that all ORM models must inherit from.
Base = declarative_base()


@event.listens_for(Engine, "connect")
def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    # SQLite ignores ON DELETE rules unless asked per connection.
    if type(dbapi_connection).__module__.startswith("sqlite3"):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def init_db(bind: Optional[Engine] = None) -> None:
    """Create all registry tables (dev mode). In production, use migrations."""
    # Import models so SQLAlchemy knows about them before create_all()
    from identity.people import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)


# ---------------------------------------------------------------------------
# Session helper
# ---------------------------------------------------------------------------

@contextmanager
def get_session(factory: Optional[sessionmaker] = None) -> Iterator[Session]:
    """
    Context manager that yields a database session and handles commit/rollback.

    Usage:
        from identity.db import get_session

        with get_session() as db:
            db.add(obj)
            ...

    `factory` defaults to SessionLocal; the registry passes its own.
    """
    session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        # If anything goes wrong, rollback so no partial write is visible.
        session.rollback()
        raise
    finally:
        # Always close the connection.
        session.close()
