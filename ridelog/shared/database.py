"""
Database configuration and session management

This module provides the SQLAlchemy setup shared by every service package.
Engines and session factories are built by the application context at startup,
so nothing here connects to a database at import time.
"""

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import NullPool

# Base class for ORM models
Base = declarative_base()


def build_engine(database_url: str, **kwargs) -> Engine:
    """
    Create an engine for the given URL.

    PostgreSQL uses NullPool for better compatibility with containerized
    environments; other dialects (SQLite in tests) keep their default pool
    unless the caller passes one.
    """
    if database_url.startswith("postgresql") and "poolclass" not in kwargs:
        kwargs["poolclass"] = NullPool
    return create_engine(database_url, echo=False, **kwargs)


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@contextmanager
def transaction(session_factory: sessionmaker) -> Iterator[Session]:
    """
    Run a unit of work in one transaction.

    Commits when the block exits normally, rolls back every pending change on
    any exception and re-raises it.

    Usage:
        with transaction(ctx.session_factory) as db:
            ride = add_ride(db, user_id, data)
    """
    db = session_factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def check_db_connection(engine: Engine) -> bool:
    """
    Test database connectivity
    Returns True if connection successful, False otherwise
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False
