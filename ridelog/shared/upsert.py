"""
Atomic upsert utilities using ON CONFLICT

This module provides race-condition-free upsert operations that replace
the unsafe check-then-insert pattern with the database's atomic ON CONFLICT.
PostgreSQL is the production target; SQLite supports the same clause and is
used by the test suite, so the dialect-specific insert() is chosen from the
session's bind.

Usage:
    from ridelog.shared.upsert import atomic_upsert

    atomic_upsert(
        db, OAuthCredential,
        conflict_fields=['user_id', 'provider'],
        values={'user_id': uid, 'provider': 'strava', ...},
    )
"""

from typing import Any, Dict, Iterable, Sequence, Type

from sqlalchemy import func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from ridelog.shared.database import Base


def dialect_insert(db: Session, model: Type[Base]):
    """Return an INSERT construct that supports ON CONFLICT for the bound dialect."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    raise NotImplementedError(f"ON CONFLICT upserts are not supported on {dialect}")


def atomic_upsert(
    db: Session,
    model: Type[Base],
    conflict_fields: Sequence[str],
    values: Dict[str, Any],
    preserve_when_null: Iterable[str] = (),
    insert_only: Iterable[str] = ('id',),
    auto_update_timestamp: bool = True,
    timestamp_field: str = 'updated_at'
) -> None:
    """
    Insert a row, or update the row that already holds the conflict key.

    Args:
        db: SQLAlchemy database session
        model: SQLAlchemy model class (e.g., OAuthCredential)
        conflict_fields: Columns of the unique constraint used as conflict target
        values: Column values for the INSERT (column names, not Python properties)
        preserve_when_null: Columns that keep their stored value when the new
            value is NULL (e.g. a refresh token the vendor did not rotate)
        insert_only: Columns written on INSERT but never overwritten on conflict
        auto_update_timestamp: If True, set timestamp_field to NOW() on update
        timestamp_field: Name of timestamp field to auto-update

    Raises:
        ValueError: If a conflict field is missing from values, or the model has
            no timestamp field while auto_update_timestamp is set
    """
    missing = [f for f in conflict_fields if f not in values]
    if missing:
        raise ValueError(f"values must include conflict fields: {', '.join(missing)}")

    if auto_update_timestamp and not hasattr(model, timestamp_field):
        raise ValueError(f"Model {model.__name__} does not have field '{timestamp_field}'")

    stmt = dialect_insert(db, model).values(**values)

    preserved = set(preserve_when_null)
    skipped = set(conflict_fields) | set(insert_only)
    update_dict = {}
    for key in values:
        if key in skipped:
            continue
        # excluded.<column> is the value that would have been inserted
        incoming = getattr(stmt.excluded, key)
        if key in preserved:
            update_dict[key] = func.coalesce(incoming, getattr(model.__table__.c, key))
        else:
            update_dict[key] = incoming

    if auto_update_timestamp:
        update_dict[timestamp_field] = func.now()

    if update_dict:
        stmt = stmt.on_conflict_do_update(index_elements=list(conflict_fields), set_=update_dict)
    else:
        stmt = stmt.on_conflict_do_nothing(index_elements=list(conflict_fields))

    db.execute(stmt)


def insert_if_absent(
    db: Session,
    model: Type[Base],
    conflict_fields: Sequence[str],
    values: Dict[str, Any],
) -> None:
    """INSERT ... ON CONFLICT DO NOTHING. The stored row wins on conflict."""
    stmt = dialect_insert(db, model).values(**values)
    stmt = stmt.on_conflict_do_nothing(index_elements=list(conflict_fields))
    db.execute(stmt)
