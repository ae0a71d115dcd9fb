# Overview: Locking helpers shared by every mutating unit of work.

from __future__ import annotations

from sqlalchemy import text

from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    On SQLite the writer lock comes from begin_immediate() instead.
    """
    return query.with_for_update()


def begin_immediate() -> None:
    """
    Take the SQLite database write lock up front.

    The session must have no open transaction (unit_of_work rolls back on
    entry). No-op on other dialects, where lock_for_update does the work.
    """
    if db.engine.dialect.name == "sqlite":
        db.session.execute(text("BEGIN IMMEDIATE"))
