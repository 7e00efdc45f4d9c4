"""
Helpers for working with SQLAlchemy sessions in a dialect-agnostic way.
"""

from __future__ import annotations

from sqlalchemy.orm import Session


def get_dialect_name(session: Session, default: str = "sqlite") -> str:
    """
    Return the SQLAlchemy dialect name of the session's bind.

    Falls back to ``default`` when the bound engine cannot be resolved.
    """
    bind = session.get_bind()
    if bind is None:
        return default
    return getattr(getattr(bind, "dialect", None), "name", None) or default


def supports_row_locks(session: Session) -> bool:
    """SELECT ... FOR UPDATE is meaningful on PostgreSQL; SQLite locks the whole database."""
    return get_dialect_name(session) == "postgresql"
