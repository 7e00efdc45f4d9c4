"""
Database engine, session factory, and metadata shared across the application.
"""

from __future__ import annotations

import logging
from typing import Any, Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeMeta, Session, declarative_base, sessionmaker

from slotpay.core.config import settings

logger = logging.getLogger(__name__)

def build_engine_kwargs(db_url: str) -> dict[str, Any]:
    """Engine options per dialect; SQLite gets a generous busy timeout for concurrent claimers."""
    if db_url.startswith("sqlite"):
        return {
            "future": True,
            "connect_args": {"check_same_thread": False, "timeout": 30},
        }
    return {
        "future": True,
        "pool_size": settings.database_pool_size,
        "max_overflow": settings.database_max_overflow,
        "pool_pre_ping": True,
        "pool_recycle": 300,
        "connect_args": {
            "options": "-c statement_timeout=15000",
            "connect_timeout": 5,
            "application_name": "slotpay",
        },
    }

def create_ledger_engine(db_url: str) -> Engine:
    ledger_engine = create_engine(db_url, **build_engine_kwargs(db_url))
    if db_url.startswith("sqlite"):

        @event.listens_for(ledger_engine, "connect")
        def _sqlite_pragmas(dbapi_connection: Any, connection_record: Any) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return ledger_engine

engine: Engine = create_ledger_engine(settings.database_url)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)

Base: DeclarativeMeta = declarative_base()

def get_db() -> Generator[Session, None, None]:
    """Get database session with proper cleanup."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db(bind: Engine | None = None) -> None:
    """Create all tables for the registered models."""
    import slotpay.models  # noqa: F401

    target = bind or engine
    Base.metadata.create_all(bind=target)
    logger.info("Ledger schema ensured", extra={"dialect": target.dialect.name})


__all__ = [
    "Base",
    "SessionLocal",
    "create_ledger_engine",
    "engine",
    "get_db",
    "init_db",
]
