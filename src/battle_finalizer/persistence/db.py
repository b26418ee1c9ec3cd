"""Index store engine initialization: SQLite WAL mode by default, PostgreSQL-ready.

Usage:
    engine = init_db()                      # data/battle_index.db
    engine = init_db("postgresql://...")    # shared index in production
"""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine as SAEngine

from battle_finalizer.persistence.schema import metadata

log = logging.getLogger("bf.persistence")

_engine: SAEngine | None = None

DEFAULT_DB_PATH = "data/battle_index.db"


def _set_sqlite_wal(dbapi_conn, connection_record):
    """WAL lets the API read while the pipeline writes."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


def init_db(url: str | None = None) -> SAEngine:
    """Initialize the database engine and create tables if needed."""
    global _engine

    if url is None:
        db_path = Path(DEFAULT_DB_PATH)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite:///{db_path}"

    _engine = create_engine(url, pool_pre_ping=True)

    if url.startswith("sqlite"):
        event.listen(_engine, "connect", _set_sqlite_wal)

    metadata.create_all(_engine)
    log.info("DB │ initialized at %s", url)
    return _engine


def get_engine() -> SAEngine:
    """Return the active database engine. Raises if not initialized."""
    if _engine is None:
        raise RuntimeError("Database not initialized: call init_db() first")
    return _engine


def close_db() -> None:
    """Dispose the pooled connections and forget the engine."""
    global _engine
    if _engine is not None:
        _engine.dispose()
        _engine = None
